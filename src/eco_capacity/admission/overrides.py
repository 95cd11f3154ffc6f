"""Per-destination manual capacity overrides (Phase 4)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import threading
from types import MappingProxyType
from typing import Mapping

from .config import OverrideBounds
from .contracts import CapacityOverride, as_utc
from .notify import CHANNEL_OVERRIDES, ConfigChangeNotifier
from .store import ConfigStore, ConfigStoreError

logger = logging.getLogger("eco_capacity.admission.overrides")

RELOAD_ATTEMPTS = 3


class OverrideValidationError(ValueError):
    """Raised when an administrator override is invalid."""


@dataclass(frozen=True)
class OverrideSnapshot:
    overrides: Mapping[str, CapacityOverride]
    revision: int


class CapacityOverrideRegistry:
    def __init__(
        self,
        *,
        store: ConfigStore | None = None,
        notifier: ConfigChangeNotifier | None = None,
        bounds: OverrideBounds | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.bounds = bounds or OverrideBounds()
        self._write_lock = threading.Lock()
        self._snapshot = OverrideSnapshot(overrides=MappingProxyType({}), revision=0)

    def snapshot(self) -> OverrideSnapshot:
        return self._snapshot

    def effective(self, destination_id: str, now: datetime) -> CapacityOverride | None:
        key = str(destination_id).strip()
        override = self._snapshot.overrides.get(key)
        if override is None:
            return None
        if override.is_effective(now):
            return override
        self._prune(key, override)
        return None

    def list_effective(self, now: datetime) -> dict[str, CapacityOverride]:
        return {key: value for key, value in self._snapshot.overrides.items() if value.is_effective(now)}

    def build(
        self,
        *,
        destination_id: str,
        multiplier: float,
        reason: str,
        now: datetime,
        expires_at_utc: datetime | None = None,
        ttl_seconds: int | None = None,
        no_expiry: bool = False,
    ) -> CapacityOverride:
        """Assemble an override; expiry defaults to the configured TTL."""
        moment = as_utc(now)
        if expires_at_utc is None and not no_expiry:
            ttl = self.bounds.default_ttl_seconds if ttl_seconds is None else ttl_seconds
            expires_at_utc = moment + timedelta(seconds=ttl)
        return CapacityOverride(
            destination_id=str(destination_id).strip(),
            multiplier=float(multiplier),
            reason=str(reason or "").strip(),
            active=True,
            expires_at_utc=None if expires_at_utc is None else as_utc(expires_at_utc),
            set_at_utc=moment,
        )

    def set(self, override: CapacityOverride, *, now: datetime | None = None) -> CapacityOverride:
        self._validate(override, now=as_utc(now or datetime.now(tz=timezone.utc)))
        with self._write_lock:
            current = self._snapshot
            if self.store is not None:
                self.store.save_override(override)
            overrides = dict(current.overrides)
            overrides[override.destination_id] = override
            revision = current.revision + 1
            self._snapshot = OverrideSnapshot(overrides=MappingProxyType(overrides), revision=revision)
        logger.info(
            "Capacity override set destination=%s multiplier=%.3f expires=%s revision=%s",
            override.destination_id,
            override.multiplier,
            None if override.expires_at_utc is None else override.expires_at_utc.isoformat(),
            revision,
        )
        self._notify(override.destination_id, revision)
        return override

    def clear(self, destination_id: str) -> bool:
        key = str(destination_id).strip()
        if not key:
            raise OverrideValidationError("destination_id must be non-empty")
        with self._write_lock:
            current = self._snapshot
            removed_durable = self.store.clear_override(key) if self.store is not None else False
            if key not in current.overrides and not removed_durable:
                return False
            overrides = dict(current.overrides)
            overrides.pop(key, None)
            revision = current.revision + 1
            self._snapshot = OverrideSnapshot(overrides=MappingProxyType(overrides), revision=revision)
        logger.info("Capacity override cleared destination=%s revision=%s", key, revision)
        self._notify(key, revision)
        return True

    def reload(self) -> bool:
        if self.store is None:
            return False
        for _ in range(RELOAD_ATTEMPTS):
            seen = self._snapshot
            try:
                persisted = self.store.load_overrides()
            except ConfigStoreError as exc:
                logger.warning(
                    "Capacity override reload failed; keeping revision=%s detail=%s",
                    self._snapshot.revision,
                    exc,
                )
                return False
            with self._write_lock:
                # Pruning swaps the snapshot without a revision bump; compare revisions.
                if self._snapshot.revision != seen.revision:
                    continue
                revision = seen.revision + 1
                self._snapshot = OverrideSnapshot(overrides=MappingProxyType(dict(persisted)), revision=revision)
            logger.info("Capacity overrides loaded revision=%s count=%s", revision, len(persisted))
            return True
        logger.warning("Capacity override reload contended; keeping revision=%s", self._snapshot.revision)
        return False

    load = reload

    def _prune(self, key: str, stale: CapacityOverride) -> None:
        # In-memory only; the durable row stays until replaced or cleared.
        with self._write_lock:
            current = self._snapshot
            if current.overrides.get(key) is not stale:
                return
            overrides = dict(current.overrides)
            overrides.pop(key, None)
            self._snapshot = OverrideSnapshot(overrides=MappingProxyType(overrides), revision=current.revision)
        logger.debug("Capacity override pruned destination=%s", key)

    def _validate(self, override: CapacityOverride, *, now: datetime) -> None:
        if not isinstance(override, CapacityOverride):
            raise OverrideValidationError("override must be a CapacityOverride")
        if not override.destination_id:
            raise OverrideValidationError("override requires non-empty destination_id")
        if not str(override.reason or "").strip():
            raise OverrideValidationError("override requires a non-empty reason")
        if not self.bounds.min_multiplier <= override.multiplier <= self.bounds.max_multiplier:
            raise OverrideValidationError(
                f"override multiplier must be within [{self.bounds.min_multiplier}, "
                f"{self.bounds.max_multiplier}]: {override.multiplier!r}"
            )
        if override.active and override.expires_at_utc is not None and override.expires_at_utc <= now:
            raise OverrideValidationError("override expires_at_utc must be in the future")

    def _notify(self, key: str, revision: int) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(CHANNEL_OVERRIDES, key=key, revision=revision)
        except Exception as exc:
            # The write is already committed; peers converge on their next reload.
            logger.warning("Capacity override change notice failed destination=%s detail=%s", key, exc)

