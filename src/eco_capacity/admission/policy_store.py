"""Per-tier policy table with copy-on-write snapshots (Phase 4).

Readers take the current ``PolicySnapshot`` reference without locking; the
snapshot and every ``Policy`` in it are immutable. Writers are serialized,
persist before swapping the reference, and then broadcast a change notice.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from types import MappingProxyType
from typing import Any, Mapping

from .config import DEFAULT_POLICIES
from .contracts import SENSITIVITY_TIERS, CapacityContractError, Policy, normalize_tier
from .notify import CHANNEL_POLICIES, ConfigChangeNotifier
from .store import ConfigStore, ConfigStoreError

logger = logging.getLogger("eco_capacity.admission.policy_store")

FALLBACK_TIER = "low"
RELOAD_ATTEMPTS = 3


class PolicyUpdateError(ValueError):
    """Raised when an administrator policy update is invalid."""


@dataclass(frozen=True)
class PolicySnapshot:
    policies: Mapping[str, Policy]
    revision: int
    source: str

    def knows(self, tier: str) -> bool:
        return str(tier or "").strip().lower() in self.policies

    def resolve(self, tier: str) -> Policy:
        key = str(tier or "").strip().lower()
        policy = self.policies.get(key)
        if policy is not None:
            return policy
        logger.warning(
            "Capacity policy anomaly: unknown sensitivity tier %r, falling back to %r policy",
            tier,
            FALLBACK_TIER,
        )
        return self.policies[FALLBACK_TIER]


class PolicyStore:
    def __init__(
        self,
        *,
        store: ConfigStore | None = None,
        notifier: ConfigChangeNotifier | None = None,
        defaults: Mapping[str, Policy] | None = None,
    ) -> None:
        seeded = dict(defaults or DEFAULT_POLICIES)
        missing = [tier for tier in SENSITIVITY_TIERS if tier not in seeded]
        if missing:
            raise PolicyUpdateError(f"default policies missing tiers: {','.join(missing)}")
        self.store = store
        self.notifier = notifier
        self._defaults = seeded
        self._write_lock = threading.Lock()
        self._snapshot = PolicySnapshot(policies=MappingProxyType(dict(seeded)), revision=0, source="defaults")

    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    @property
    def revision(self) -> int:
        return self._snapshot.revision

    def get(self, tier: str) -> Policy:
        return self._snapshot.resolve(tier)

    def list_all(self) -> dict[str, Policy]:
        return dict(self._snapshot.policies)

    def reload(self) -> bool:
        """Refresh from the durable store; keep the current snapshot on failure.

        A read that raced a local write or another reload is discarded and
        retried, so the snapshot never falls behind what this instance committed.
        """
        if self.store is None:
            return False
        for _ in range(RELOAD_ATTEMPTS):
            seen = self._snapshot
            try:
                persisted = self.store.load_policies()
            except ConfigStoreError as exc:
                logger.warning("Capacity policy reload failed; keeping revision=%s detail=%s", self.revision, exc)
                return False
            merged = dict(self._defaults)
            merged.update({tier: policy for tier, policy in persisted.items() if tier in SENSITIVITY_TIERS})
            with self._write_lock:
                if self._snapshot is not seen:
                    continue
                revision = seen.revision + 1
                self._snapshot = PolicySnapshot(
                    policies=MappingProxyType(merged),
                    revision=revision,
                    source="store" if persisted else "defaults",
                )
            ignored = sorted(set(persisted) - set(SENSITIVITY_TIERS))
            if ignored:
                logger.warning("Capacity policy reload ignored unknown tiers: %s", ",".join(ignored))
            logger.info("Capacity policies loaded revision=%s persisted_tiers=%s", revision, len(persisted))
            return True
        logger.warning("Capacity policy reload contended; keeping revision=%s", self.revision)
        return False

    load = reload

    def update(self, tier: str, changes: Mapping[str, Any]) -> Policy:
        try:
            key = normalize_tier(tier)
        except CapacityContractError as exc:
            raise PolicyUpdateError(str(exc)) from exc
        if not isinstance(changes, Mapping) or not changes:
            raise PolicyUpdateError("policy update requires a non-empty mapping of changes")

        with self._write_lock:
            current = self._snapshot
            try:
                updated = current.policies[key].merged(changes)
            except CapacityContractError as exc:
                raise PolicyUpdateError(str(exc)) from exc
            policies = dict(current.policies)
            policies[key] = updated
            if self.store is not None:
                self.store.save_policies(policies)
            revision = current.revision + 1
            self._snapshot = PolicySnapshot(policies=MappingProxyType(policies), revision=revision, source="store")

        logger.info(
            "Capacity policy updated tier=%s revision=%s fields=%s",
            key,
            revision,
            ",".join(sorted(str(name) for name in changes)),
        )
        self._notify(key, revision)
        return updated

    def _notify(self, key: str, revision: int) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(CHANNEL_POLICIES, key=key, revision=revision)
        except Exception as exc:
            # The write is already committed; peers converge on their next reload.
            logger.warning("Capacity policy change notice failed tier=%s revision=%s detail=%s", key, revision, exc)
