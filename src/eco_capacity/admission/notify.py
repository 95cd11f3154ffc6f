"""Cross-instance change notifications for policy and override tables (Phase 4)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
from typing import Any, Protocol

from eco_capacity.event_bus import EbRef, EventBusPublisher, EventBusSource

from .schemas import CHANGE_NOTICE, schema_errors, validate_contract

CHANNEL_POLICIES = "policies"
CHANNEL_OVERRIDES = "overrides"
CHANNELS: tuple[str, ...] = (CHANNEL_POLICIES, CHANNEL_OVERRIDES)

logger = logging.getLogger("eco_capacity.admission.notify")


class Reloadable(Protocol):
    def reload(self) -> bool:
        ...


@dataclass(frozen=True)
class ChangeNotice:
    channel: str
    key: str
    revision: int
    instance_id: str
    changed_at_utc: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeNotice | None":
        if schema_errors(CHANGE_NOTICE, payload):
            return None
        return cls(
            channel=payload["channel"],
            key=payload["key"],
            revision=payload["revision"],
            instance_id=payload["instance_id"],
            changed_at_utc=payload["changed_at_utc"],
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "key": self.key,
            "revision": self.revision,
            "instance_id": self.instance_id,
            "changed_at_utc": self.changed_at_utc,
        }


def channel_topic(topic_prefix: str, channel: str) -> str:
    if channel not in CHANNELS:
        raise ValueError(f"channel must be one of {CHANNELS}: {channel!r}")
    prefix = str(topic_prefix or "").strip().strip(".")
    return f"{prefix}.{channel}" if prefix else channel


class ConfigChangeNotifier:
    def __init__(self, publisher: EventBusPublisher, *, instance_id: str, topic_prefix: str) -> None:
        self.publisher = publisher
        self.instance_id = instance_id
        self.topic_prefix = topic_prefix

    def publish(self, channel: str, *, key: str, revision: int) -> EbRef:
        notice = ChangeNotice(
            channel=channel,
            key=key,
            revision=revision,
            instance_id=self.instance_id,
            changed_at_utc=datetime.now(tz=timezone.utc).isoformat(),
        )
        payload = notice.as_dict()
        validate_contract(CHANGE_NOTICE, payload)
        return self.publisher.publish(channel_topic(self.topic_prefix, channel), key, payload)


class ConfigChangeListener:
    """Polls change channels and reloads the registered in-memory snapshots.

    Notices published by this instance are skipped. A failed reload leaves the
    last snapshot in place and is retried on every poll until it succeeds.
    """

    def __init__(
        self,
        source: EventBusSource,
        *,
        instance_id: str,
        topic_prefix: str,
        max_records: int = 100,
    ) -> None:
        self.source = source
        self.instance_id = instance_id
        self.topic_prefix = topic_prefix
        self.max_records = max_records
        self._targets: dict[str, Reloadable] = {}
        self._offsets: dict[str, int] = {channel: 0 for channel in CHANNELS}
        self._pending: set[str] = set()

    def register(self, channel: str, target: Reloadable) -> None:
        channel_topic(self.topic_prefix, channel)
        self._targets[channel] = target

    def seek_to_end(self) -> None:
        """Skip notices published before this instance loaded its snapshots."""
        for channel in self._targets:
            while True:
                records = self.source.read(
                    channel_topic(self.topic_prefix, channel),
                    from_offset=self._offsets[channel],
                    max_records=self.max_records,
                )
                if not records:
                    break
                self._offsets[channel] = records[-1].offset + 1

    def poll_once(self) -> dict[str, int]:
        reloads: dict[str, int] = {}
        for channel, target in self._targets.items():
            records = self.source.read(
                channel_topic(self.topic_prefix, channel),
                from_offset=self._offsets[channel],
                max_records=self.max_records,
            )
            if records:
                self._offsets[channel] = records[-1].offset + 1
                foreign = []
                for record in records:
                    notice = ChangeNotice.from_payload(record.payload)
                    if notice is None:
                        logger.warning(
                            "Capacity change notice unreadable channel=%s offset=%s", channel, record.offset
                        )
                        continue
                    if notice.instance_id != self.instance_id:
                        foreign.append(notice)
                if foreign:
                    latest = foreign[-1]
                    logger.info(
                        "Capacity change received channel=%s notices=%s from=%s revision=%s",
                        channel,
                        len(foreign),
                        latest.instance_id,
                        latest.revision,
                    )
                    self._pending.add(channel)
            if channel not in self._pending:
                continue
            if target.reload():
                self._pending.discard(channel)
                reloads[channel] = reloads.get(channel, 0) + 1
            else:
                logger.info("Capacity change reload pending channel=%s; retrying next poll", channel)
        return reloads

    def run(self, stop_event: threading.Event, *, poll_seconds: float) -> None:
        logger.info("Capacity change listener started instance=%s poll=%.2fs", self.instance_id, poll_seconds)
        while not stop_event.is_set():
            self.poll_once()
            stop_event.wait(poll_seconds)
        logger.info("Capacity change listener stopped instance=%s", self.instance_id)
