"""Event Bus publisher interface + local file-bus adapter."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import threading
from typing import Any, Protocol

logger = logging.getLogger("eco_capacity.event_bus")


@dataclass(frozen=True)
class EbRef:
    topic: str
    partition: int
    offset: str
    offset_kind: str
    published_at_utc: str | None = None


class EventBusPublisher(Protocol):
    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        ...


class FileEventBusPublisher:
    """Local append-only bus; one JSONL log per topic with stable line offsets."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def publish(self, topic: str, partition_key: str, payload: dict[str, Any]) -> EbRef:
        if not topic:
            raise RuntimeError("FILE_BUS_TOPIC_MISSING")
        topic_dir = self.root / topic
        topic_dir.mkdir(parents=True, exist_ok=True)
        log_path = topic_dir / "partition=0.jsonl"
        head_path = topic_dir / "head.json"
        record = {
            "partition_key": partition_key,
            "payload": payload,
            "published_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        }
        with self._lock:
            offset = _load_next_offset(log_path)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=True, separators=(",", ":")) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            _write_head(head_path, offset + 1)
        logger.debug("EB publish file topic=%s offset=%s key=%s", topic, offset, partition_key)
        return EbRef(
            topic=topic,
            partition=0,
            offset=str(offset),
            offset_kind="file_line",
            published_at_utc=record["published_at_utc"],
        )


def _load_next_offset(log_path: Path) -> int:
    # Offsets are line numbers; head.json is only a hint for tail tooling.
    if not log_path.exists():
        return 0
    with log_path.open("r", encoding="utf-8") as handle:
        return sum(1 for _ in handle)


def _write_head(head_path: Path, next_offset: int) -> None:
    tmp_path = head_path.with_suffix(".json.tmp")
    tmp_path.write_text(
        json.dumps({"next_offset": next_offset}, ensure_ascii=True, separators=(",", ":")),
        encoding="utf-8",
    )
    tmp_path.replace(head_path)
