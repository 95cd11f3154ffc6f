"""Logging helpers for the capacity engine and its CLIs."""

from __future__ import annotations

import logging
import os
from pathlib import Path


class DecisionFilter(logging.Filter):
    """Keeps warnings plus records explicitly tagged as admission decisions."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if record.levelno >= logging.WARNING:
            return True
        if getattr(record, "decision", False):
            return True
        return record.name.startswith("eco_capacity.admission.controller")


def configure_logging(level: int | None = None, log_paths: list[str] | None = None) -> None:
    """Configure default logging if no handlers are present."""
    root = logging.getLogger()
    if root.handlers:
        return
    if level is None:
        level_name = (os.getenv("CAPACITY_LOG_LEVEL") or "INFO").strip().upper()
        level = getattr(logging, level_name, logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    decision_path = log_paths[0] if log_paths else (os.getenv("CAPACITY_DECISION_LOG") or "").strip()
    if decision_path:
        path = Path(decision_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        decision_handler = logging.FileHandler(path, encoding="utf-8")
        decision_handler.addFilter(DecisionFilter())
        handlers.append(decision_handler)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
