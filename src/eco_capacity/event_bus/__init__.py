"""Event Bus interfaces + adapters."""

from .publisher import EbRef, EventBusPublisher, FileEventBusPublisher
from .reader import EbRecord, EventBusReader, EventBusSource

__all__ = [
    "EbRef",
    "EventBusPublisher",
    "FileEventBusPublisher",
    "EbRecord",
    "EventBusReader",
    "EventBusSource",
]
