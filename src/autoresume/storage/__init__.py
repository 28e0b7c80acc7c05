"""Storage abstractions for autoresume."""

from .health import HealthStore
from .models import DetectionEvent, DetectionStatus, HealthRecord
from .queue_store import DetectionQueueStore

__all__ = [
    "DetectionEvent",
    "DetectionQueueStore",
    "DetectionStatus",
    "HealthRecord",
    "HealthStore",
]
