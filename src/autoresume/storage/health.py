"""Heartbeat record written by the running daemon."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable

from .fs import atomic_write_json
from .models import HealthRecord, ensure_aware, utc_now

logger = logging.getLogger(__name__)


class HealthStore:
    """Reads and overwrites the ``{timestamp, pid}`` heartbeat file."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._clock = clock or utc_now

    @property
    def path(self) -> Path:
        return self._path

    def beat(self, pid: int | None = None) -> HealthRecord:
        record = HealthRecord(timestamp=self._clock(), pid=pid if pid is not None else os.getpid())
        atomic_write_json(
            self._path, {"timestamp": record.timestamp.isoformat(), "pid": record.pid}
        )
        return record

    def read(self) -> HealthRecord | None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            timestamp = ensure_aware(datetime.fromisoformat(str(data["timestamp"])))
            return HealthRecord(timestamp=timestamp, pid=int(data["pid"]))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.debug(
                "Heartbeat file unreadable",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return None

    def is_stale(self, max_age_seconds: float) -> bool:
        """True when no heartbeat exists or the last one is older than ``max_age_seconds``."""

        record = self.read()
        if record is None:
            return True
        return record.age_seconds(self._clock()) > max_age_seconds

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


__all__ = ["HealthStore"]
