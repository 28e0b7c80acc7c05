"""File-backed detection queue shared by the hook and the daemon."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from .fs import atomic_write_json
from .models import DetectionEvent, DetectionStatus, ensure_aware, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QueueSnapshot:
    """In-memory image of the whole detection record file."""

    entries: list[DetectionEvent] = field(default_factory=list)
    last_hook_run: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "queue": [entry.to_record() for entry in self.entries],
            "lastHookRun": self.last_hook_run.isoformat() if self.last_hook_run else None,
        }


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        return None


class DetectionQueueStore:
    """Deduplicated, ordered record of quota events persisted as one JSON document.

    Every mutation is a whole-record read-modify-write followed by an atomic replace.
    Concurrent writers can lose an update; the dedup on ``reset_time`` makes a repeated
    insert harmless, so the next hook run or poll converges the file again.
    """

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._clock = clock or utc_now

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> QueueSnapshot:
        if not self._path.exists():
            return QueueSnapshot()

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "Detection record unreadable, starting empty",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return QueueSnapshot()

        if not isinstance(data, dict):
            return QueueSnapshot()

        last_hook_run = _parse_timestamp(data.get("lastHookRun", data.get("last_hook_run")))

        if not isinstance(data.get("queue"), list):
            snapshot = self._migrate_single_slot(data, last_hook_run)
            self._write(snapshot)
            return snapshot

        entries: list[DetectionEvent] = []
        for raw in data["queue"]:
            try:
                entries.append(DetectionEvent.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed queue entry", extra={"error": str(exc)})
        return QueueSnapshot(entries=entries, last_hook_run=last_hook_run)

    def _migrate_single_slot(
        self, data: dict[str, Any], last_hook_run: datetime | None
    ) -> QueueSnapshot:
        snapshot = QueueSnapshot(last_hook_run=last_hook_run)
        reset_raw = data.get("resetTime", data.get("reset_time"))
        if not data.get("detected") or not reset_raw:
            return snapshot

        try:
            event = DetectionEvent.model_validate({**data, "status": "pending"})
        except ValidationError as exc:
            logger.warning(
                "Legacy detection record could not be migrated", extra={"error": str(exc)}
            )
            return snapshot

        logger.info("Migrated legacy single-slot detection record", extra={"event_id": event.id})
        snapshot.entries.append(event)
        return snapshot

    def _write(self, snapshot: QueueSnapshot) -> None:
        atomic_write_json(self._path, snapshot.to_record())

    def entries(self) -> list[DetectionEvent]:
        return list(self._read().entries)

    @property
    def last_hook_run(self) -> datetime | None:
        return self._read().last_hook_run

    def add_detection(self, event: DetectionEvent, *, hook_run: bool = False) -> bool:
        """Insert ``event`` unless an entry with the same reset time exists.

        Returns True when a new entry was written.
        """

        snapshot = self._read()
        if hook_run:
            snapshot.last_hook_run = self._clock()

        if any(entry.same_reset(event) for entry in snapshot.entries):
            if hook_run:
                self._write(snapshot)
            return False

        snapshot.entries.append(event)
        self._write(snapshot)
        return True

    def mark_hook_run(self) -> None:
        snapshot = self._read()
        snapshot.last_hook_run = self._clock()
        self._write(snapshot)

    def get_next_pending(self) -> DetectionEvent | None:
        """Return the active entry with the earliest reset time."""

        active = [entry for entry in self._read().entries if entry.is_active]
        if not active:
            return None
        return min(active, key=lambda entry: entry.reset_time)

    def get(self, event_id: str) -> DetectionEvent | None:
        for entry in self._read().entries:
            if entry.id == event_id:
                return entry
        return None

    def update_status(self, event_id: str, status: DetectionStatus) -> DetectionEvent | None:
        snapshot = self._read()
        for index, entry in enumerate(snapshot.entries):
            if entry.id != event_id:
                continue
            updates: dict[str, Any] = {"status": status}
            if status == "completed":
                updates["completed_at"] = self._clock()
            updated = entry.model_copy(update=updates)
            snapshot.entries[index] = updated
            self._write(snapshot)
            return updated
        return None

    def summary(self) -> dict[str, Any]:
        snapshot = self._read()
        counts: dict[str, int] = {}
        for entry in snapshot.entries:
            counts[entry.status] = counts.get(entry.status, 0) + 1
        next_pending = min(
            (entry for entry in snapshot.entries if entry.is_active),
            key=lambda entry: entry.reset_time,
            default=None,
        )
        return {
            "total": len(snapshot.entries),
            "by_status": counts,
            "next_pending": next_pending.to_record() if next_pending else None,
            "last_hook_run": snapshot.last_hook_run.isoformat() if snapshot.last_hook_run else None,
        }


__all__ = ["DetectionQueueStore", "QueueSnapshot"]
