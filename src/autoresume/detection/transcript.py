"""Scan JSONL session transcripts for quota-exhaustion messages."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from ..storage.models import DetectionEvent, ensure_aware
from .classifier import MAX_MESSAGE_LENGTH, classify_message

logger = logging.getLogger(__name__)

SKIPPED_ENTRY_TYPES = {"tool_result", "tool_use", "user"}
SHORT_TEXT_FIELDS = ("error", "errorMessage", "systemMessage")
INITIAL_TAIL_BYTES = 64 * 1024


@dataclass(slots=True)
class TranscriptDetection:
    """A classified match found in a transcript."""

    message: str
    reset_time: datetime
    timezone: str | None
    session_id: str | None
    transcript_path: Path | None = None

    def to_event(self, *, target_process_hint: int | None = None) -> DetectionEvent:
        return DetectionEvent(
            reset_time=self.reset_time,
            timezone=self.timezone,
            message=self.message,
            target_process_hint=target_process_hint,
            transcript_path=str(self.transcript_path) if self.transcript_path else None,
        )


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_aware(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        return None


def is_reset_time_stale(
    reset_time: Any, threshold_seconds: float, *, now: datetime | None = None
) -> bool:
    """True when ``reset_time`` lies ``threshold_seconds`` or more in the past.

    Values that cannot be parsed count as stale.
    """

    parsed = parse_timestamp(reset_time)
    if parsed is None:
        return True
    now = now or datetime.now(timezone.utc)
    return (now - parsed) >= timedelta(seconds=threshold_seconds)


def iter_entries(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    for line in lines:
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if isinstance(entry, dict):
            yield entry


def _short_text(value: Any) -> str | None:
    if isinstance(value, str) and len(value) < MAX_MESSAGE_LENGTH:
        return value
    return None


def _flagged_assistant_texts(entry: dict[str, Any]) -> list[str]:
    if entry.get("type") != "assistant":
        return []
    if entry.get("error") != "rate_limit" and entry.get("isApiErrorMessage") is not True:
        return []
    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    texts = []
    for item in content:
        if isinstance(item, dict) and item.get("type") == "text":
            text = _short_text(item.get("text"))
            if text:
                texts.append(text)
    return texts


def candidate_texts(entry: dict[str, Any]) -> list[str]:
    """Return the strings of one transcript entry that are eligible for classification.

    Assistant entries flagged as API errors are checked first. Tool traffic and user
    turns are never classified, and otherwise only short error-like fields are.
    """

    flagged = _flagged_assistant_texts(entry)
    if flagged:
        return flagged

    if entry.get("type") in SKIPPED_ENTRY_TYPES:
        return []
    message = entry.get("message")
    if isinstance(message, dict) and message.get("role") == "user":
        return []

    texts = []
    for field_name in SHORT_TEXT_FIELDS:
        text = _short_text(entry.get(field_name))
        if text:
            texts.append(text)
    return texts


def analyze_lines(
    lines: Iterable[str],
    *,
    now: datetime | None = None,
    max_entry_age_seconds: float | None = None,
    source: Path | None = None,
) -> TranscriptDetection | None:
    """Return the first detection in ``lines``.

    ``max_entry_age_seconds`` skips entries whose own ``timestamp`` is older than that,
    which keeps the fallback poll from re-reporting limits of a long finished session.
    """

    now = now or datetime.now(timezone.utc)
    session_id: str | None = None

    for entry in iter_entries(lines):
        session_id = entry.get("session_id") or entry.get("sessionId") or session_id

        if max_entry_age_seconds is not None:
            stamped = parse_timestamp(entry.get("timestamp"))
            if stamped is not None and (now - stamped).total_seconds() > max_entry_age_seconds:
                continue

        for text in candidate_texts(entry):
            result = classify_message(text, now=now)
            if result.matched and result.reset_time is not None:
                return TranscriptDetection(
                    message=text,
                    reset_time=result.reset_time,
                    timezone=result.timezone,
                    session_id=session_id,
                    transcript_path=source,
                )
    return None


def analyze_transcript(path: Path, *, now: datetime | None = None) -> TranscriptDetection | None:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return analyze_lines(handle, now=now, source=path)
    except OSError as exc:
        logger.debug("Transcript unreadable", extra={"path": str(path), "error": str(exc)})
        return None


def subagent_transcripts(path: Path) -> list[Path]:
    """Return ``<dir>/<session>/subagents/agent-*.jsonl`` next to a session transcript."""

    path = Path(path)
    subagents = path.parent / path.stem / "subagents"
    try:
        return sorted(subagents.glob("agent-*.jsonl"))
    except OSError:
        return []


def analyze_with_subagents(
    path: Path, *, now: datetime | None = None
) -> TranscriptDetection | None:
    path = Path(path)
    if not path.is_file():
        return None

    detection = analyze_transcript(path, now=now)
    if detection is not None:
        return detection

    for agent_path in subagent_transcripts(path):
        detection = analyze_transcript(agent_path, now=now)
        if detection is not None:
            # Sub-agent files carry no session of their own; resume the parent session.
            detection.transcript_path = path
            return detection
    return None


def find_latest_transcript(root: Path) -> Path | None:
    """Most recently modified top-level session transcript under ``root``."""

    root = Path(root)
    latest: tuple[float, Path] | None = None
    try:
        candidates = list(root.rglob("*.jsonl"))
    except OSError:
        return None

    for candidate in candidates:
        if "subagents" in candidate.parts:
            continue
        try:
            mtime = candidate.stat().st_mtime
        except OSError:
            continue
        if latest is None or mtime > latest[0]:
            latest = (mtime, candidate)
    return latest[1] if latest else None


class TranscriptTail:
    """Remembers a read offset per transcript and returns only complete new lines."""

    def __init__(self, *, initial_bytes: int = INITIAL_TAIL_BYTES) -> None:
        self._initial_bytes = initial_bytes
        self._offsets: dict[Path, int] = {}

    def offset(self, path: Path) -> int | None:
        return self._offsets.get(Path(path))

    def read_new(self, path: Path) -> list[str]:
        path = Path(path)
        try:
            size = path.stat().st_size
        except OSError:
            self._offsets.pop(path, None)
            return []

        offset = self._offsets.get(path)
        skip_partial = False
        if offset is None:
            offset = max(0, size - self._initial_bytes)
            skip_partial = offset > 0
        elif size < offset:
            offset = 0

        if size == offset:
            self._offsets[path] = offset
            return []

        try:
            with path.open("rb") as handle:
                handle.seek(offset)
                chunk = handle.read(size - offset)
        except OSError as exc:
            logger.debug("Transcript tail failed", extra={"path": str(path), "error": str(exc)})
            return []

        end = chunk.rfind(b"\n")
        if end < 0:
            self._offsets[path] = offset
            return []
        self._offsets[path] = offset + end + 1

        lines = chunk[: end + 1].decode("utf-8", errors="replace").splitlines()
        if skip_partial and lines:
            lines = lines[1:]
        return lines


__all__ = [
    "TranscriptDetection",
    "TranscriptTail",
    "analyze_lines",
    "analyze_transcript",
    "analyze_with_subagents",
    "candidate_texts",
    "find_latest_transcript",
    "is_reset_time_stale",
    "parse_timestamp",
    "subagent_transcripts",
]
