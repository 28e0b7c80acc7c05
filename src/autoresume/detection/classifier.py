"""Classify session output as a usage-limit suspension and extract its reset time.

Length and content that looks like tool output or source code are rejected before
any semantic match. A genuine message without a usable time still matches, with a
one hour fallback.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MAX_MESSAGE_LENGTH = 200
MAX_API_ERROR_LENGTH = 100
FALLBACK_RESET_DELAY = timedelta(hours=1)

LIMIT_PATTERN = re.compile(
    r"You['\u2018\u2019]ve hit your (?:usage )?limit.*?"
    r"resets\s+\d{1,2}(?::\d{2})?\s*(?:am|pm)\s*\([^)]+\)",
    re.IGNORECASE,
)

API_ERROR_PATTERNS = (
    re.compile(r'"type"\s*:\s*"rate_limit_error"', re.IGNORECASE),
    re.compile(r"exceeded your current quota", re.IGNORECASE),
)

FALSE_POSITIVE_INDICATORS = (
    re.compile(r"tool_result", re.IGNORECASE),
    re.compile(r"tool_use_id", re.IGNORECASE),
    re.compile(r"toolu_", re.IGNORECASE),
    re.compile(r"^\s*\d+\u2192", re.MULTILINE),
    re.compile(r"\\n\s+\d+\u2192"),
    re.compile(r"[\"']content[\"']\s*:\s*[\"']\s*\d+\u2192"),
    re.compile(r"/\*\*.*?\*/", re.DOTALL),
    re.compile(r"function\s+\w+\s*\("),
    re.compile(r"const\s+\w+\s*="),
    re.compile(r"\bdef\s+\w+\s*\("),
    re.compile(r"parentUuid", re.IGNORECASE),
    re.compile(r"sessionId", re.IGNORECASE),
    re.compile(r"isSidechain", re.IGNORECASE),
)

RESET_CLAUSE = re.compile(
    r"resets\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)\s*\(([^)]+)\)", re.IGNORECASE
)
TRY_AGAIN_CLAUSE = re.compile(r"try again in\s+(\d+)\s*(seconds?|minutes?|hours?)", re.IGNORECASE)
ISO_TIMESTAMP = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})?)", re.IGNORECASE
)


@dataclass(slots=True)
class ClassificationResult:
    """Outcome of classifying one string of session output."""

    matched: bool
    reset_time: datetime | None = None
    timezone: str | None = None
    message: str | None = None

    @classmethod
    def no_match(cls) -> "ClassificationResult":
        return cls(matched=False)


def local_timezone_name() -> str:
    return datetime.now().astimezone().tzname() or "UTC"


def _resolve_zone(name: str) -> tzinfo | None:
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None


def is_false_positive(text: str) -> bool:
    """True when ``text`` looks like captured tool output, source code or transcript metadata."""

    if not text:
        return False
    return any(pattern.search(text) for pattern in FALSE_POSITIVE_INDICATORS)


def is_rate_limit_message(text: str | None) -> bool:
    if not text or not isinstance(text, str):
        return False
    if len(text) > MAX_MESSAGE_LENGTH:
        return False
    if is_false_positive(text):
        return False
    if LIMIT_PATTERN.search(text):
        return True
    if len(text) < MAX_API_ERROR_LENGTH:
        return any(pattern.search(text) for pattern in API_ERROR_PATTERNS)
    return False


def _from_reset_clause(match: re.Match[str], now: datetime) -> tuple[datetime, str] | None:
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    period = match.group(3).lower()
    zone_name = match.group(4).strip()
    if not 1 <= hour <= 12 or minute > 59:
        return None

    hour = hour % 12 + (12 if period == "pm" else 0)
    zone = _resolve_zone(zone_name) or now.astimezone().tzinfo
    local_now = now.astimezone(zone)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate.astimezone(timezone.utc), zone_name


def _from_try_again(match: re.Match[str], now: datetime) -> datetime:
    amount = int(match.group(1))
    unit = match.group(2).lower()
    if unit.startswith("hour"):
        delta = timedelta(hours=amount)
    elif unit.startswith("minute"):
        delta = timedelta(minutes=amount)
    else:
        delta = timedelta(seconds=amount)
    return now + delta


def _from_iso(match: re.Match[str]) -> datetime | None:
    text = match.group(1)
    if text.upper().endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_reset_time(text: str, *, now: datetime | None = None) -> tuple[datetime, str]:
    """Return ``(reset_time_utc, timezone_name)`` for a matched message."""

    now = now or datetime.now(timezone.utc)

    clause = RESET_CLAUSE.search(text)
    if clause:
        parsed = _from_reset_clause(clause, now)
        if parsed is not None:
            return parsed

    try_again = TRY_AGAIN_CLAUSE.search(text)
    if try_again:
        return _from_try_again(try_again, now), local_timezone_name()

    iso = ISO_TIMESTAMP.search(text)
    if iso:
        parsed_iso = _from_iso(iso)
        if parsed_iso is not None:
            return parsed_iso, local_timezone_name()

    return now + FALLBACK_RESET_DELAY, local_timezone_name()


def classify_message(text: str | None, *, now: datetime | None = None) -> ClassificationResult:
    if text is None or not is_rate_limit_message(text):
        return ClassificationResult.no_match()
    reset_time, zone_name = parse_reset_time(text, now=now)
    return ClassificationResult(
        matched=True, reset_time=reset_time, timezone=zone_name, message=text
    )


__all__ = [
    "ClassificationResult",
    "MAX_MESSAGE_LENGTH",
    "classify_message",
    "is_false_positive",
    "is_rate_limit_message",
    "local_timezone_name",
    "parse_reset_time",
]
