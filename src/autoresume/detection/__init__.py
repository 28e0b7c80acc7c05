"""Quota-exhaustion detection from session output."""

from .classifier import (
    ClassificationResult,
    classify_message,
    is_rate_limit_message,
    parse_reset_time,
)
from .transcript import (
    TranscriptDetection,
    TranscriptTail,
    analyze_transcript,
    analyze_with_subagents,
    find_latest_transcript,
    is_reset_time_stale,
)

__all__ = [
    "ClassificationResult",
    "TranscriptDetection",
    "TranscriptTail",
    "analyze_transcript",
    "analyze_with_subagents",
    "classify_message",
    "find_latest_transcript",
    "is_rate_limit_message",
    "is_reset_time_stale",
    "parse_reset_time",
]
