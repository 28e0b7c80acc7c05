"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DetectionStatus = Literal["pending", "resuming", "completed", "failed"]

ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "resuming"})

MAX_STORED_MESSAGE_LENGTH = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DetectionEvent(BaseModel):
    """One observed quota exhaustion and the time its quota is expected back."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=lambda: uuid4().hex)
    reset_time: datetime = Field(
        validation_alias=AliasChoices("resetTime", "reset_time"),
        serialization_alias="resetTime",
    )
    timezone: str | None = None
    message: str = ""
    target_process_hint: int | None = Field(
        default=None,
        validation_alias=AliasChoices("targetProcessHint", "claude_pid", "claudePid"),
        serialization_alias="targetProcessHint",
    )
    transcript_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("transcriptPath", "transcript_path"),
        serialization_alias="transcriptPath",
    )
    status: DetectionStatus = "pending"
    detected_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("detectedAt", "detected_at", "last_detected"),
        serialization_alias="detectedAt",
    )
    completed_at: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("completedAt", "completed_at"),
        serialization_alias="completedAt",
    )

    @field_validator("reset_time")
    @classmethod
    def _normalize_reset_time(cls, value: datetime) -> datetime:
        # Second precision keeps the dedup key stable across serialisation round trips.
        return ensure_aware(value).replace(microsecond=0)

    @field_validator("detected_at", "completed_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @field_validator("message", mode="before")
    @classmethod
    def _truncate_message(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)[:MAX_STORED_MESSAGE_LENGTH]

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        # Older releases used "waiting" for entries that had not been picked up yet.
        if value == "waiting":
            return "pending"
        return value

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def same_reset(self, other: "DetectionEvent") -> bool:
        return self.reset_time == other.reset_time

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(slots=True)
class HealthRecord:
    timestamp: datetime
    pid: int

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or utc_now()) - self.timestamp).total_seconds()


__all__ = [
    "ACTIVE_STATUSES",
    "DetectionEvent",
    "DetectionStatus",
    "HealthRecord",
    "MAX_STORED_MESSAGE_LENGTH",
    "ensure_aware",
    "utc_now",
]
