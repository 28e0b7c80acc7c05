"""Configuration management for autoresume."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

# Top-level keys written by older releases, folded into the ``resume`` section on load.
_LEGACY_RESUME_KEYS = {"resumePrompt": "resumeText", "menuSelection": "menuSelectionKey"}


class ConfigLoadError(RuntimeError):
    """Raised when a configuration file cannot be parsed or validated."""


class DaemonOptions(BaseModel):
    """Timers and limits of the resident daemon."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transcript_polling_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("transcriptPollingEnabled", "transcriptPolling"),
        description="Tail the newest transcript when the end-of-turn hook has gone quiet.",
    )
    max_log_size_mb: float = Field(default=1, ge=1, le=100, validation_alias="maxLogSizeMB")
    watch_interval_seconds: float = Field(
        default=1.0, gt=0, validation_alias="watchIntervalSeconds"
    )
    heartbeat_interval_seconds: float = Field(
        default=30.0, gt=0, validation_alias="heartbeatIntervalSeconds"
    )
    heartbeat_stale_seconds: float = Field(
        default=120.0, gt=0, validation_alias="heartbeatStaleSeconds"
    )
    watchdog_interval_seconds: float = Field(
        default=60.0, gt=0, validation_alias="watchdogIntervalSeconds"
    )
    watchdog_max_failures: int = Field(default=3, ge=1, validation_alias="watchdogMaxFailures")
    memory_ceiling_mb: float = Field(default=512, gt=0, validation_alias="memoryCeilingMB")
    log_check_interval_seconds: float = Field(
        default=60.0, gt=0, validation_alias="logCheckIntervalSeconds"
    )
    transcript_poll_interval_seconds: float = Field(
        default=30.0, gt=0, validation_alias="transcriptPollIntervalSeconds"
    )
    hook_silence_seconds: float = Field(default=300.0, ge=0, validation_alias="hookSilenceSeconds")
    shutdown_grace_seconds: float = Field(
        default=10.0, ge=0, validation_alias="shutdownGraceSeconds"
    )
    notifications_enabled: bool = Field(default=True, validation_alias="notificationsEnabled")

    @property
    def max_log_size_bytes(self) -> int:
        return int(self.max_log_size_mb * 1024 * 1024)


class ResumeOptions(BaseModel):
    """Timing and key-sequence contract used when resuming a session."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    post_reset_delay_seconds: float = Field(
        default=10.0,
        ge=1,
        le=300,
        validation_alias=AliasChoices("postResetDelaySeconds", "postResetDelaySec"),
    )
    max_retries: int = Field(default=4, ge=0, le=10, validation_alias="maxRetries")
    verification_window_seconds: float = Field(
        default=90.0,
        ge=10,
        le=600,
        validation_alias=AliasChoices("verificationWindowSeconds", "verificationWindowSec"),
    )
    verification_poll_seconds: float = Field(
        default=1.0, gt=0, validation_alias="verificationPollSeconds"
    )
    retry_base_delay_seconds: float = Field(
        default=10.0, gt=0, validation_alias="retryBaseDelaySeconds"
    )
    retry_max_delay_seconds: float = Field(
        default=60.0, gt=0, validation_alias="retryMaxDelaySeconds"
    )
    menu_selection_key: str = Field(default="1", validation_alias="menuSelectionKey")
    resume_text: str = Field(default="continue", validation_alias="resumeText")
    stale_threshold_seconds: float = Field(
        default=7200.0, gt=0, validation_alias="staleThresholdSeconds"
    )
    target_program: str = Field(default="claude", validation_alias="targetProgram")
    test_countdown_seconds: float = Field(
        default=30.0, gt=0, validation_alias="testCountdownSeconds"
    )

    @field_validator("menu_selection_key")
    @classmethod
    def _validate_menu_key(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) != 1:
            raise ValueError("resume.menuSelectionKey must be a single character")
        return normalized

    @field_validator("resume_text", "target_program")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value must not be empty")
        return normalized

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based): 10, 20, 40, 60, 60..."""

        return min(self.retry_base_delay_seconds * (2**attempt), self.retry_max_delay_seconds)


class AutoResumeSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and an optional config file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    home: Path = Field(
        default=Path("~/.claude/auto-resume"),
        validation_alias="AUTORESUME_HOME",
        validate_default=True,
    )
    transcripts_root: Path = Field(
        default=Path("~/.claude/projects"),
        validation_alias="AUTORESUME_TRANSCRIPTS",
        validate_default=True,
    )
    config_path: Path | None = Field(default=None, validation_alias="AUTORESUME_CONFIG")
    log_level: str = Field(default="INFO", validation_alias="AUTORESUME_LOG_LEVEL")
    daemon: DaemonOptions = Field(default_factory=DaemonOptions)
    resume: ResumeOptions = Field(default_factory=ResumeOptions)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _LOG_LEVELS:
            raise ValueError(
                "AUTORESUME_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("home", "transcripts_root")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return Path(value).expanduser()

    @property
    def status_file(self) -> Path:
        return self.home / "status.json"

    @property
    def pid_file(self) -> Path:
        return self.home / "daemon.pid"

    @property
    def log_file(self) -> Path:
        return self.home / "daemon.log"

    @property
    def heartbeat_file(self) -> Path:
        return self.home / "heartbeat.json"

    def config_candidates(self) -> list[Path]:
        if self.config_path is not None:
            return [Path(self.config_path).expanduser()]
        return [self.home / "config.yaml", self.home / "config.json"]


class ConfigLoader:
    """Reads the ``daemon``/``resume`` sections from the first config file that exists."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths: list[Path] = [Path(path) for path in (search_paths or [])]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def find(self) -> Path | None:
        for path in self._search_paths:
            if path.is_file():
                return path
        return None

    def load_document(self) -> dict[str, Any]:
        """Return the raw document, or an empty mapping when no file exists."""

        path = self.find()
        if path is None:
            return {}

        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigLoadError(f"Failed to read config file {path}: {exc}") from exc

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ConfigLoadError(f"Config file {path} must contain a mapping at the top level")
        return document

    def apply(self, settings: AutoResumeSettings) -> AutoResumeSettings:
        """Return a copy of ``settings`` with the file's sections validated and applied."""

        document = self.load_document()
        if not document:
            return settings

        resume_section = dict(document.get("resume") or {})
        for legacy_key, key in _LEGACY_RESUME_KEYS.items():
            if legacy_key in document and key not in resume_section:
                resume_section[key] = document[legacy_key]

        try:
            daemon = DaemonOptions.model_validate(document.get("daemon") or {})
            resume = ResumeOptions.model_validate(resume_section)
        except ValidationError as exc:
            raise ConfigLoadError(f"Invalid configuration in {self.find()}: {exc}") from exc

        return settings.model_copy(update={"daemon": daemon, "resume": resume})


def load_settings(settings: AutoResumeSettings | None = None) -> AutoResumeSettings:
    """Build settings from the environment and overlay the config file, if any."""

    settings = settings or AutoResumeSettings()
    return ConfigLoader(settings.config_candidates()).apply(settings)


__all__ = [
    "AutoResumeSettings",
    "ConfigLoadError",
    "ConfigLoader",
    "DaemonOptions",
    "ResumeOptions",
    "load_settings",
]
