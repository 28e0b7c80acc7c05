from __future__ import annotations

from pathlib import Path
import textwrap

import pytest
from pydantic import ValidationError

from autoresume.config import (
    AutoResumeSettings,
    ConfigLoadError,
    ConfigLoader,
    ResumeOptions,
    load_settings,
)


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state = tmp_path / "state"
    state.mkdir()
    monkeypatch.setenv("AUTORESUME_HOME", str(state))
    monkeypatch.delenv("AUTORESUME_CONFIG", raising=False)
    monkeypatch.delenv("AUTORESUME_LOG_LEVEL", raising=False)
    return state


def test_defaults_without_config_file(home: Path) -> None:
    settings = load_settings()

    assert settings.home == home
    assert settings.status_file == home / "status.json"
    assert settings.pid_file == home / "daemon.pid"
    assert settings.heartbeat_file == home / "heartbeat.json"
    assert settings.daemon.transcript_polling_enabled is True
    assert settings.daemon.max_log_size_bytes == 1024 * 1024
    assert settings.resume.max_retries == 4
    assert settings.resume.post_reset_delay_seconds == 10
    assert settings.resume.verification_window_seconds == 90
    assert settings.resume.menu_selection_key == "1"
    assert settings.resume.resume_text == "continue"


def test_yaml_sections_override_defaults(home: Path) -> None:
    (home / "config.yaml").write_text(
        textwrap.dedent(
            """
            resumePrompt: keep going
            daemon:
              transcriptPolling: false
              maxLogSizeMB: 5
            resume:
              postResetDelaySec: 20
              maxRetries: 2
              menuSelectionKey: "2"
            """
        ),
        encoding="utf-8",
    )

    settings = load_settings()

    assert settings.daemon.transcript_polling_enabled is False
    assert settings.daemon.max_log_size_mb == 5
    assert settings.resume.post_reset_delay_seconds == 20
    assert settings.resume.max_retries == 2
    assert settings.resume.menu_selection_key == "2"
    assert settings.resume.resume_text == "keep going"


def test_json_config_is_used_when_yaml_missing(home: Path) -> None:
    (home / "config.json").write_text(
        '{"resume": {"resumeText": "go on", "verificationWindowSeconds": 30}}',
        encoding="utf-8",
    )

    settings = load_settings()

    assert settings.resume.resume_text == "go on"
    assert settings.resume.verification_window_seconds == 30


def test_explicit_config_path(home: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    custom = tmp_path / "custom.yaml"
    custom.write_text("resume:\n  targetProgram: codex\n", encoding="utf-8")
    monkeypatch.setenv("AUTORESUME_CONFIG", str(custom))

    settings = load_settings()

    assert settings.config_candidates() == [custom]
    assert settings.resume.target_program == "codex"


def test_out_of_range_value_is_rejected(home: Path) -> None:
    (home / "config.yaml").write_text("resume:\n  maxRetries: 99\n", encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        load_settings()


def test_non_mapping_document_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        ConfigLoader([path]).load_document()


def test_unparsable_document_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("daemon: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        ConfigLoader([path]).load_document()


def test_invalid_log_level(home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTORESUME_LOG_LEVEL", "chatty")

    with pytest.raises(ValidationError):
        AutoResumeSettings()


def test_log_level_is_normalised(home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTORESUME_LOG_LEVEL", "debug")

    assert AutoResumeSettings().log_level == "DEBUG"


def test_retry_backoff_is_capped() -> None:
    options = ResumeOptions()

    assert [options.retry_delay(attempt) for attempt in range(5)] == [10, 20, 40, 60, 60]


def test_menu_key_must_be_single_character() -> None:
    with pytest.raises(ValidationError):
        ResumeOptions(menu_selection_key="12")
