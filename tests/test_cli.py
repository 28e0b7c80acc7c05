from __future__ import annotations

from datetime import datetime, timezone
import io
import json
import os
from pathlib import Path

import pytest

from autoresume import cli
from autoresume.storage import DetectionQueueStore, HealthStore

LIMIT_TEXT = "You've hit your limit · resets 8pm (Asia/Dhaka)"


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state = tmp_path / "state"
    monkeypatch.setenv("AUTORESUME_HOME", str(state))
    monkeypatch.setenv("AUTORESUME_TRANSCRIPTS", str(tmp_path / "projects"))
    monkeypatch.delenv("AUTORESUME_CONFIG", raising=False)
    return state


def queue(home: Path) -> DetectionQueueStore:
    return DetectionQueueStore(home / "status.json")


def feed_stdin(monkeypatch: pytest.MonkeyPatch, text: str) -> None:
    monkeypatch.setattr(cli.sys, "stdin", io.StringIO(text))


@pytest.mark.parametrize("argv", [["--bogus"], ["frobnicate"], ["status", "--verbose"]])
def test_unknown_arguments_print_usage_and_fail(
    argv: list[str], capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)

    assert excinfo.value.code != 0
    assert "usage" in capsys.readouterr().err


def test_missing_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().err


@pytest.mark.parametrize("command", ["start", "monitor"])
def test_start_and_monitor_run_the_daemon(
    command: str, home: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    started: list[Path] = []
    monkeypatch.setattr(cli, "run_daemon", lambda settings: started.append(settings.home) or 0)

    assert cli.main([command]) == 0
    assert started == [home]


def test_start_refuses_when_daemon_alive(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    home.mkdir()
    (home / "daemon.pid").write_text(f"{os.getppid()}\n", encoding="utf-8")
    monkeypatch.setattr(cli, "run_daemon", lambda settings: pytest.fail("daemon started twice"))

    assert cli.main(["start"]) == 1
    assert "already running" in capsys.readouterr().err


def test_stop_without_daemon(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["stop"]) == 0
    assert "Daemon not running" in capsys.readouterr().out


def test_stop_terminates_recorded_pid(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    home.mkdir()
    pid_path = home / "daemon.pid"
    pid_path.write_text(f"{os.getppid()}\n", encoding="utf-8")
    stopped = []
    monkeypatch.setattr(
        cli, "stop_process", lambda pid, timeout: stopped.append((pid, timeout)) or True
    )

    assert cli.main(["stop"]) == 0
    assert stopped == [(os.getppid(), 15.0)]
    assert not pid_path.exists()
    assert f"pid {os.getppid()}" in capsys.readouterr().out


def test_status_json_when_stopped(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["status", "--json"]) == 1

    status = json.loads(capsys.readouterr().out)
    assert status["running"] is False
    assert status["heartbeatStale"] is True
    assert status["queue"]["total"] == 0


def test_test_mode_seeds_detection(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["test", "--seconds", "5"]) == 0

    entries = queue(home).entries()
    assert len(entries) == 1
    assert entries[0].status == "pending"
    assert "Seeded test detection" in capsys.readouterr().out


def test_hook_queues_detection_from_transcript(
    home: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    transcript = tmp_path / "session.jsonl"
    entry = {
        "type": "assistant",
        "error": "rate_limit",
        "message": {"role": "assistant", "content": [{"type": "text", "text": LIMIT_TEXT}]},
    }
    transcript.write_text(json.dumps(entry) + "\n", encoding="utf-8")
    feed_stdin(monkeypatch, json.dumps({"session_id": "s-9", "transcript_path": str(transcript)}))

    assert cli.main(["hook"]) == 0

    output = json.loads(capsys.readouterr().out)
    message = output["systemMessage"]
    assert message.startswith("Rate limit detected! Auto-resume will retry at 8:00 PM")
    assert output["status"]["session_id"] == "s-9"
    assert output["status"]["queued"] is True
    store = queue(home)
    event = store.entries()[0]
    assert event.target_process_hint == os.getppid()
    assert event.transcript_path == str(transcript)
    assert store.last_hook_run is not None


def test_hook_without_match_stamps_last_run(
    home: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    transcript = tmp_path / "session.jsonl"
    transcript.write_text('{"type": "assistant", "error": "nope"}\n', encoding="utf-8")
    feed_stdin(monkeypatch, json.dumps({"transcript_path": str(transcript)}))

    assert cli.main(["hook"]) == 0

    assert capsys.readouterr().out == ""
    store = queue(home)
    assert store.entries() == []
    assert store.last_hook_run is not None


def test_hook_rejects_malformed_payload(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    feed_stdin(monkeypatch, "{not json")

    assert cli.main(["hook"]) == 1
    assert "Failed to parse input JSON" in capsys.readouterr().err


def test_hook_ignores_empty_input(home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    feed_stdin(monkeypatch, "")

    assert cli.main(["hook"]) == 0
    assert not (home / "status.json").exists()


def test_ensure_starts_missing_daemon(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "spawn_detached", lambda: 4321)

    assert cli.main(["ensure"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["status"] == "started"
    assert output["pid"] == 4321
    assert output["hookSpecificOutput"]["hookEventName"] == "SessionStart"


def test_ensure_leaves_healthy_daemon_alone(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    home.mkdir()
    (home / "daemon.pid").write_text(f"{os.getppid()}\n", encoding="utf-8")
    HealthStore(home / "heartbeat.json").beat(pid=os.getppid())
    monkeypatch.setattr(cli, "spawn_detached", lambda: pytest.fail("spawned"))

    assert cli.main(["ensure"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "running"


def test_ensure_restarts_daemon_with_stale_heartbeat(
    home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    home.mkdir()
    (home / "daemon.pid").write_text(f"{os.getppid()}\n", encoding="utf-8")
    stopped = []
    monkeypatch.setattr(
        cli, "stop_process", lambda pid, timeout: stopped.append((pid, timeout)) or True
    )
    monkeypatch.setattr(cli, "spawn_detached", lambda: 4321)

    assert cli.main(["ensure"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["status"] == "restarted"
    assert stopped == [(os.getppid(), 15.0)]


def test_format_reset_time_uses_named_zone() -> None:
    reset = datetime(2026, 10, 18, 14, 0, tzinfo=timezone.utc)

    assert cli.format_reset_time(reset, "Asia/Dhaka") == "8:00 PM (Asia/Dhaka)"
    assert cli.format_reset_time(reset, "UTC") == "2:00 PM (UTC)"


def test_stop_waits_past_configured_shutdown_grace(home, monkeypatch):
    home.mkdir()
    (home / "config.yaml").write_text("daemon:\n  shutdownGraceSeconds: 30\n", encoding="utf-8")
    (home / "daemon.pid").write_text(f"{os.getppid()}\n", encoding="utf-8")
    timeouts = []
    monkeypatch.setattr(
        cli, "stop_process", lambda pid, timeout: timeouts.append(timeout) or True
    )

    assert cli.main(["stop"]) == 0
    assert timeouts == [35.0]
