from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import os
from pathlib import Path

from autoresume.detection.transcript import (
    TranscriptTail,
    analyze_lines,
    analyze_transcript,
    analyze_with_subagents,
    find_latest_transcript,
    is_reset_time_stale,
)

LIMIT_TEXT = "You've hit your limit · resets 8pm (Asia/Dhaka)"


def write_jsonl(path: Path, entries: list[object]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [entry if isinstance(entry, str) else json.dumps(entry) for entry in entries]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def assistant_error(text: str, **extra: object) -> dict[str, object]:
    return {
        "type": "assistant",
        "error": "rate_limit",
        "isApiErrorMessage": True,
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        **extra,
    }


def test_flagged_assistant_entry_is_detected(tmp_path: Path) -> None:
    transcript = write_jsonl(
        tmp_path / "session.jsonl",
        [
            {"type": "summary", "sessionId": "abc-123"},
            "{not json",
            assistant_error(LIMIT_TEXT),
        ],
    )

    detection = analyze_transcript(transcript)

    assert detection is not None
    assert detection.message == LIMIT_TEXT
    assert detection.timezone == "Asia/Dhaka"
    assert detection.session_id == "abc-123"
    assert detection.transcript_path == transcript


def test_user_and_tool_entries_are_skipped(tmp_path: Path) -> None:
    transcript = write_jsonl(
        tmp_path / "session.jsonl",
        [
            {"type": "user", "error": LIMIT_TEXT},
            {"type": "tool_result", "error": LIMIT_TEXT},
            {"type": "tool_use", "systemMessage": LIMIT_TEXT},
            {"type": "assistant", "message": {"role": "user"}, "error": LIMIT_TEXT},
            {"type": "assistant", "message": {"role": "assistant", "content": LIMIT_TEXT}},
        ],
    )

    assert analyze_transcript(transcript) is None


def test_short_system_message_field_is_detected(tmp_path: Path) -> None:
    transcript = write_jsonl(
        tmp_path / "session.jsonl",
        [{"type": "system", "session_id": "s-1", "systemMessage": LIMIT_TEXT}],
    )

    detection = analyze_transcript(transcript)

    assert detection is not None
    assert detection.session_id == "s-1"


def test_missing_transcript_returns_none(tmp_path: Path) -> None:
    assert analyze_transcript(tmp_path / "missing.jsonl") is None
    assert analyze_with_subagents(tmp_path / "missing.jsonl") is None


def test_subagent_transcripts_are_scanned(tmp_path: Path) -> None:
    main = write_jsonl(tmp_path / "abc.jsonl", [{"type": "assistant", "error": "nope"}])
    write_jsonl(tmp_path / "abc" / "subagents" / "notes.jsonl", [assistant_error(LIMIT_TEXT)])
    write_jsonl(tmp_path / "abc" / "subagents" / "agent-1.jsonl", [assistant_error(LIMIT_TEXT)])

    detection = analyze_with_subagents(main)

    assert detection is not None
    assert detection.transcript_path == main


def test_old_entries_are_skipped_when_age_limited() -> None:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    old = (now - timedelta(hours=3)).isoformat()
    lines = [json.dumps(assistant_error(LIMIT_TEXT, timestamp=old))]

    assert analyze_lines(lines, now=now, max_entry_age_seconds=7200) is None
    assert analyze_lines(lines, now=now) is not None


def test_find_latest_transcript_ignores_subagents(tmp_path: Path) -> None:
    older = write_jsonl(tmp_path / "project-a" / "one.jsonl", [{}])
    newer = write_jsonl(tmp_path / "project-b" / "two.jsonl", [{}])
    agent = write_jsonl(tmp_path / "project-b" / "two" / "subagents" / "agent-x.jsonl", [{}])
    os.utime(older, (1_000, 1_000))
    os.utime(newer, (2_000, 2_000))
    os.utime(agent, (3_000, 3_000))

    assert find_latest_transcript(tmp_path) == newer
    assert find_latest_transcript(tmp_path / "absent") is None


def test_tail_returns_only_complete_new_lines(tmp_path: Path) -> None:
    path = tmp_path / "live.jsonl"
    path.write_text('{"a": 1}\n', encoding="utf-8")
    tail = TranscriptTail()

    assert tail.read_new(path) == ['{"a": 1}']
    assert tail.offset(path) == path.stat().st_size
    assert tail.read_new(path) == []

    with path.open("a", encoding="utf-8") as handle:
        handle.write('{"b": 2}\n{"c"')
    assert tail.read_new(path) == ['{"b": 2}']

    with path.open("a", encoding="utf-8") as handle:
        handle.write(": 3}\n")
    assert tail.read_new(path) == ['{"c": 3}']


def test_tail_starts_near_end_of_large_file(tmp_path: Path) -> None:
    path = tmp_path / "big.jsonl"
    path.write_text("".join(f'{{"n": {index}}}\n' for index in range(100)), encoding="utf-8")
    tail = TranscriptTail(initial_bytes=30)

    lines = tail.read_new(path)

    assert lines
    assert lines[-1] == '{"n": 99}'
    assert len(lines) < 100


def test_reset_time_staleness_boundary() -> None:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    assert is_reset_time_stale(now - timedelta(hours=2), 7200, now=now)
    assert not is_reset_time_stale(now - timedelta(hours=2) + timedelta(seconds=1), 7200, now=now)
    assert not is_reset_time_stale(now + timedelta(minutes=5), 7200, now=now)
    assert is_reset_time_stale("2026-10-18T09:00:00Z", 7200, now=now)
    assert is_reset_time_stale("not a time", 7200, now=now)
    assert is_reset_time_stale(None, 7200, now=now)
