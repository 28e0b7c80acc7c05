"""autoresume command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import AutoResumeSettings, ConfigLoadError, load_settings
from .daemon import (
    STOP_TIMEOUT_SECONDS,
    DaemonContext,
    PidFile,
    configure_logging,
    spawn_detached,
    stop_process,
)
from .detection.classifier import local_timezone_name
from .detection.transcript import analyze_with_subagents
from .storage import DetectionEvent, DetectionQueueStore, HealthStore
from .storage.models import utc_now

logger = logging.getLogger(__name__)


def _settings() -> AutoResumeSettings:
    try:
        return load_settings()
    except ConfigLoadError as exc:
        print(f"Config ignored, using defaults: {exc}", file=sys.stderr)
        return AutoResumeSettings()


def format_reset_time(reset_time: datetime, timezone_name: str | None) -> str:
    zone_name = timezone_name or local_timezone_name()
    try:
        local = reset_time.astimezone(ZoneInfo(zone_name))
    except (ZoneInfoNotFoundError, ValueError):
        local = reset_time.astimezone()
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix} ({zone_name})"


def stop_timeout(settings: AutoResumeSettings) -> float:
    """Seconds to wait after SIGTERM: the daemon's in-flight grace plus a margin."""

    return settings.daemon.shutdown_grace_seconds + STOP_TIMEOUT_SECONDS


def run_daemon(settings: AutoResumeSettings) -> int:
    configure_logging(settings.log_level, settings.log_file)
    context = DaemonContext.build(settings)
    return asyncio.run(context.run())


def cmd_start(args: argparse.Namespace) -> int:
    settings = _settings()
    pid = PidFile(settings.pid_file).running_pid()
    if pid is not None and pid != os.getpid():
        print(f"Daemon already running (pid {pid})", file=sys.stderr)
        return 1
    return run_daemon(settings)


def cmd_stop(args: argparse.Namespace) -> int:
    settings = _settings()
    pid_file = PidFile(settings.pid_file)
    pid = pid_file.running_pid()
    if pid is None:
        print("Daemon not running")
        return 0
    if not stop_process(pid, timeout=stop_timeout(settings)):
        print(f"Daemon (pid {pid}) did not exit", file=sys.stderr)
        return 1
    pid_file.remove()
    print(f"Daemon stopped (pid {pid})")
    return 0


def cmd_restart(args: argparse.Namespace) -> int:
    code = cmd_stop(args)
    if code:
        return code
    pid = spawn_detached()
    print(f"Daemon started (pid {pid})")
    return 0


def collect_status(settings: AutoResumeSettings) -> dict[str, Any]:
    pid = PidFile(settings.pid_file).running_pid()
    heartbeat = HealthStore(settings.heartbeat_file).read()
    age = heartbeat.age_seconds() if heartbeat else None
    return {
        "running": pid is not None,
        "pid": pid,
        "heartbeatAgeSeconds": round(age, 1) if age is not None else None,
        "heartbeatStale": age is None or age > settings.daemon.heartbeat_stale_seconds,
        "queue": DetectionQueueStore(settings.status_file).summary(),
        "home": str(settings.home),
    }


def cmd_status(args: argparse.Namespace) -> int:
    status = collect_status(_settings())
    if args.json:
        print(json.dumps(status, indent=2))
    else:
        if status["running"]:
            print(f"Daemon running (pid {status['pid']})")
            if status["heartbeatAgeSeconds"] is not None:
                print(f"Last heartbeat {status['heartbeatAgeSeconds']}s ago")
        else:
            print("Daemon not running")
        queue = status["queue"]
        print(f"Detections: {queue['total']} {json.dumps(queue['by_status'])}")
        next_pending = queue["next_pending"]
        if next_pending:
            print(f"Next resume at {next_pending['resetTime']} ({next_pending['status']})")
    return 0 if status["running"] else 1


def session_start_output(status: str, message: str, **extra: Any) -> dict[str, Any]:
    return {
        "hookSpecificOutput": {"hookEventName": "SessionStart", "additionalContext": message},
        "status": status,
        **extra,
    }


def cmd_ensure(args: argparse.Namespace) -> int:
    """Start the daemon if needed; never fails the host session start."""

    settings = _settings()
    try:
        pid_file = PidFile(settings.pid_file)
        pid = pid_file.running_pid()
        if pid is not None:
            health = HealthStore(settings.heartbeat_file)
            if not health.is_stale(settings.daemon.heartbeat_stale_seconds):
                output = session_start_output("running", "Auto-resume daemon is running", pid=pid)
                print(json.dumps(output))
                return 0
            logger.warning("Daemon heartbeat stale, restarting", extra={"pid": pid})
            stop_process(pid, timeout=stop_timeout(settings))
            pid_file.remove()
            new_pid = spawn_detached()
            output = session_start_output(
                "restarted",
                "Auto-resume daemon was unresponsive and has been restarted",
                pid=new_pid,
            )
            print(json.dumps(output))
            return 0

        new_pid = spawn_detached()
        output = session_start_output("started", "Auto-resume daemon started", pid=new_pid)
        print(json.dumps(output))
    except OSError as exc:
        print(json.dumps(session_start_output("error", f"Auto-resume error: {exc}")))
    return 0


def cmd_hook(args: argparse.Namespace) -> int:
    """Read the end-of-turn payload from stdin and queue any detection it reveals."""

    if sys.stdin is None or sys.stdin.isatty():
        return 0
    raw = sys.stdin.read()
    if not raw.strip():
        return 0

    try:
        payload = json.loads(raw)
    except ValueError as exc:
        error = {"error": "Failed to parse input JSON", "details": str(exc)}
        print(json.dumps(error), file=sys.stderr)
        return 1
    if not isinstance(payload, dict) or not payload.get("transcript_path"):
        return 0

    settings = _settings()
    store = DetectionQueueStore(settings.status_file)
    transcript_path = Path(payload["transcript_path"]).expanduser()
    detection = analyze_with_subagents(transcript_path)
    if detection is None:
        store.mark_hook_run()
        return 0

    event = detection.to_event(target_process_hint=os.getppid())
    added = store.add_detection(event, hook_run=True)
    formatted = format_reset_time(detection.reset_time, detection.timezone)
    output = {
        "systemMessage": f"Rate limit detected! Auto-resume will retry at {formatted}",
        "status": {
            "rate_limit_detected": True,
            "queued": added,
            "reset_time": event.reset_time.isoformat(),
            "timezone": detection.timezone,
            "session_id": detection.session_id or payload.get("session_id"),
            "status_file": str(settings.status_file),
        },
    }
    print(json.dumps(output))
    return 0


def cmd_test(args: argparse.Namespace) -> int:
    settings = _settings()
    seconds = args.seconds if args.seconds is not None else settings.resume.test_countdown_seconds
    reset_time = utc_now() + timedelta(seconds=seconds)
    event = DetectionEvent(
        reset_time=reset_time,
        timezone=local_timezone_name(),
        message=f"Test detection, resets in {seconds:g}s",
    )
    store = DetectionQueueStore(settings.status_file)
    if not store.add_detection(event):
        print("A detection with that reset time is already queued", file=sys.stderr)
        return 1

    print(f"Seeded test detection {event.id}; resume due at {event.reset_time.isoformat()}")
    if PidFile(settings.pid_file).running_pid() is None:
        print("Daemon not running; run 'autoresume start' to watch the countdown")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoresume",
        description="Resume interactive AI sessions after a usage-limit reset",
    )
    sub = parser.add_subparsers(dest="cmd")

    p_start = sub.add_parser(
        "start", aliases=["monitor"], help="Run the daemon in the foreground"
    )
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Stop the running daemon")
    p_stop.set_defaults(func=cmd_stop)

    p_status = sub.add_parser("status", help="Show daemon and queue status")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_status.set_defaults(func=cmd_status)

    p_restart = sub.add_parser("restart", help="Stop the daemon and start it detached")
    p_restart.set_defaults(func=cmd_restart)

    p_ensure = sub.add_parser("ensure", help="Session-start hook: make sure the daemon runs")
    p_ensure.set_defaults(func=cmd_ensure)

    p_hook = sub.add_parser("hook", help="End-of-turn hook: read the payload from stdin")
    p_hook.set_defaults(func=cmd_hook)

    p_test = sub.add_parser("test", help="Seed a synthetic detection with a short countdown")
    p_test.add_argument(
        "--seconds",
        type=float,
        default=None,
        help="Countdown length (default: resume.testCountdownSeconds)",
    )
    p_test.set_defaults(func=cmd_test)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return 1
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
