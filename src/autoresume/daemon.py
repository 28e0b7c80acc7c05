"""Resident daemon: watch loop, heartbeat, self-watchdog, log rotation and fallback poll."""

from __future__ import annotations

import asyncio
import gc
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from logging.handlers import WatchedFileHandler
from pathlib import Path
from typing import Awaitable, Callable

import psutil

from .config import AutoResumeSettings
from .delivery import AutomationChannel, PtyChannel, ResumeInput, TieredDelivery, TmuxChannel
from .detection.transcript import (
    TranscriptTail,
    analyze_lines,
    find_latest_transcript,
    is_reset_time_stale,
)
from .discovery import ProcessDiscoverer
from .hooks import HookRegistry
from .notify import Notifier
from .runner import CommandRunner
from .scheduler import ResumeScheduler
from .storage import DetectionQueueStore, HealthStore
from .storage.fs import atomic_write_text
from .storage.models import utc_now

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
EXIT_OK = 0
EXIT_CRASH = 1
EXIT_WATCHDOG = 70
STOP_TIMEOUT_SECONDS = 5.0


class WatchdogFatalError(RuntimeError):
    """Raised when the self-watchdog cannot repair the daemon."""


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(WatchedFileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class LogRotator:
    """Size-based rotation keeping a single prior generation (``daemon.log.1``)."""

    def __init__(self, path: Path, max_bytes: int) -> None:
        self._path = Path(path)
        self._max_bytes = max_bytes

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + ".1")

    def check(self) -> bool:
        try:
            size = self._path.stat().st_size
        except FileNotFoundError:
            return False
        if size <= self._max_bytes:
            return False
        os.replace(self._path, self.backup_path)
        logger.info("Rotated log file", extra={"path": str(self._path), "size": size})
        return True


class PidFile:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> int | None:
        try:
            return int(self._path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def write(self, pid: int | None = None) -> None:
        atomic_write_text(self._path, f"{pid if pid is not None else os.getpid()}\n")

    def remove(self) -> None:
        self._path.unlink(missing_ok=True)

    def running_pid(self) -> int | None:
        """Pid of a live owner, removing the file when it is stale."""

        pid = self.read()
        if pid is None:
            if self._path.exists():
                self.remove()
            return None
        if is_process_running(pid):
            return pid
        logger.info("Removing stale pid file", extra={"pid": pid})
        self.remove()
        return None


def current_rss() -> int:
    return psutil.Process().memory_info().rss


def is_process_running(pid: int) -> bool:
    try:
        process = psutil.Process(pid)
        return process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return psutil.pid_exists(pid)


def stop_process(
    pid: int,
    *,
    timeout: float = STOP_TIMEOUT_SECONDS,
    poll_interval: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """SIGTERM, wait up to ``timeout``, then SIGKILL. Returns True once the pid is gone."""

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_running(pid):
            return True
        sleep(poll_interval)

    logger.warning("Daemon ignored SIGTERM, sending SIGKILL", extra={"pid": pid})
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True
    sleep(poll_interval)
    return not is_process_running(pid)


def spawn_detached() -> int:
    """Start ``autoresume start`` in its own session and return its pid.

    Its standard streams go to the null device; the daemon writes only through its own
    rotated log file.
    """

    process = subprocess.Popen(
        [sys.executable, "-m", "autoresume", "start"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    return process.pid


@dataclass
class DaemonContext:
    """Everything the daemon's loops share, passed explicitly instead of module globals."""

    settings: AutoResumeSettings
    store: DetectionQueueStore
    health: HealthStore
    scheduler: ResumeScheduler
    notifier: Notifier
    rotator: LogRotator
    pid_file: PidFile
    tail: TranscriptTail = field(default_factory=TranscriptTail)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    memory_usage: Callable[[], int] = current_rss

    last_watch_tick: float | None = None
    watchdog_failures: int = 0
    exit_code: int = EXIT_OK
    _stop: asyncio.Event | None = field(default=None, init=False, repr=False)
    _tasks: dict[str, asyncio.Task[None]] = field(default_factory=dict, init=False, repr=False)
    _last_watch_problems: list[str] = field(default_factory=list, init=False, repr=False)

    @classmethod
    def build(
        cls,
        settings: AutoResumeSettings,
        *,
        runner: CommandRunner | None = None,
        hooks: HookRegistry | None = None,
    ) -> "DaemonContext":
        runner = runner or CommandRunner()
        store = DetectionQueueStore(settings.status_file)
        notifier = Notifier(runner, enabled=settings.daemon.notifications_enabled)
        resume = ResumeInput(
            menu_key=settings.resume.menu_selection_key, text=settings.resume.resume_text
        )
        delivery = TieredDelivery(
            TmuxChannel(runner), PtyChannel(), AutomationChannel(runner), resume
        )
        scheduler = ResumeScheduler(
            store=store,
            discoverer=ProcessDiscoverer(runner, target_program=settings.resume.target_program),
            delivery=delivery,
            options=settings.resume,
            transcripts_root=settings.transcripts_root,
            hooks=hooks,
            notifier=notifier,
        )
        return cls(
            settings=settings,
            store=store,
            health=HealthStore(settings.heartbeat_file),
            scheduler=scheduler,
            notifier=notifier,
            rotator=LogRotator(settings.log_file, settings.daemon.max_log_size_bytes),
            pid_file=PidFile(settings.pid_file),
        )

    # -- loops -----------------------------------------------------------------

    def watch_tick(self) -> None:
        event = self.store.get_next_pending()
        if event is not None:
            self.scheduler.track(event)
        self.last_watch_tick = time.monotonic()

    async def watch_loop(self) -> None:
        interval = self.settings.daemon.watch_interval_seconds
        while True:
            try:
                self.watch_tick()
            except OSError as exc:
                logger.warning("Watch tick failed", extra={"error": str(exc)})
            await self.sleep(interval)

    async def heartbeat_loop(self) -> None:
        while True:
            try:
                self.health.beat()
            except OSError as exc:
                logger.warning("Heartbeat write failed", extra={"error": str(exc)})
            await self.sleep(self.settings.daemon.heartbeat_interval_seconds)

    async def log_rotation_loop(self) -> None:
        while True:
            await self.sleep(self.settings.daemon.log_check_interval_seconds)
            try:
                self.rotator.check()
            except OSError as exc:
                logger.warning("Log rotation failed", extra={"error": str(exc)})

    def poll_transcripts(self) -> bool:
        """Tail the newest transcript when the end-of-turn hook has been silent.

        Returns True when a new detection was queued.
        """

        options = self.settings.daemon
        last_hook_run = self.store.last_hook_run
        now = utc_now()
        if last_hook_run is not None:
            if (now - last_hook_run).total_seconds() < options.hook_silence_seconds:
                return False

        latest = find_latest_transcript(self.settings.transcripts_root)
        if latest is None:
            return False

        stale_after = self.settings.resume.stale_threshold_seconds
        detection = analyze_lines(
            self.tail.read_new(latest), now=now, max_entry_age_seconds=stale_after, source=latest
        )
        if detection is None:
            return False
        if is_reset_time_stale(detection.reset_time, stale_after, now=now):
            logger.info(
                "Ignoring stale reset time from transcript",
                extra={"reset_time": detection.reset_time.isoformat()},
            )
            return False

        added = self.store.add_detection(detection.to_event())
        if added:
            logger.info(
                "Fallback poll queued detection",
                extra={"transcript": str(latest), "reset_time": detection.reset_time.isoformat()},
            )
        return added

    async def transcript_poll_loop(self) -> None:
        while True:
            await self.sleep(self.settings.daemon.transcript_poll_interval_seconds)
            try:
                await asyncio.to_thread(self.poll_transcripts)
            except OSError as exc:
                logger.warning("Transcript poll failed", extra={"error": str(exc)})

    # -- self-watchdog ---------------------------------------------------------

    def check_health(self) -> list[str]:
        problems: list[str] = []
        options = self.settings.daemon

        watch_task = self._tasks.get("watch")
        stall_limit = max(options.watch_interval_seconds * 10, 30.0)
        if watch_task is None or watch_task.done():
            problems.append("watch loop not running")
        elif self.last_watch_tick is None or time.monotonic() - self.last_watch_tick > stall_limit:
            problems.append("watch loop stalled")

        home = self.settings.home
        if not home.is_dir() or not os.access(home, os.W_OK):
            problems.append(f"state directory not writable: {home}")

        rss_mb = self.memory_usage() / (1024 * 1024)
        if rss_mb > options.memory_ceiling_mb:
            problems.append(
                f"memory {rss_mb:.0f}MB over ceiling {options.memory_ceiling_mb:.0f}MB"
            )
        return problems

    def repair(self, problems: list[str]) -> None:
        for problem in problems:
            if problem.startswith("watch loop"):
                stale = self._tasks.get("watch")
                if stale is not None and not stale.done():
                    stale.cancel()
                self.last_watch_tick = None
                self._start("watch", self.watch_loop())
            elif problem.startswith("state directory"):
                try:
                    self.settings.home.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    logger.error("Cannot recreate state directory", extra={"error": str(exc)})
            elif problem.startswith("memory"):
                gc.collect()

    def run_watchdog_check(self) -> list[str]:
        """One watchdog pass; raises WatchdogFatalError after repeated failed repairs."""

        problems = self.check_health()
        watch_problems = [problem for problem in problems if problem.startswith("watch loop")]
        # A restarted watch loop only proves itself on the next pass.
        watch_repeated = bool(watch_problems) and bool(self._last_watch_problems)
        self._last_watch_problems = watch_problems
        if not problems:
            self.watchdog_failures = 0
            return []

        logger.warning("Self-check failed, repairing", extra={"problems": problems})
        self.repair(problems)
        remaining = [
            problem for problem in self.check_health() if not problem.startswith("watch loop")
        ]
        if watch_repeated:
            remaining = watch_problems + remaining
        if not remaining:
            self.watchdog_failures = 0
            return problems

        self.watchdog_failures += 1
        if self.watchdog_failures >= self.settings.daemon.watchdog_max_failures:
            raise WatchdogFatalError("; ".join(remaining))
        return problems

    async def watchdog_loop(self) -> None:
        while True:
            await self.sleep(self.settings.daemon.watchdog_interval_seconds)
            self.run_watchdog_check()

    # -- lifecycle -------------------------------------------------------------

    def _start(self, name: str, coroutine: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coroutine)
        task.add_done_callback(lambda finished: self._on_loop_done(name, finished))
        self._tasks[name] = task

    def _on_loop_done(self, name: str, task: asyncio.Future[None]) -> None:
        if task.cancelled() or self._tasks.get(name) is not task:
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, WatchdogFatalError):
            logger.critical("Watchdog giving up", extra={"error": str(exc)})
            self.request_stop(EXIT_WATCHDOG)
        elif name == "watch":
            # The self-watchdog restarts the watch loop on its next pass.
            logger.error("Watch loop crashed", exc_info=exc)
        else:
            logger.critical("Daemon loop crashed", exc_info=exc, extra={"loop": name})
            self.request_stop(EXIT_CRASH)

    def request_stop(self, exit_code: int = EXIT_OK) -> None:
        if exit_code and not self.exit_code:
            self.exit_code = exit_code
        if self._stop is not None:
            self._stop.set()

    async def _shutdown(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)

        if self.scheduler.busy:
            grace = self.settings.daemon.shutdown_grace_seconds
            logger.info("Waiting for in-flight resume", extra={"grace": grace})
            try:
                await asyncio.wait_for(asyncio.shield(self.scheduler.wait()), grace)
            except asyncio.TimeoutError:
                logger.warning("In-flight resume did not finish before shutdown")
            except Exception:
                logger.exception("In-flight resume failed during shutdown")
        await self.scheduler.cancel()

    async def run(self, *, install_signals: bool = True) -> int:
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        if install_signals:
            for signum in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(signum, self.request_stop)

        self.settings.home.mkdir(parents=True, exist_ok=True)
        self.pid_file.write()
        logger.info(
            "Daemon started",
            extra={"pid": os.getpid(), "home": str(self.settings.home)},
        )

        try:
            self.health.beat()
            self._start("watch", self.watch_loop())
            self._start("heartbeat", self.heartbeat_loop())
            self._start("watchdog", self.watchdog_loop())
            self._start("logs", self.log_rotation_loop())
            if self.settings.daemon.transcript_polling_enabled:
                self._start("transcripts", self.transcript_poll_loop())

            await self._stop.wait()
            await self._shutdown()
        except Exception:
            logger.critical("Unhandled daemon fault", exc_info=True)
            self.exit_code = EXIT_CRASH
        finally:
            if install_signals:
                for signum in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(signum)
            if self.exit_code == EXIT_CRASH:
                await self.notifier.notify(
                    "Auto-resume daemon crashed", f"See {self.settings.log_file} for details."
                )
            self.pid_file.remove()
            self.health.clear()

        logger.info("Daemon stopped", extra={"exit_code": self.exit_code})
        return self.exit_code


__all__ = [
    "DaemonContext",
    "EXIT_CRASH",
    "EXIT_OK",
    "EXIT_WATCHDOG",
    "STOP_TIMEOUT_SECONDS",
    "LOG_FORMAT",
    "LogRotator",
    "PidFile",
    "WatchdogFatalError",
    "configure_logging",
    "is_process_running",
    "spawn_detached",
    "stop_process",
]
