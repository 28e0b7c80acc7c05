"""Resume state machine: countdown, grace delay, delivery, verification, retry."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from .config import ResumeOptions
from .delivery import DeliveryReport, TieredDelivery
from .detection.transcript import find_latest_transcript, is_reset_time_stale
from .discovery import ProcessDiscoverer
from .hooks import HookRegistry
from .notify import Notifier
from .storage import DetectionEvent, DetectionQueueStore
from .storage.models import utc_now
from .verifier import FileBaseline, VerificationResult, verify_resume

logger = logging.getLogger(__name__)

COUNTDOWN_TICK_SECONDS = 30.0


class SchedulerState(str, Enum):
    IDLE = "idle"
    COUNTING_DOWN = "countingDown"
    POST_RESET_DELAY = "postResetDelay"
    DELIVERING = "delivering"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


BUSY_STATES = frozenset({SchedulerState.DELIVERING, SchedulerState.VERIFYING})
FINISHED_STATES = frozenset({SchedulerState.COMPLETED, SchedulerState.FAILED})

Verify = Callable[..., Awaitable[VerificationResult]]


class ResumeScheduler:
    """Drives one Detection Event at a time from countdown to a terminal status.

    ``track`` is called on every watch tick with the store's next pending event. The
    same reset time is a no-op, a different one re-arms a cycle that is still counting
    down, and a cycle that is delivering or verifying is never interrupted.
    """

    def __init__(
        self,
        *,
        store: DetectionQueueStore,
        discoverer: ProcessDiscoverer,
        delivery: TieredDelivery,
        options: ResumeOptions,
        transcripts_root: Path,
        hooks: HookRegistry | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        verify: Verify = verify_resume,
    ) -> None:
        self._store = store
        self._discoverer = discoverer
        self._delivery = delivery
        self._options = options
        self._transcripts_root = Path(transcripts_root)
        self._hooks = hooks or HookRegistry()
        self._notifier = notifier
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic
        self._verify = verify

        self._state = SchedulerState.IDLE
        self._current: DetectionEvent | None = None
        self._task: asyncio.Task[None] | None = None
        self._attempt = 0
        self.transitions: list[SchedulerState] = []
        self.last_report: DeliveryReport | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def current(self) -> DetectionEvent | None:
        return self._current

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self.running and self._state in BUSY_STATES

    def _set_state(self, state: SchedulerState) -> None:
        if state is self._state:
            return
        logger.info(
            "Scheduler state change",
            extra={
                "from_state": self._state.value,
                "to_state": state.value,
                "event_id": self._current.id if self._current else None,
            },
        )
        self._state = state
        self.transitions.append(state)

    def track(self, event: DetectionEvent) -> bool:
        """Begin a cycle for ``event`` if needed; return True when one was started."""

        if self._current is not None and self._current.same_reset(event):
            if self.running or self._state in FINISHED_STATES:
                return False

        if self.busy:
            logger.debug(
                "Resume in progress, deferring event", extra={"event_id": event.id}
            )
            return False

        if self.running:
            logger.info(
                "Re-arming countdown",
                extra={
                    "previous_reset": (
                        self._current.reset_time.isoformat() if self._current else None
                    ),
                    "reset_time": event.reset_time.isoformat(),
                },
            )
            if self._task is not None:
                self._task.cancel()

        self._current = event
        self._attempt = 0
        self._state = SchedulerState.IDLE
        self._task = asyncio.create_task(self._run_cycle(event), name=f"resume-{event.id}")
        self._task.add_done_callback(self._on_cycle_done)
        return True

    def _on_cycle_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Resume cycle aborted",
                exc_info=exc,
                extra={"event_id": self._current.id if self._current else None},
            )
            # Leave the event active so the next watch tick starts a fresh cycle.
            self._state = SchedulerState.IDLE

    async def cancel(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait(self) -> None:
        """Wait for the active cycle, if any, to finish."""

        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def describe(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "eventId": self._current.id if self._current else None,
            "resetTime": self._current.reset_time.isoformat() if self._current else None,
            "attempt": self._attempt,
        }

    async def _wait_until(self, moment: datetime) -> None:
        while True:
            remaining = (moment - self._clock()).total_seconds()
            if remaining <= 0:
                return
            await self._sleep(min(remaining, COUNTDOWN_TICK_SECONDS))

    async def _transcript_for(self, event: DetectionEvent) -> Path | None:
        if event.transcript_path:
            path = Path(event.transcript_path)
            if path.is_file():
                return path
        return await asyncio.to_thread(find_latest_transcript, self._transcripts_root)

    def _payload(self, event: DetectionEvent, **extra: Any) -> dict[str, Any]:
        return {"detection": event.to_record(), "attempt": self._attempt, **extra}

    async def _run_cycle(self, event: DetectionEvent) -> None:
        options = self._options
        now = self._clock()
        if is_reset_time_stale(event.reset_time, options.stale_threshold_seconds, now=now):
            logger.warning(
                "Discarding stale detection",
                extra={"event_id": event.id, "reset_time": event.reset_time.isoformat()},
            )
            self._store.update_status(event.id, "failed")
            self._set_state(SchedulerState.FAILED)
            await self._hooks.emit("resume_failed", self._payload(event, reason="stale"))
            return

        await self._hooks.emit("detection_found", self._payload(event))

        self._set_state(SchedulerState.COUNTING_DOWN)
        await self._wait_until(event.reset_time)

        self._set_state(SchedulerState.POST_RESET_DELAY)
        await self._sleep(options.post_reset_delay_seconds)

        self._set_state(SchedulerState.DELIVERING)
        self._store.update_status(event.id, "resuming")

        total_attempts = options.max_retries + 1
        for attempt in range(total_attempts):
            self._attempt = attempt + 1
            self._set_state(SchedulerState.DELIVERING)
            if await self._attempt_resume(event):
                self._store.update_status(event.id, "completed")
                self._set_state(SchedulerState.COMPLETED)
                await self._hooks.emit("resume_verified", self._payload(event))
                return

            if attempt + 1 < total_attempts:
                delay = options.retry_delay(attempt)
                logger.info(
                    "Resume not confirmed, retrying",
                    extra={"event_id": event.id, "attempt": self._attempt, "delay": delay},
                )
                await self._sleep(delay)

        await self._fail(event, total_attempts)

    async def _attempt_resume(self, event: DetectionEvent) -> bool:
        targets = await self._discoverer.discover(hint=event.target_process_hint)
        transcript = await self._transcript_for(event)
        baseline = FileBaseline.capture(transcript) if transcript else None

        report = await self._delivery.deliver(targets)
        self.last_report = report
        await self._hooks.emit("resume_sent", self._payload(event, delivery=report.to_dict()))
        if not report.success:
            logger.warning(
                "Delivery failed on every tier",
                extra={"event_id": event.id, "tiers": report.tiers_attempted},
            )
            return False

        self._set_state(SchedulerState.VERIFYING)
        if baseline is None:
            logger.warning(
                "No transcript to verify against, accepting delivery",
                extra={"event_id": event.id},
            )
            return True

        result = await self._verify(
            baseline,
            timeout=self._options.verification_window_seconds,
            poll_interval=self._options.verification_poll_seconds,
            monotonic=self._monotonic,
            sleep=self._sleep,
        )
        return result.verified

    async def _fail(self, event: DetectionEvent, attempts: int) -> None:
        self._store.update_status(event.id, "failed")
        self._set_state(SchedulerState.FAILED)
        logger.error(
            "Resume failed after retries",
            extra={"event_id": event.id, "attempts": attempts},
        )
        await self._hooks.emit("resume_failed", self._payload(event, reason="retries_exhausted"))
        if self._notifier is not None:
            await self._notifier.notify(
                "Auto-resume failed",
                f"Could not resume the session after {attempts} attempts. "
                "Type 'continue' manually.",
            )


__all__ = ["BUSY_STATES", "ResumeScheduler", "SchedulerState"]
