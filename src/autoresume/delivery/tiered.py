"""Deliver resume input to every discovered target, tier by tier."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..discovery import TargetProcess
from .automation import AutomationChannel
from .base import DeliveryError, ResumeInput
from .pty import PtyChannel
from .tmux import TmuxChannel

logger = logging.getLogger(__name__)

TIER_ORDER = ("multiplexer", "pseudoTerminal")


@dataclass(slots=True)
class TargetAttempt:
    """Outcome for one target; ``target`` is None for the display-wide fallback."""

    target: TargetProcess | None
    success: bool
    tiers_attempted: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.target.pid if self.target else None,
            "address": self.target.address if self.target else None,
            "success": self.success,
            "tiersAttempted": list(self.tiers_attempted),
            "error": self.error,
        }


@dataclass(slots=True)
class DeliveryReport:
    success: bool
    attempts: list[TargetAttempt] = field(default_factory=list)
    tiers_attempted: list[str] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tiersAttempted": list(self.tiers_attempted),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


class TieredDelivery:
    """Send to every target through its own channel, then fall back to UI automation.

    Multiplexer targets go first, then pseudo-terminal targets, one at a time. A failing
    target is recorded and skipped. The fallback runs only when nothing was discovered
    or every target failed, and the call succeeds if any target or the fallback did.
    """

    def __init__(
        self,
        tmux: TmuxChannel,
        pty: PtyChannel,
        automation: AutomationChannel,
        resume: ResumeInput,
    ) -> None:
        self._tmux = tmux
        self._pty = pty
        self._automation = automation
        self._resume = resume

    async def _send(self, target: TargetProcess) -> TargetAttempt:
        if target.delivery_method == "multiplexer":
            channel_name = self._tmux.name
            coroutine = self._tmux.deliver(target.pane_target or "", self._resume)
        else:
            channel_name = self._pty.name
            coroutine = self._pty.deliver(target.tty_path or "", self._resume)

        attempt = TargetAttempt(target=target, success=False, tiers_attempted=[channel_name])
        try:
            await coroutine
        except (DeliveryError, OSError) as exc:
            attempt.error = str(exc)
            logger.warning(
                "Delivery to target failed",
                extra={"target": target.describe(), "error": attempt.error},
            )
            return attempt

        attempt.success = True
        logger.info("Delivered resume input", extra={"target": target.describe()})
        return attempt

    async def _fallback(self) -> TargetAttempt:
        attempt = TargetAttempt(target=None, success=False, tiers_attempted=[self._automation.name])
        try:
            await self._automation.deliver(self._resume)
        except (DeliveryError, OSError) as exc:
            attempt.error = str(exc)
            logger.warning("UI automation fallback failed", extra={"error": attempt.error})
            return attempt
        attempt.success = True
        return attempt

    async def deliver(self, targets: Iterable[TargetProcess]) -> DeliveryReport:
        ordered = sorted(targets, key=lambda target: TIER_ORDER.index(target.delivery_method))
        report = DeliveryReport(success=False)

        for target in ordered:
            attempt = await self._send(target)
            report.attempts.append(attempt)
            for tier in attempt.tiers_attempted:
                if tier not in report.tiers_attempted:
                    report.tiers_attempted.append(tier)

        if report.delivered == 0:
            fallback = await self._fallback()
            report.attempts.append(fallback)
            report.tiers_attempted.extend(fallback.tiers_attempted)

        report.success = report.delivered > 0
        return report


__all__ = ["DeliveryReport", "TargetAttempt", "TieredDelivery"]
