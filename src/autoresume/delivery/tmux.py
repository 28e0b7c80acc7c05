"""Deliver resume keystrokes to a tmux pane."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..runner import CommandError, CommandRunner
from .base import DeliveryError, ResumeInput

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class KeyStep:
    """One ``send-keys`` call followed by a pause in seconds."""

    keys: str
    delay: float
    literal: bool = False


def build_resume_sequence(resume: ResumeInput | None = None) -> list[KeyStep]:
    """Dismiss, try the menu option, then dismiss again and type the text.

    The pauses are part of the contract: without them the prompt concatenates the
    text with earlier keys or treats Enter as a plain newline.
    """

    resume = resume or ResumeInput()
    return [
        KeyStep("Escape", 0.5),
        KeyStep("Escape", 0.3),
        KeyStep(resume.menu_key, 1.0, literal=True),
        KeyStep("Escape", 0.5),
        KeyStep("Escape", 0.3),
        KeyStep("C-u", 0.2),
        KeyStep(resume.text, 0.2, literal=True),
        KeyStep("Enter", 0.0),
    ]


class TmuxChannel:
    name = "tmux"

    def __init__(self, runner: CommandRunner, *, sleep: Sleep = asyncio.sleep) -> None:
        self._runner = runner
        self._sleep = sleep

    async def send_sequence(self, pane: str, sequence: list[KeyStep]) -> None:
        for step in sequence:
            args = ["tmux", "send-keys", "-t", pane]
            if step.literal:
                args.append("-l")
            args.append(step.keys)
            try:
                result = await self._runner.run(*args)
            except CommandError as exc:
                raise DeliveryError(f"tmux unavailable: {exc}") from exc
            if not result.ok:
                raise DeliveryError(f"tmux send-keys failed for {pane}: {result.describe()}")
            if step.delay > 0:
                await self._sleep(step.delay)

    async def deliver(self, pane: str, resume: ResumeInput) -> None:
        logger.debug("Sending resume sequence", extra={"pane": pane})
        await self.send_sequence(pane, build_resume_sequence(resume))


__all__ = ["KeyStep", "TmuxChannel", "build_resume_sequence"]
