"""Write resume bytes straight to a session's pseudo-terminal device."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable

from .base import DeliveryError, ResumeInput

logger = logging.getLogger(__name__)

ESCAPE = b"\x1b"
CLEAR_LINE = b"\x15"
# The prompt only submits on carriage return; a line feed is inserted as text.
SUBMIT = b"\r"


def build_phases(resume: ResumeInput) -> tuple[bytes, bytes]:
    menu = ESCAPE + ESCAPE + resume.menu_key.encode("utf-8")
    text = ESCAPE + ESCAPE + CLEAR_LINE + resume.text.encode("utf-8") + SUBMIT
    return menu, text


def write_device(path: str, data: bytes) -> None:
    flags = os.O_WRONLY | getattr(os, "O_NOCTTY", 0)
    try:
        fd = os.open(path, flags)
    except OSError as exc:
        raise DeliveryError(f"cannot open {path}: {exc}") from exc
    try:
        os.write(fd, data)
    except OSError as exc:
        raise DeliveryError(f"write to {path} failed: {exc}") from exc
    finally:
        os.close(fd)


class PtyChannel:
    name = "pty"

    def __init__(
        self,
        *,
        settle_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        writer: Callable[[str, bytes], None] = write_device,
    ) -> None:
        self._settle_delay = settle_delay
        self._sleep = sleep
        self._writer = writer

    async def deliver(self, tty_path: str, resume: ResumeInput) -> None:
        menu, text = build_phases(resume)
        logger.debug("Writing resume bytes", extra={"tty": tty_path})
        await asyncio.to_thread(self._writer, tty_path, menu)
        await self._sleep(self._settle_delay)
        await asyncio.to_thread(self._writer, tty_path, text)


__all__ = ["PtyChannel", "build_phases", "write_device"]
