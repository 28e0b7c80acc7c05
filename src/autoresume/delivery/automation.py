"""Last-resort keystroke injection against the whole display."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Awaitable, Callable

from ..runner import CommandError, CommandRunner
from .base import DeliveryError, ResumeInput

logger = logging.getLogger(__name__)

TERMINAL_WINDOW_CLASSES = "gnome-terminal|konsole|xterm|terminator|alacritty|kitty"
MACOS_TERMINAL_APPS = ("Terminal", "iTerm", "iTerm2")


def _applescript_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_applescript(resume: ResumeInput) -> str:
    apps = ", ".join(_applescript_string(app) for app in MACOS_TERMINAL_APPS)
    return "\n".join(
        [
            'tell application "System Events"',
            f"  repeat with appName in {{{apps}}}",
            "    if (exists process appName) then",
            "      tell process appName",
            "        set frontmost to true",
            "        key code 53",
            f"        keystroke {_applescript_string(resume.menu_key)}",
            "        delay 1",
            "        key code 53",
            f"        keystroke {_applescript_string(resume.text)}",
            "        keystroke return",
            "        delay 0.5",
            "      end tell",
            "    end if",
            "  end repeat",
            "end tell",
        ]
    )


class AutomationChannel:
    """Type into terminal windows with ``xdotool`` (Linux) or ``osascript`` (macOS)."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        platform: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._runner = runner
        self._platform = platform or sys.platform
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "osascript" if self._platform == "darwin" else "xdotool"

    async def _run(self, *args: str, timeout: float = 10.0) -> None:
        try:
            result = await self._runner.run(*args, timeout=timeout)
        except CommandError as exc:
            raise DeliveryError(f"{self.name} unavailable: {exc}") from exc
        if not result.ok:
            raise DeliveryError(result.describe())

    async def _window_ids(self) -> list[str]:
        try:
            result = await self._runner.run(
                "xdotool", "search", "--class", TERMINAL_WINDOW_CLASSES
            )
        except CommandError as exc:
            raise DeliveryError(f"xdotool unavailable: {exc}") from exc
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def deliver(self, resume: ResumeInput) -> None:
        if self._platform == "darwin":
            await self._run("osascript", "-e", build_applescript(resume), timeout=30.0)
            return

        windows = await self._window_ids()
        if not windows:
            raise DeliveryError("no terminal windows found for xdotool")

        for window in windows:
            await self._run("xdotool", "windowactivate", "--sync", window)
            await self._run("xdotool", "key", "--clearmodifiers", "Escape", "Escape")
            await self._run("xdotool", "type", "--clearmodifiers", "--", resume.menu_key)
            await self._sleep(1.0)
            await self._run("xdotool", "key", "--clearmodifiers", "Escape", "Escape", "ctrl+u")
            await self._run("xdotool", "type", "--clearmodifiers", "--", resume.text)
            await self._run("xdotool", "key", "--clearmodifiers", "Return")
        logger.info("Keystrokes sent to terminal windows", extra={"windows": len(windows)})


__all__ = ["AutomationChannel", "build_applescript"]
