"""Best-effort desktop notifications."""

from __future__ import annotations

import logging
import sys

from .runner import CommandError, CommandRunner

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT_SECONDS = 5.0


def _applescript_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class Notifier:
    """Shows a desktop notification with ``notify-send`` or ``osascript``.

    Failures are logged and reported as ``False``; nothing here ever raises.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        enabled: bool = True,
        platform: str | None = None,
        timeout: float = NOTIFY_TIMEOUT_SECONDS,
    ) -> None:
        self._runner = runner
        self._enabled = enabled
        self._platform = platform or sys.platform
        self._timeout = timeout

    def command(self, title: str, message: str) -> tuple[str, ...]:
        if self._platform == "darwin":
            script = (
                f"display notification {_applescript_quote(message)} "
                f"with title {_applescript_quote(title)}"
            )
            return ("osascript", "-e", script)
        return ("notify-send", "--app-name=autoresume", title, message)

    async def notify(self, title: str, message: str) -> bool:
        if not self._enabled:
            return False
        try:
            result = await self._runner.run(*self.command(title, message), timeout=self._timeout)
        except (CommandError, OSError) as exc:
            logger.debug("Notification unavailable", extra={"error": str(exc)})
            return False
        if not result.ok:
            logger.debug("Notification failed", extra={"detail": result.describe()})
            return False
        return True


__all__ = ["Notifier"]
