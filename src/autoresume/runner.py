"""Async runner for the external tools the daemon drives (tmux, xdotool, notify-send)."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from typing import Iterable, Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

TIMEOUT_RETURNCODE = 124


class CommandError(RuntimeError):
    """Base class for external command errors."""


class CommandNotFoundError(CommandError):
    """Raised when an external executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of an external command invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE

    def describe(self) -> str:
        detail = self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"
        return f"{' '.join(self.args)}: {detail}"


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


class CommandRunner:
    """Execute external commands asynchronously without blocking the event loop."""

    def __init__(self, *, default_timeout: float = 5.0) -> None:
        self._default_timeout = default_timeout

    @staticmethod
    def which(executable: str) -> str | None:
        return shutil.which(executable)

    def available(self, executable: str) -> bool:
        return self.which(executable) is not None

    async def run(self, *args: str, timeout: float | None = None) -> CommandResult:
        """Run ``args``; raise CommandNotFoundError when the executable is missing."""

        if not args:
            raise ValueError("run() requires a command")
        if self.which(args[0]) is None:
            raise CommandNotFoundError(f"{args[0]} executable not found on PATH")
        return await self._invoke(*args, timeout=timeout or self._default_timeout)

    async def _invoke(self, *args: str, timeout: float) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
        except FileNotFoundError as exc:
            raise CommandNotFoundError(f"{args[0]} executable not found") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(
                args=tuple(args), returncode=TIMEOUT_RETURNCODE, stdout="", stderr="timeout"
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(
            args=tuple(args), returncode=process.returncode or 0, stdout=stdout, stderr=stderr
        )


class FakeCommandRunner(CommandRunner):
    """Test double that records invocations and replays scripted results.

    ``responses`` maps an executable name to a list of results consumed in order; a
    missing entry yields a successful empty result. Executables listed in ``missing``
    behave as if they were not installed.
    """

    def __init__(
        self,
        responses: Mapping[str, Iterable[CommandResult]] | None = None,
        *,
        missing: Iterable[str] = (),
    ) -> None:
        super().__init__()
        self._responses = {name: list(results) for name, results in (responses or {}).items()}
        self._missing = set(missing)
        self._invocations: list[tuple[str, ...]] = []

    def which(self, executable: str) -> str | None:  # type: ignore[override]
        if executable in self._missing:
            return None
        return f"/usr/bin/{executable}"

    async def _invoke(self, *args: str, timeout: float) -> CommandResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        queue = self._responses.get(args[0])
        if queue:
            return queue.pop(0)
        return CommandResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = [
    "CommandError",
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "TIMEOUT_RETURNCODE",
    "sanitize_environment",
]
