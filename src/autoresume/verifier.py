"""Confirm that a session resumed by watching its transcript grow."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class FileBaseline:
    path: Path
    size: int
    mtime: float

    @classmethod
    def capture(cls, path: Path) -> "FileBaseline":
        """Record the current size and mtime; a missing file counts as empty."""

        path = Path(path)
        try:
            stat = path.stat()
        except OSError:
            return cls(path=path, size=0, mtime=0.0)
        return cls(path=path, size=stat.st_size, mtime=stat.st_mtime)


@dataclass(slots=True)
class VerificationResult:
    verified: bool
    new_bytes: int
    elapsed: float

    def to_dict(self) -> dict[str, object]:
        return {"verified": self.verified, "newBytes": self.new_bytes, "elapsed": self.elapsed}


async def verify_resume(
    baseline: FileBaseline,
    *,
    timeout: float,
    poll_interval: float = 1.0,
    monotonic: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> VerificationResult:
    """Poll until the file grows or its mtime moves past ``baseline``, or ``timeout`` passes.

    An inaccessible file is retried on every poll and reported unverified at the timeout.
    """

    start = monotonic()
    while True:
        elapsed = monotonic() - start
        if elapsed >= timeout:
            logger.info(
                "No transcript activity within window",
                extra={"path": str(baseline.path), "elapsed": elapsed},
            )
            return VerificationResult(verified=False, new_bytes=0, elapsed=elapsed)

        try:
            stat = baseline.path.stat()
        except OSError:
            stat = None

        if stat is not None and (stat.st_size > baseline.size or stat.st_mtime > baseline.mtime):
            new_bytes = max(0, stat.st_size - baseline.size)
            logger.info(
                "Transcript activity observed",
                extra={"path": str(baseline.path), "new_bytes": new_bytes},
            )
            return VerificationResult(verified=True, new_bytes=new_bytes, elapsed=elapsed)

        await sleep(min(poll_interval, max(timeout - elapsed, 0.0)))


__all__ = ["FileBaseline", "VerificationResult", "verify_resume"]
