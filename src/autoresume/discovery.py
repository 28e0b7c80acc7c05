"""Find every running target-program session and how it can be reached."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Literal

import psutil

from .runner import CommandError, CommandRunner

logger = logging.getLogger(__name__)

DeliveryMethod = Literal["multiplexer", "pseudoTerminal"]

RUNTIME_WRAPPER_PATTERN = re.compile(r"^(node|\d+\.\d+\.\d+)$", re.IGNORECASE)
PSEUDO_TERMINAL_PREFIXES = ("/dev/pts/", "/dev/ttys")
PANE_FORMAT = "#{pane_pid}\t#{pane_id}"
MAX_ANCESTOR_DEPTH = 64


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    pid: int
    ppid: int | None
    name: str
    cmdline: tuple[str, ...] = ()
    terminal: str | None = None


@dataclass(slots=True)
class TargetProcess:
    """One reachable session. Exactly one of ``pane_target``/``tty_path`` is set."""

    pid: int
    delivery_method: DeliveryMethod
    pane_target: str | None = None
    tty_path: str | None = None

    def __post_init__(self) -> None:
        if self.delivery_method == "multiplexer":
            if not self.pane_target or self.tty_path is not None:
                raise ValueError("multiplexer targets carry a pane address only")
        elif self.delivery_method == "pseudoTerminal":
            if not self.tty_path or self.pane_target is not None:
                raise ValueError("pseudo-terminal targets carry a device path only")
        else:
            raise ValueError(f"unknown delivery method: {self.delivery_method}")

    @property
    def address(self) -> str:
        return self.pane_target or self.tty_path or ""

    def describe(self) -> str:
        return f"pid {self.pid} via {self.delivery_method} {self.address}"


def scan_processes() -> list[ProcessSnapshot]:
    """Snapshot the process table with psutil; inaccessible fields come back empty."""

    snapshots: list[ProcessSnapshot] = []
    attrs = ["pid", "ppid", "name", "cmdline", "terminal"]
    for process in psutil.process_iter(attrs, ad_value=None):
        info = process.info
        snapshots.append(
            ProcessSnapshot(
                pid=info["pid"],
                ppid=info.get("ppid"),
                name=info.get("name") or "",
                cmdline=tuple(info.get("cmdline") or ()),
                terminal=info.get("terminal"),
            )
        )
    return snapshots


def parse_pane_map(output: str) -> dict[int, str]:
    panes: dict[int, str] = {}
    for line in output.splitlines():
        pid_text, _, target = line.strip().partition("\t")
        if not target:
            continue
        try:
            panes[int(pid_text)] = target.strip()
        except ValueError:
            continue
    return panes


def is_pseudo_terminal(path: str | None) -> bool:
    return path is not None and path.startswith(PSEUDO_TERMINAL_PREFIXES)


@dataclass(slots=True)
class ProcessDiscoverer:
    """Enumerate target-program processes and classify each by reachability.

    Every step degrades on failure: a missing ``tmux`` yields no multiplexer targets,
    an unreadable or vanished process is skipped, and the caller always receives a
    best-effort list.
    """

    runner: CommandRunner
    target_program: str = "claude"
    process_source: Callable[[], list[ProcessSnapshot]] = field(
        default_factory=lambda: scan_processes
    )
    own_pid: int = field(default_factory=os.getpid)

    def is_target(self, snapshot: ProcessSnapshot) -> bool:
        target = self.target_program.lower()
        if snapshot.pid == self.own_pid:
            return False
        if snapshot.name.lower() == target:
            return True
        if snapshot.cmdline and os.path.basename(snapshot.cmdline[0]).lower() == target:
            return True
        if RUNTIME_WRAPPER_PATTERN.match(snapshot.name):
            return any(target in part.lower() for part in snapshot.cmdline)
        return False

    async def pane_map(self) -> dict[int, str]:
        try:
            result = await self.runner.run("tmux", "list-panes", "-a", "-F", PANE_FORMAT)
        except CommandError as exc:
            logger.debug("Multiplexer unavailable", extra={"error": str(exc)})
            return {}
        if not result.ok:
            logger.debug("No multiplexer panes listed", extra={"detail": result.describe()})
            return {}
        return parse_pane_map(result.stdout)

    async def snapshot(self) -> list[ProcessSnapshot]:
        try:
            return await asyncio.to_thread(self.process_source)
        except (psutil.Error, OSError) as exc:
            logger.warning("Process enumeration failed", extra={"error": str(exc)})
            return []

    @staticmethod
    def find_pane(
        snapshot: ProcessSnapshot, table: dict[int, ProcessSnapshot], panes: dict[int, str]
    ) -> str | None:
        """Walk the ancestry of ``snapshot`` until a pane's root process is found."""

        pid: int | None = snapshot.pid
        seen: set[int] = set()
        for _ in range(MAX_ANCESTOR_DEPTH):
            if pid is None or pid in seen or pid <= 0:
                return None
            if pid in panes:
                return panes[pid]
            seen.add(pid)
            current = table.get(pid)
            if current is None:
                return None
            pid = current.ppid
        return None

    async def discover(self, hint: int | None = None) -> list[TargetProcess]:
        snapshots, panes = await asyncio.gather(self.snapshot(), self.pane_map())
        table = {snapshot.pid: snapshot for snapshot in snapshots}
        candidates = [snapshot for snapshot in snapshots if self.is_target(snapshot)]
        if hint is not None:
            candidates.sort(key=lambda snapshot: snapshot.pid != hint)

        targets: list[TargetProcess] = []
        seen_addresses: set[str] = set()
        for candidate in candidates:
            pane = self.find_pane(candidate, table, panes)
            if pane is not None:
                target = TargetProcess(candidate.pid, "multiplexer", pane_target=pane)
            elif is_pseudo_terminal(candidate.terminal):
                target = TargetProcess(candidate.pid, "pseudoTerminal", tty_path=candidate.terminal)
            else:
                logger.debug("Process unreachable", extra={"pid": candidate.pid})
                continue

            if target.address in seen_addresses:
                continue
            seen_addresses.add(target.address)
            targets.append(target)

        logger.info(
            "Discovered target sessions",
            extra={"count": len(targets), "candidates": len(candidates)},
        )
        return targets


__all__ = [
    "DeliveryMethod",
    "ProcessDiscoverer",
    "ProcessSnapshot",
    "TargetProcess",
    "is_pseudo_terminal",
    "parse_pane_map",
    "scan_processes",
]
