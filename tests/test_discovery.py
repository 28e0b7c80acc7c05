from __future__ import annotations

import asyncio

import psutil
import pytest

from autoresume.discovery import (
    ProcessDiscoverer,
    ProcessSnapshot,
    TargetProcess,
    parse_pane_map,
)
from autoresume.runner import CommandResult, FakeCommandRunner

SNAPSHOTS = [
    ProcessSnapshot(pid=1, ppid=0, name="init"),
    ProcessSnapshot(pid=200, ppid=1, name="bash", terminal="/dev/pts/1"),
    ProcessSnapshot(pid=300, ppid=200, name="claude", cmdline=("claude",), terminal="/dev/pts/1"),
    ProcessSnapshot(pid=400, ppid=1, name="claude", cmdline=("claude",), terminal="/dev/pts/5"),
    ProcessSnapshot(pid=500, ppid=1, name="node", cmdline=("node", "/opt/bin/claude")),
    ProcessSnapshot(pid=600, ppid=1, name="claude", cmdline=("claude",)),
    ProcessSnapshot(pid=700, ppid=1, name="vim", terminal="/dev/pts/6"),
    ProcessSnapshot(
        pid=800, ppid=1, name="2.0.14", cmdline=("2.0.14", "claude"), terminal="/dev/pts/7"
    ),
]

PANES = CommandResult(
    args=("tmux",), returncode=0, stdout="200\t%3\n999\t%7\n", stderr=""
)


def make_discoverer(runner: FakeCommandRunner, snapshots=SNAPSHOTS) -> ProcessDiscoverer:
    return ProcessDiscoverer(runner, process_source=lambda: list(snapshots), own_pid=42)


def test_discover_classifies_reachable_sessions() -> None:
    runner = FakeCommandRunner({"tmux": [PANES]})
    discoverer = make_discoverer(runner)

    targets = asyncio.run(discoverer.discover())

    assert [(target.pid, target.delivery_method, target.address) for target in targets] == [
        (300, "multiplexer", "%3"),
        (400, "pseudoTerminal", "/dev/pts/5"),
        (800, "pseudoTerminal", "/dev/pts/7"),
    ]
    # Pane ids stay valid whatever characters the session name contains.
    assert runner.invocations[0] == ("tmux", "list-panes", "-a", "-F", "#{pane_pid}\t#{pane_id}")


def test_hinted_process_is_ordered_first() -> None:
    discoverer = make_discoverer(FakeCommandRunner({"tmux": [PANES]}))

    targets = asyncio.run(discoverer.discover(hint=400))

    assert targets[0].pid == 400


def test_missing_multiplexer_falls_back_to_terminals() -> None:
    discoverer = make_discoverer(FakeCommandRunner(missing=["tmux"]))

    targets = asyncio.run(discoverer.discover())

    assert {target.delivery_method for target in targets} == {"pseudoTerminal"}
    assert [target.pid for target in targets] == [300, 400, 800]


def test_failed_pane_listing_is_tolerated() -> None:
    failed = CommandResult(args=("tmux",), returncode=1, stdout="", stderr="no server running")
    discoverer = make_discoverer(FakeCommandRunner({"tmux": [failed]}))

    targets = asyncio.run(discoverer.discover())

    assert all(target.delivery_method == "pseudoTerminal" for target in targets)


def test_shared_terminal_is_targeted_once() -> None:
    snapshots = [
        ProcessSnapshot(pid=10, ppid=1, name="claude", terminal="/dev/pts/3"),
        ProcessSnapshot(pid=11, ppid=1, name="claude", terminal="/dev/pts/3"),
    ]
    discoverer = make_discoverer(FakeCommandRunner(missing=["tmux"]), snapshots)

    targets = asyncio.run(discoverer.discover())

    assert [target.pid for target in targets] == [10]


def test_enumeration_failure_yields_empty_list() -> None:
    def denied() -> list[ProcessSnapshot]:
        raise psutil.AccessDenied()

    discoverer = ProcessDiscoverer(FakeCommandRunner(), process_source=denied, own_pid=42)

    assert asyncio.run(discoverer.discover()) == []


def test_own_process_is_never_a_target() -> None:
    discoverer = ProcessDiscoverer(FakeCommandRunner(), own_pid=400)

    assert not discoverer.is_target(SNAPSHOTS[3])
    assert discoverer.is_target(SNAPSHOTS[2])
    assert not discoverer.is_target(SNAPSHOTS[6])


def test_parse_pane_map_skips_garbage() -> None:
    assert parse_pane_map("12\t%0\nbad line\nxx\t%1\n") == {12: "%0"}


@pytest.mark.parametrize(
    "kwargs",
    [
        {"delivery_method": "multiplexer"},
        {"delivery_method": "multiplexer", "pane_target": "a:0.0", "tty_path": "/dev/pts/1"},
        {"delivery_method": "pseudoTerminal"},
        {"delivery_method": "carrier-pigeon", "tty_path": "/dev/pts/1"},
    ],
)
def test_target_requires_exactly_one_address(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        TargetProcess(pid=1, **kwargs)
