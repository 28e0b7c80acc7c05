from __future__ import annotations

import asyncio
import sys

import pytest

from autoresume.runner import (
    TIMEOUT_RETURNCODE,
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    FakeCommandRunner,
)


def test_run_captures_output() -> None:
    runner = CommandRunner()

    result = asyncio.run(runner.run(sys.executable, "-c", "print('ready')"))

    assert result.ok
    assert result.stdout.strip() == "ready"


def test_nonzero_exit_is_reported() -> None:
    runner = CommandRunner()

    result = asyncio.run(
        runner.run(sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)")
    )

    assert not result.ok
    assert result.returncode == 3
    assert result.describe().endswith("boom")


def test_timeout_kills_process() -> None:
    runner = CommandRunner(default_timeout=0.2)

    result = asyncio.run(runner.run(sys.executable, "-c", "import time; time.sleep(5)"))

    assert result.timed_out
    assert result.returncode == TIMEOUT_RETURNCODE


def test_missing_executable_raises() -> None:
    runner = CommandRunner()

    with pytest.raises(CommandNotFoundError):
        asyncio.run(runner.run("definitely-not-installed-autoresume"))


def test_fake_runner_replays_scripted_results() -> None:
    scripted = CommandResult(args=("tmux",), returncode=1, stdout="", stderr="no server")
    runner = FakeCommandRunner({"tmux": [scripted]}, missing=["xdotool"])

    first = asyncio.run(runner.run("tmux", "list-panes"))
    second = asyncio.run(runner.run("tmux", "list-panes"))

    assert first is scripted
    assert second.ok
    assert runner.invocations == [("tmux", "list-panes"), ("tmux", "list-panes")]
    assert not runner.available("xdotool")
    with pytest.raises(CommandNotFoundError):
        asyncio.run(runner.run("xdotool", "search"))
