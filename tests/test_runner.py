"""Tests for the process runner and the stub runner."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from moxie_control.container.runner import ProcessResult, ProcessRunner
from moxie_control.container.stubs import StubCommandRunner
from moxie_control.core.errors import LaunchFailure, ProcessTimeout


def _fake_process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    proc.kill = MagicMock()
    return proc


class TestProcessResult:
    def test_ok(self) -> None:
        assert ProcessResult(0).ok
        assert not ProcessResult(1).ok


class TestProcessRunner:
    async def test_captures_output(self) -> None:
        proc = _fake_process(stdout=b"openmoxie-server\n", stderr=b"")
        with patch(
            "moxie_control.container.runner.asyncio.create_subprocess_exec",
            AsyncMock(return_value=proc),
        ) as spawn:
            result = await ProcessRunner().run("docker", ["ps"], timeout=5)

        assert spawn.call_args.args == ("docker", "ps")
        assert result == ProcessResult(0, "openmoxie-server\n", "")

    async def test_nonzero_exit_is_a_result(self) -> None:
        proc = _fake_process(stderr=b"daemon not running", returncode=1)
        with patch(
            "moxie_control.container.runner.asyncio.create_subprocess_exec",
            AsyncMock(return_value=proc),
        ):
            result = await ProcessRunner().run("docker", ["ps"])

        assert not result.ok
        assert result.stderr == "daemon not running"

    async def test_spawn_error_raises_launch_failure(self) -> None:
        with patch(
            "moxie_control.container.runner.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("no such file")),
        ):
            with pytest.raises(LaunchFailure) as exc_info:
                await ProcessRunner().run("/missing/docker", ["ps"])

        assert exc_info.value.command == ["/missing/docker", "ps"]

    async def test_timeout_kills_process(self) -> None:
        proc = _fake_process()
        proc.returncode = None

        async def hang():
            await asyncio.sleep(10)

        proc.communicate = hang
        with patch(
            "moxie_control.container.runner.asyncio.create_subprocess_exec",
            AsyncMock(return_value=proc),
        ):
            with pytest.raises(ProcessTimeout):
                await ProcessRunner().run("docker", ["pull", "image"], timeout=0.05)

        proc.kill.assert_called_once()
        proc.wait.assert_awaited()

    async def test_timeout_is_a_launch_failure(self) -> None:
        assert issubclass(ProcessTimeout, LaunchFailure)

    async def test_which_returns_first_line(self) -> None:
        proc = _fake_process(stdout=b"/usr/bin/docker\n/bin/docker\n")
        with patch(
            "moxie_control.container.runner.asyncio.create_subprocess_exec",
            AsyncMock(return_value=proc),
        ):
            assert await ProcessRunner().which("docker") == "/usr/bin/docker"

    async def test_which_not_found(self) -> None:
        proc = _fake_process(returncode=1)
        with patch(
            "moxie_control.container.runner.asyncio.create_subprocess_exec",
            AsyncMock(return_value=proc),
        ):
            assert await ProcessRunner().which("docker") is None


class TestStubCommandRunner:
    async def test_default_response(self) -> None:
        runner = StubCommandRunner()
        result = await runner.run("/usr/bin/docker", ["ps"])
        assert result.ok
        assert runner.calls == [("docker", "ps")]

    async def test_longest_prefix_wins(self) -> None:
        runner = StubCommandRunner()
        runner.set_response(("docker",), ProcessResult(1))
        runner.set_response(("docker", "ps"), ProcessResult(0, "ok"))

        assert (await runner.run("docker", ["ps", "--all"])).stdout == "ok"
        assert not (await runner.run("docker", ["start", "x"])).ok

    async def test_sequence_then_repeat_last(self) -> None:
        runner = StubCommandRunner()
        runner.set_response(("docker", "start"), ProcessResult(1), ProcessResult(0))

        results = [(await runner.run("docker", ["start", "x"])).ok for _ in range(3)]
        assert results == [False, True, True]
        assert runner.count("docker", "start") == 3

    async def test_scripted_exception(self) -> None:
        runner = StubCommandRunner()
        runner.set_response(("which",), LaunchFailure(["which"], "missing"))

        assert await runner.which("docker") is None
