"""Process runner for container-engine CLI invocations.

All code that spawns external commands goes through the CommandRunner
interface so the health monitor and orchestrator can be exercised with
the stub runner in moxie_control/container/stubs.py.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from moxie_control.core.errors import LaunchFailure, ProcessTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one finished process.

    Attributes:
        exit_code: Process exit status.
        stdout: Decoded standard output.
        stderr: Decoded standard error.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True if the process exited with status 0."""
        return self.exit_code == 0


class CommandRunner(ABC):
    """Abstract executor for external commands."""

    @abstractmethod
    async def run(
        self,
        executable: str,
        args: list[str],
        timeout: float | None = None,
    ) -> ProcessResult:
        """Run an executable to completion.

        Args:
            executable: Path or name of the program.
            args: Arguments passed after the executable.
            timeout: Seconds to wait before killing the process (None = no limit).

        Returns:
            The process result. A non-zero exit is not an error here.

        Raises:
            LaunchFailure: If the process could not be spawned.
            ProcessTimeout: If the timeout elapsed; the child has been killed.
        """
        ...

    async def which(self, name: str, timeout: float | None = 10.0) -> str | None:
        """Resolve a program name through the PATH lookup command.

        Returns:
            The first resolved path, or None if the lookup failed.
        """
        try:
            result = await self.run("which", [name], timeout=timeout)
        except LaunchFailure as e:
            logger.debug("PATH lookup for %s failed: %s", name, e)
            return None
        path = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        if result.ok and path:
            return path
        return None


class ProcessRunner(CommandRunner):
    """Runs commands as asyncio subprocesses without a shell."""

    async def run(
        self,
        executable: str,
        args: list[str],
        timeout: float | None = None,
    ) -> ProcessResult:
        command = [executable, *args]
        logger.debug("Running: %s", " ".join(command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchFailure(command, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProcessTimeout(command, timeout or 0.0) from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        result = ProcessResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if not result.ok:
            logger.debug("%s exited %d: %s", executable, result.exit_code, result.stderr.strip())
        return result
