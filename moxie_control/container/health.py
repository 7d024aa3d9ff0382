"""Container engine and backend container health checks.

The monitor answers three questions on demand: where the engine CLI lives,
whether its daemon responds, and whether the backend container is running.
Polling cadence and retries belong to the orchestrator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Union

from moxie_control.container.runner import CommandRunner
from moxie_control.core.errors import LaunchFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotInstalled:
    """No engine executable could be located."""

    @property
    def is_healthy(self) -> bool:
        return False

    @property
    def user_message(self) -> str:
        return (
            "Docker is not installed.\n\n"
            "The OpenMoxie backend runs in Docker. Install Docker, start it, "
            "and try again."
        )


@dataclass(frozen=True)
class Installed:
    """The engine exists; ``running`` tells whether its daemon answered."""

    running: bool

    @property
    def is_healthy(self) -> bool:
        return self.running

    @property
    def user_message(self) -> str:
        if self.running:
            return "Docker is installed and running"
        return "Docker is installed but not running.\n\nPlease start Docker and try again."


@dataclass(frozen=True)
class Unknown:
    """The check itself failed; callers must retry or ask the user."""

    detail: str

    @property
    def is_healthy(self) -> bool:
        return False

    @property
    def user_message(self) -> str:
        return f"Could not determine Docker status: {self.detail}"


ContainerHealth = Union[NotInstalled, Installed, Unknown]


class HealthMonitor:
    """Checks engine installation, daemon availability and container state.

    Args:
        runner: Command runner used for every probe.
        engine_paths: Well-known engine locations, in priority order.
        container_name: Name filter identifying the backend container.
        engine_name: Program name used for the PATH lookup fallback.
        timeout: Per-probe timeout in seconds.
    """

    def __init__(
        self,
        runner: CommandRunner,
        engine_paths: Sequence[str],
        container_name: str,
        engine_name: str = "docker",
        timeout: float = 10.0,
    ) -> None:
        self._runner = runner
        self._engine_paths = tuple(engine_paths)
        self._container_name = container_name
        self._engine_name = engine_name
        self._timeout = timeout

    @property
    def container_name(self) -> str:
        return self._container_name

    async def locate_engine(self) -> str | None:
        """Find the engine executable.

        Returns:
            The first existing well-known path, else the PATH lookup result,
            else None.
        """
        for path in self._engine_paths:
            if Path(path).exists():
                return path
        return await self._runner.which(self._engine_name, timeout=self._timeout)

    async def check_engine_health(self) -> ContainerHealth:
        """Probe the engine daemon with a lightweight listing command."""
        engine = await self.locate_engine()
        if engine is None:
            return NotInstalled()

        try:
            result = await self._runner.run(engine, ["ps"], timeout=self._timeout)
        except LaunchFailure as e:
            logger.warning("Engine health probe failed: %s", e)
            return Unknown(detail=str(e))

        return Installed(running=result.ok)

    async def is_target_container_running(self) -> bool:
        """Check whether the backend container is listed as running.

        Launch failures, a missing engine and non-zero exits all count as
        not running: absence of evidence is treated as absence.
        """
        engine = await self.locate_engine()
        if engine is None:
            return False

        try:
            result = await self._runner.run(
                engine,
                ["ps", "--filter", f"name={self._container_name}", "--format", "{{.Names}}"],
                timeout=self._timeout,
            )
        except LaunchFailure as e:
            logger.warning("Failed to check %s container: %s", self._container_name, e)
            return False

        if not result.ok:
            return False
        return self._container_name in result.stdout.strip()

    async def container_status(self) -> str | None:
        """Return the engine's state string for the container (e.g. "running")."""
        engine = await self.locate_engine()
        if engine is None:
            return None
        try:
            result = await self._runner.run(
                engine,
                ["inspect", "--format", "{{.State.Status}}", self._container_name],
                timeout=self._timeout,
            )
        except LaunchFailure as e:
            logger.warning("Failed to inspect %s: %s", self._container_name, e)
            return None
        status = result.stdout.strip()
        return status if result.ok and status else None
