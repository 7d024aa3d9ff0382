"""Container lifecycle orchestrator for the OpenMoxie backend.

Drives first-run setup as a staged state machine and serializes the
steady-state start/stop/restart operations, using the HealthMonitor for
every readiness decision and the CommandRunner for every engine command.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import AsyncIterator

from moxie_control.container.compose import COMPOSE_FILENAME, ensure_compose_file
from moxie_control.container.health import ContainerHealth, HealthMonitor, Installed, NotInstalled
from moxie_control.container.runner import CommandRunner, ProcessResult, ProcessRunner
from moxie_control.core.config import Settings
from moxie_control.core.errors import (
    LaunchFailure,
    OperationInProgress,
    OrchestrationFailure,
    SetupFailed,
    StartTimeout,
)
from moxie_control.core.events import EventHub
from moxie_control.core.state_machine import SETUP_SEQUENCE, ConnectionState, SetupStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupProgress:
    """Snapshot of a first-run setup.

    Attributes:
        stage: Current stage.
        percent_complete: 0-100, derived from the stage's position.
        last_error: Most recent failure or cancellation text.
        failed_stage: Stage at which the run failed (stage is FAILED then).
        log: Timestamped log lines for the current run.
    """

    stage: SetupStage = SetupStage.IDLE
    percent_complete: int = 0
    last_error: str | None = None
    failed_stage: SetupStage | None = None
    log: tuple[str, ...] = ()


def _percent_for(stage: SetupStage) -> int:
    if stage not in SETUP_SEQUENCE:
        return 0
    return round(100 * SETUP_SEQUENCE.index(stage) / (len(SETUP_SEQUENCE) - 1))


class ContainerOrchestrator:
    """Starts, stops, verifies and installs the backend container.

    Only one lifecycle operation (setup, start, stop, restart) runs at a
    time; an overlapping call raises OperationInProgress.

    Args:
        monitor: Health monitor for the engine and container.
        runner: Command runner for engine commands.
        image_name: Backend image (for pulls and the compose file).
        deploy_dir: Directory holding the compose file.
        broker_port: Host port of the MQTT broker container.
        engine_install_command: Optional command that installs the engine.
        retry_attempts: Attempts per engine command before giving up.
        retry_initial_delay: First backoff delay in seconds.
        retry_max_delay: Backoff cap in seconds.
        poll_attempts: Health polls after a start before StartTimeout.
        health_poll_interval: Seconds between background health polls.
        command_timeout: Timeout for start/stop/up commands.
        pull_timeout: Timeout for image pulls and engine installation.
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        runner: CommandRunner,
        *,
        image_name: str = "openmoxie/openmoxie-server:latest",
        deploy_dir: str | Path = "OpenMoxie",
        broker_port: int = 1883,
        engine_install_command: str = "",
        retry_attempts: int = 3,
        retry_initial_delay: float = 3.0,
        retry_max_delay: float = 30.0,
        poll_attempts: int = 5,
        health_poll_interval: float = 30.0,
        command_timeout: float = 60.0,
        pull_timeout: float = 600.0,
    ) -> None:
        self._monitor = monitor
        self._runner = runner
        self._image_name = image_name
        self._deploy_dir = Path(deploy_dir).expanduser()
        self._broker_port = broker_port
        self._engine_install_command = engine_install_command
        self._retry_attempts = max(1, retry_attempts)
        self._retry_initial_delay = retry_initial_delay
        self._retry_max_delay = retry_max_delay
        self._poll_attempts = max(1, poll_attempts)
        self._health_poll_interval = health_poll_interval
        self._command_timeout = command_timeout
        self._pull_timeout = pull_timeout

        self._lock = asyncio.Lock()
        self._current_operation: str | None = None
        self._progress = SetupProgress()

        self._monitor_task: asyncio.Task | None = None
        self._recovery_task: asyncio.Task | None = None
        self._recovery_enabled = True
        self._last_health: ContainerHealth | None = None
        self._container_running: bool | None = None

        self.health_events = EventHub("container_health")
        self.container_events = EventHub("container_running")
        self.setup_events = EventHub("setup_progress")

    @classmethod
    def from_settings(
        cls, settings: Settings, runner: CommandRunner | None = None
    ) -> ContainerOrchestrator:
        """Build an orchestrator and its monitor from application settings."""
        runner = runner or ProcessRunner()
        monitor = HealthMonitor(
            runner,
            engine_paths=settings.engine_paths,
            container_name=settings.container_name,
            timeout=settings.health_check_timeout,
        )
        return cls(
            monitor,
            runner,
            image_name=settings.image_name,
            deploy_dir=settings.deploy_dir,
            broker_port=settings.broker_port,
            engine_install_command=settings.engine_install_command,
            retry_attempts=settings.retry_attempts,
            retry_initial_delay=settings.retry_initial_delay,
            retry_max_delay=settings.retry_max_delay,
            poll_attempts=settings.poll_attempts,
            health_poll_interval=settings.health_poll_interval,
            pull_timeout=settings.pull_timeout,
        )

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    @property
    def progress(self) -> SetupProgress:
        """Latest setup snapshot."""
        return self._progress

    @property
    def busy(self) -> bool:
        """True while a lifecycle operation is in flight."""
        return self._lock.locked()

    @property
    def container_running(self) -> bool | None:
        """Last observed container state (None before the first observation)."""
        return self._container_running

    async def current_health(self) -> ContainerHealth:
        """Check engine health now."""
        return await self._monitor.check_engine_health()

    # ------------------------------------------------------------------
    # Runtime lifecycle
    # ------------------------------------------------------------------

    async def start_container(self) -> None:
        """Start the backend container and wait until it is running.

        Raises:
            OperationInProgress: Another lifecycle operation is running.
            OrchestrationFailure: The engine is missing or the start command
                kept failing.
            StartTimeout: The container never showed up as running.
        """
        async with self._exclusive("start"):
            await self._start_locked()

    async def stop_container(self) -> None:
        """Stop the backend container. Does nothing if it is not running."""
        async with self._exclusive("stop"):
            await self._stop_locked()

    async def restart(self) -> None:
        """Stop then start, surfacing the first failure."""
        async with self._exclusive("restart"):
            await self._stop_locked()
            await self._start_locked()

    async def pull_image(self) -> ProcessResult:
        """Pull the latest backend image."""
        async with self._exclusive("pull"):
            engine = await self._require_engine()
            logger.info("Updating %s...", self._image_name)
            return await self._run_with_retry(
                f"pull {self._image_name}", engine, ["pull", self._image_name],
                timeout=self._pull_timeout,
            )

    async def _start_locked(self) -> None:
        name = self._monitor.container_name
        if await self._monitor.is_target_container_running():
            logger.info("Container %s already running.", name)
            self._set_container_running(True)
            return

        engine = await self._require_engine()
        logger.info("Starting container %s...", name)
        await self._run_with_retry(
            f"start {name}", engine, ["start", name], timeout=self._command_timeout
        )
        await self._wait_until_running()

    async def _stop_locked(self) -> None:
        name = self._monitor.container_name
        if not await self._monitor.is_target_container_running():
            logger.info("Container %s already stopped.", name)
            self._set_container_running(False)
            return

        engine = await self._require_engine()
        logger.info("Stopping container %s...", name)
        await self._run_with_retry(
            f"stop {name}", engine, ["stop", name], timeout=self._command_timeout
        )
        self._set_container_running(False)

    async def _wait_until_running(self) -> None:
        name = self._monitor.container_name
        for attempt in range(1, self._poll_attempts + 1):
            if await self._monitor.is_target_container_running():
                logger.info("Container %s is running.", name)
                self._set_container_running(True)
                return
            if attempt < self._poll_attempts:
                await asyncio.sleep(self._backoff(attempt))
        self._set_container_running(False)
        raise StartTimeout(
            f"Container {name} not running after {self._poll_attempts} checks"
        )

    # ------------------------------------------------------------------
    # First-run setup
    # ------------------------------------------------------------------

    async def run_setup(self) -> SetupProgress:
        """Run first-run installation through every stage.

        Returns:
            The final progress snapshot (stage COMPLETE).

        Raises:
            OperationInProgress: Another lifecycle operation is running.
            SetupFailed: A stage failed; progress holds FAILED and the stage.
            asyncio.CancelledError: The caller cancelled; progress keeps the
                last stage reached with last_error "cancelled".
        """
        async with self._exclusive("setup"):
            self._progress = SetupProgress()
            steps = (
                (SetupStage.CHECKING_PREREQUISITES, self._step_prerequisites),
                (SetupStage.INSTALLING_ENGINE, self._step_engine),
                (SetupStage.INSTALLING_MESSAGE_BROKER, self._step_pull_images),
                (SetupStage.STARTING_CONTAINER, self._step_compose_up),
                (SetupStage.VERIFYING, self._wait_until_running),
            )
            stage = SetupStage.IDLE
            try:
                for stage, step in steps:
                    self._enter_stage(stage)
                    await step()
            except asyncio.CancelledError:
                self._log(f"Setup cancelled during {stage.name}; state left as is")
                self._update(last_error="cancelled")
                raise
            except (OrchestrationFailure, LaunchFailure, OSError) as e:
                self._log(f"Error: {e}")
                self._update(stage=SetupStage.FAILED, failed_stage=stage, last_error=str(e))
                logger.error("Setup failed during %s: %s", stage.name, e)
                raise SetupFailed(stage, str(e)) from e

            self._enter_stage(SetupStage.COMPLETE)
            self._log("OpenMoxie setup complete!")
            return self._progress

    def reset_setup(self) -> None:
        """Return setup progress to IDLE (e.g., before a manual retry)."""
        self._progress = SetupProgress()
        self.setup_events.emit(self._progress)

    async def _step_prerequisites(self) -> None:
        self._log("Preparing deployment directory...")
        path = ensure_compose_file(
            self._deploy_dir,
            self._monitor.container_name,
            self._image_name,
            self._broker_port,
        )
        self._log(f"Compose file: {path}")

    async def _step_engine(self) -> None:
        health = await self._monitor.check_engine_health()
        if isinstance(health, NotInstalled) and self._engine_install_command:
            argv = shlex.split(self._engine_install_command)
            self._log("Installing container engine...")
            result = await self._runner.run(argv[0], argv[1:], timeout=self._pull_timeout)
            if not result.ok:
                raise OrchestrationFailure(
                    f"Engine installation failed: {result.stderr.strip() or result.exit_code}"
                )
            health = await self._monitor.check_engine_health()

        if health != Installed(running=True):
            raise OrchestrationFailure(health.user_message)
        self._log("Docker is installed and running")

    async def _step_pull_images(self) -> None:
        engine = await self._require_engine()
        self._log("Pulling OpenMoxie images (this may take a few minutes)...")
        try:
            await self._run_with_retry(
                "pull images", engine, ["compose", "-f", str(self._compose_path), "pull"],
                timeout=self._pull_timeout,
            )
        except OrchestrationFailure as e:
            logger.warning("Image pull failed, continuing with cached images: %s", e)
            self._log("Warning: could not pull images, using cached versions")
        else:
            self._log("Images pulled successfully!")

    async def _step_compose_up(self) -> None:
        engine = await self._require_engine()
        self._log("Starting OpenMoxie containers...")
        await self._run_with_retry(
            "start containers", engine, ["compose", "-f", str(self._compose_path), "up", "-d"],
            timeout=self._pull_timeout,
        )
        self._log("Containers started; waiting for the server...")

    @property
    def _compose_path(self) -> Path:
        return self._deploy_dir / COMPOSE_FILENAME

    def _enter_stage(self, stage: SetupStage) -> None:
        logger.info("Setup stage: %s", stage.name)
        self._update(stage=stage, percent_complete=_percent_for(stage))

    def _update(self, **changes: object) -> None:
        self._progress = replace(self._progress, **changes)
        self.setup_events.emit(self._progress)

    def _log(self, message: str) -> None:
        entry = f"[{time.strftime('%H:%M:%S')}] {message}"
        logger.info(message)
        self._progress = replace(self._progress, log=self._progress.log + (entry,))

    # ------------------------------------------------------------------
    # Health monitoring and connection recovery
    # ------------------------------------------------------------------

    def start_monitoring(self) -> None:
        """Spawn the background health polling task (once)."""
        if self._monitor_task and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._poll_loop())

    async def poll_once(self) -> ContainerHealth:
        """Run one health poll, emitting events for any change."""
        health = await self._monitor.check_engine_health()
        if health != self._last_health:
            self._last_health = health
            logger.info("Container engine health: %s", health)
            self.health_events.emit(health)
        running = health.is_healthy and await self._monitor.is_target_container_running()
        self._set_container_running(running)
        return health

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Health poll failed")
            await asyncio.sleep(self._health_poll_interval)

    def set_recovery_enabled(self, enabled: bool) -> None:
        """Enable or disable container recovery on connection loss."""
        self._recovery_enabled = enabled

    def on_connection_state(self, state: ConnectionState) -> None:
        """Connection-state observer: recover the container on disconnect."""
        if state is not ConnectionState.DISCONNECTED or not self._recovery_enabled:
            return
        if self._recovery_task and not self._recovery_task.done():
            return
        self._recovery_task = asyncio.get_running_loop().create_task(self._recover())

    async def _recover(self) -> None:
        try:
            await self.start_container()
        except OperationInProgress:
            logger.info("Recovery skipped: lifecycle operation in progress.")
        except OrchestrationFailure as e:
            logger.error("Container recovery failed: %s", e)

    async def shutdown(self) -> None:
        """Cancel and join the polling and recovery tasks."""
        self._recovery_enabled = False
        for task in (self._monitor_task, self._recovery_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._monitor_task = None
        self._recovery_task = None

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _exclusive(self, operation: str) -> AsyncIterator[None]:
        if self._lock.locked():
            raise OperationInProgress(
                f"Cannot {operation}: {self._current_operation} already in progress"
            )
        async with self._lock:
            self._current_operation = operation
            try:
                yield
            finally:
                self._current_operation = None

    async def _require_engine(self) -> str:
        engine = await self._monitor.locate_engine()
        if engine is None:
            raise OrchestrationFailure(NotInstalled().user_message)
        return engine

    async def _run_with_retry(
        self,
        description: str,
        engine: str,
        args: list[str],
        timeout: float | None,
    ) -> ProcessResult:
        last_error = ""
        for attempt in range(1, self._retry_attempts + 1):
            try:
                result = await self._runner.run(engine, args, timeout=timeout)
            except LaunchFailure as e:
                last_error = str(e)
            else:
                if result.ok:
                    return result
                last_error = result.stderr.strip() or f"exit code {result.exit_code}"

            if attempt < self._retry_attempts:
                delay = self._backoff(attempt)
                logger.warning(
                    "Attempt %d/%d failed for %s: %s (retrying in %.1fs)",
                    attempt, self._retry_attempts, description, last_error, delay,
                )
                await asyncio.sleep(delay)

        logger.error("All %d attempts failed for %s", self._retry_attempts, description)
        raise OrchestrationFailure(
            f"{description} failed after {self._retry_attempts} attempts: {last_error}"
        )

    def _backoff(self, attempt: int) -> float:
        return min(self._retry_initial_delay * (2 ** (attempt - 1)), self._retry_max_delay)

    def _set_container_running(self, running: bool) -> None:
        if running != self._container_running:
            self._container_running = running
            self.container_events.emit(running)
