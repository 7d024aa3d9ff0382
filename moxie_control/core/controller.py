"""Companion controller: wires the orchestrator, broker client and listener.

The entry point constructs one ContainerOrchestrator and one
MessageChannelClient and hands them to this controller, which brings the
backend up, connects, starts listening and tears everything down in order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from moxie_control.container.health import Installed
from moxie_control.container.orchestrator import ContainerOrchestrator
from moxie_control.core.config import Settings
from moxie_control.core.errors import OrchestrationFailure
from moxie_control.core.state_machine import ConnectionState
from moxie_control.messaging.client import MessageChannelClient
from moxie_control.messaging.commands import ControlIntent
from moxie_control.messaging.listener import ConversationListener

logger = logging.getLogger(__name__)


class CompanionController:
    """Runs the control core until stop() is called.

    Args:
        settings: Application settings.
        orchestrator: The process's container orchestrator.
        client: The process's broker client.
        listener: Optional conversation listener (built from settings if omitted).
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: ContainerOrchestrator,
        client: MessageChannelClient,
        listener: ConversationListener | None = None,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator
        self._client = client
        self._listener = listener or ConversationListener(client, settings.telemetry_topics)

        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._unwire: list[Callable[[], None]] = []
        self._listen_task: asyncio.Task | None = None

    @property
    def orchestrator(self) -> ContainerOrchestrator:
        return self._orchestrator

    @property
    def client(self) -> MessageChannelClient:
        return self._client

    @property
    def listener(self) -> ConversationListener:
        return self._listener

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Bring the backend up, connect, and run until stop().

        1. Make sure the backend container is running
        2. Connect to the broker (reconnects continue in the background)
        3. Start the conversation listener and health monitoring
        4. Wait for stop, then clean up
        """
        self._running = True
        self._stop_event = asyncio.Event()
        logger.info("Companion controller started.")

        try:
            await self._ensure_backend()
            self._wire()
            state = await self._client.connect()
            if state is ConnectionState.CONNECTED:
                listening = self._ensure_listening()
                if listening is not None:
                    await listening
            else:
                logger.warning("Broker not reachable yet; will keep retrying.")
            self._orchestrator.start_monitoring()
            await self._stop_event.wait()
        except asyncio.CancelledError:
            logger.info("Companion controller cancelled.")
        finally:
            self._running = False
            await self._cleanup()
            logger.info("Companion controller stopped.")

    async def stop(self) -> None:
        """Graceful shutdown: exits start()."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()

    async def send(self, intent: ControlIntent) -> str:
        """Send a control intent to the robot."""
        return await self._client.send_intent(intent)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_backend(self) -> None:
        """Start the backend container if the engine is up and it is not running.

        Problems are logged only. The broker connection is attempted either way.
        """
        health = await self._orchestrator.current_health()
        if health != Installed(running=True):
            logger.warning("Container engine not ready: %s", health.user_message)
            return
        try:
            await self._orchestrator.start_container()
        except OrchestrationFailure as e:
            logger.error("Could not start backend container: %s", e)

    def _wire(self) -> None:
        self._unwire.append(
            self._client.state_events.subscribe(self._orchestrator.on_connection_state)
        )
        self._unwire.append(self._client.state_events.subscribe(self._on_connection_state))

    def _on_connection_state(self, state: ConnectionState) -> None:
        # The client re-arms listener subscriptions itself; this only covers a
        # listener that could not start because the first attempt failed.
        if state is ConnectionState.CONNECTED and self._running:
            self._ensure_listening()

    def _ensure_listening(self) -> asyncio.Task | None:
        """Start the listener once; concurrent callers share one task."""
        if self._listener.is_listening:
            return None
        if self._listen_task is None or self._listen_task.done():
            self._listen_task = asyncio.get_running_loop().create_task(
                self._listener.start_listening()
            )
        return self._listen_task

    async def _cleanup(self) -> None:
        """Release everything in reverse order of start()."""
        self._orchestrator.set_recovery_enabled(False)
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self._listen_task = None
        await self._listener.stop_listening()
        await self._client.disconnect()
        for unwire in self._unwire:
            unwire()
        self._unwire.clear()
        await self._orchestrator.shutdown()
        logger.info("Cleanup complete.")
