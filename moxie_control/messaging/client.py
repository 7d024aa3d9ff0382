"""MQTT message channel to the Moxie broker.

Owns the single broker connection for the process: a supervisor task
connects, re-arms subscriptions, reads inbound messages and reconnects with
capped exponential backoff after any drop. Everything else talks to the
broker through this client.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import aiomqtt

from moxie_control.core.config import Settings
from moxie_control.core.errors import NotConnected
from moxie_control.core.events import EventHub
from moxie_control.core.state_machine import ConnectionState
from moxie_control.messaging.commands import ControlIntent, build_remote_chat_event, encode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrokerMessage:
    """One inbound message as delivered to subscribers.

    Attributes:
        topic: Concrete topic the message arrived on.
        payload: Raw payload bytes.
        received_at: Arrival time (UTC).
    """

    topic: str
    payload: bytes
    received_at: datetime

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


@dataclass(frozen=True, eq=False)
class Subscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""

    topic_filter: str
    callback: Callable[[BrokerMessage], Any]


def topic_matches(topic: str, topic_filter: str) -> bool:
    """Apply MQTT topic-filter rules (``+`` and ``#``) to a concrete topic."""
    try:
        return aiomqtt.Topic(topic).matches(topic_filter)
    except ValueError:
        return False


class MessageChannelClient:
    """Single authoritative connection to the message broker.

    Args:
        host: Broker hostname.
        port: Broker port.
        control_topic: Topic that control commands are published on.
        username: Broker username.
        password: Broker password.
        client_id: MQTT client identifier.
        use_tls: Connect with TLS, accepting self-signed certificates.
        keepalive: Keepalive interval in seconds.
        qos: QoS level for publish/subscribe (1 = at-least-once).
        auto_reconnect: Reconnect automatically after an unexpected drop.
        reconnect_initial_delay: First reconnect delay in seconds.
        reconnect_max_delay: Reconnect delay cap in seconds.
        offline_after_failures: Consecutive failed attempts before the
            client reports itself offline.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        *,
        control_topic: str,
        username: str | None = None,
        password: str | None = None,
        client_id: str | None = None,
        use_tls: bool = False,
        keepalive: int = 60,
        qos: int = 1,
        auto_reconnect: bool = True,
        reconnect_initial_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        offline_after_failures: int = 5,
    ) -> None:
        self._host = host
        self._port = port
        self._control_topic = control_topic
        self._username = username
        self._password = password
        self._client_id = client_id
        self._use_tls = use_tls
        self._keepalive = keepalive
        self._qos = qos
        self._auto_reconnect = auto_reconnect
        self._reconnect_initial_delay = reconnect_initial_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._offline_after_failures = offline_after_failures

        self._state = ConnectionState.DISCONNECTED
        self._mqtt: aiomqtt.Client | None = None
        self._task: asyncio.Task | None = None
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._failures = 0
        self._offline = False
        self._stopping = False

        self.state_events = EventHub("connection_state")
        self.error_events = EventHub("broker_errors")

    @classmethod
    def from_settings(cls, settings: Settings) -> MessageChannelClient:
        return cls(
            settings.broker_host,
            settings.broker_port,
            control_topic=settings.control_topic,
            username=settings.broker_username or None,
            password=settings.broker_password or None,
            client_id=settings.broker_client_id,
            use_tls=settings.broker_use_tls,
            keepalive=settings.broker_keepalive,
            reconnect_initial_delay=settings.reconnect_initial_delay,
            reconnect_max_delay=settings.reconnect_max_delay,
            offline_after_failures=settings.offline_after_failures,
        )

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_offline(self) -> bool:
        """True after repeated failed attempts, until the next success."""
        return self._offline

    @property
    def control_topic(self) -> str:
        return self._control_topic

    @property
    def subscribed_filters(self) -> list[str]:
        """Topic filters with at least one registered callback."""
        return list(self._subscriptions)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectionState:
        """Start the connection supervisor and wait for its first attempt.

        A call while a supervisor is alive (connecting, connected, or waiting
        to reconnect) changes nothing and returns the current state. If the
        first attempt fails the supervisor keeps retrying in the background.

        Returns:
            The state after the first attempt (CONNECTED or DISCONNECTED).
        """
        if self._task and not self._task.done():
            return self._state

        self._stopping = False
        self._set_state(ConnectionState.CONNECTING)
        first_attempt: asyncio.Future = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._supervise(first_attempt))
        await first_attempt
        return self._state

    async def disconnect(self) -> None:
        """Tear down the connection and suppress auto-reconnect. Idempotent."""
        self._stopping = True
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._mqtt = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from broker.")

    async def _supervise(self, first_attempt: asyncio.Future) -> None:
        delay = self._reconnect_initial_delay
        while True:
            connected = False
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with aiomqtt.Client(**self._client_options()) as mqtt:
                    self._mqtt = mqtt
                    connected = True
                    self._on_connected()
                    self._set_state(ConnectionState.CONNECTED)
                    if not first_attempt.done():
                        first_attempt.set_result(True)
                    await self._arm_subscriptions(mqtt)
                    async for message in mqtt.messages:
                        self._handle_message(message)
                logger.warning("Broker closed the connection.")
            except aiomqtt.MqttError as e:
                if connected:
                    logger.warning("Broker connection lost: %s", e)
                else:
                    logger.warning("Failed to connect to %s:%d: %s", self._host, self._port, e)
            finally:
                self._mqtt = None
                self._set_state(ConnectionState.DISCONNECTED)
                if not first_attempt.done():
                    first_attempt.set_result(False)

            if self._stopping or not self._auto_reconnect:
                return

            if connected:
                delay = self._reconnect_initial_delay
            else:
                self._on_attempt_failed()
            logger.info("Reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)
            if not connected:
                delay = min(delay * 2, self._reconnect_max_delay)

    def _client_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "hostname": self._host,
            "port": self._port,
            "username": self._username,
            "password": self._password,
            "identifier": self._client_id,
            "keepalive": self._keepalive,
        }
        if self._use_tls:
            # Self-signed brokers are the norm for local OpenMoxie installs.
            options["tls_params"] = aiomqtt.TLSParameters(cert_reqs=ssl.CERT_NONE)
            options["tls_insecure"] = True
        return options

    def _on_connected(self) -> None:
        logger.info("Connected to broker %s:%d", self._host, self._port)
        self._failures = 0
        self._offline = False

    def _on_attempt_failed(self) -> None:
        self._failures += 1
        if self._failures >= self._offline_after_failures and not self._offline:
            self._offline = True
            message = (
                f"Broker {self._host}:{self._port} unreachable after "
                f"{self._failures} attempts"
            )
            logger.error(message)
            self.error_events.emit(message)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Connection state %s -> %s", self._state.name, state.name)
        self._state = state
        self.state_events.emit(state)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, topic: str, payload: str | bytes) -> None:
        """Publish a payload at at-least-once QoS.

        Raises:
            NotConnected: If the connection is not up (nothing is sent) or
                the broker rejected the publish.
        """
        mqtt = self._mqtt
        if self._state is not ConnectionState.CONNECTED or mqtt is None:
            raise NotConnected(
                f"Cannot publish to {topic}: broker connection is {self._state.name}"
            )
        try:
            await mqtt.publish(topic, payload, qos=self._qos)
        except aiomqtt.MqttError as e:
            raise NotConnected(f"Publish to {topic} failed: {e}") from e
        logger.debug("Published to %s", topic)

    async def send_command(self, command: str, speech: str) -> None:
        """Publish a remote-chat event carrying ``speech`` on the control topic.

        Args:
            command: Label for the command (used in logs).
            speech: Spoken text or an encoded control payload.
        """
        await self.publish(self._control_topic, build_remote_chat_event(speech))
        logger.info("Sent %s command: %s", command, speech)

    async def send_intent(self, intent: ControlIntent) -> str:
        """Encode and send a control intent.

        Returns:
            The encoded payload that was sent.

        Raises:
            InvalidParameter: Validation failed; nothing was sent.
            NotConnected: The connection is not up.
        """
        payload = encode(intent)
        await self.send_command("control", payload)
        return payload

    # ------------------------------------------------------------------
    # Subscriptions and inbound dispatch
    # ------------------------------------------------------------------

    async def subscribe(
        self, topic_filter: str, callback: Callable[[BrokerMessage], Any]
    ) -> Subscription:
        """Register a callback for a topic filter.

        The registration takes effect immediately and survives reconnects.
        The first registration for a filter subscribes at the broker when
        connected; otherwise it is armed on the next connect.
        """
        subscription = Subscription(topic_filter, callback)
        is_new = topic_filter not in self._subscriptions
        self._subscriptions.setdefault(topic_filter, []).append(subscription)

        mqtt = self._mqtt
        if is_new and mqtt is not None and self.is_connected:
            try:
                await mqtt.subscribe(topic_filter, qos=self._qos)
                logger.info("Subscribed to %s", topic_filter)
            except aiomqtt.MqttError as e:
                logger.warning("Subscribe to %s failed (will retry on reconnect): %s",
                               topic_filter, e)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a registration. Unknown handles are ignored."""
        subs = self._subscriptions.get(subscription.topic_filter)
        if not subs or subscription not in subs:
            return
        subs.remove(subscription)
        if subs:
            return

        del self._subscriptions[subscription.topic_filter]
        mqtt = self._mqtt
        if mqtt is not None and self.is_connected:
            try:
                await mqtt.unsubscribe(subscription.topic_filter)
                logger.info("Unsubscribed from %s", subscription.topic_filter)
            except aiomqtt.MqttError as e:
                logger.warning("Unsubscribe from %s failed: %s", subscription.topic_filter, e)

    async def _arm_subscriptions(self, mqtt: aiomqtt.Client) -> None:
        for topic_filter in list(self._subscriptions):
            await mqtt.subscribe(topic_filter, qos=self._qos)
        if self._subscriptions:
            logger.info("Subscribed to %d topic filter(s)", len(self._subscriptions))

    def _handle_message(self, message: aiomqtt.Message) -> None:
        payload = message.payload
        if payload is None:
            payload = b""
        elif isinstance(payload, str):
            payload = payload.encode("utf-8")
        elif not isinstance(payload, (bytes, bytearray)):
            payload = str(payload).encode("utf-8")
        self.dispatch(str(message.topic), bytes(payload))

    def dispatch(self, topic: str, payload: bytes) -> int:
        """Deliver one inbound message to every matching subscriber.

        Subscribers run synchronously in registration order. A callback
        registered under several matching filters runs once. A subscriber
        that raises is logged and skipped.

        Returns:
            Number of callbacks invoked.
        """
        message = BrokerMessage(topic=topic, payload=payload,
                                received_at=datetime.now(timezone.utc))
        notified: list[Callable[[BrokerMessage], Any]] = []
        for topic_filter, subs in list(self._subscriptions.items()):
            if not topic_matches(topic, topic_filter):
                continue
            for subscription in list(subs):
                if subscription.callback in notified:
                    continue
                notified.append(subscription.callback)
                try:
                    subscription.callback(message)
                except Exception:
                    logger.exception("Subscriber for %s failed on %s", topic_filter, topic)
        return len(notified)
