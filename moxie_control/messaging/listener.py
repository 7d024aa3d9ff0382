"""Conversation listener: turns broker telemetry into ConversationEvents.

Subscribes to the configured conversation/telemetry topic filters through
the MessageChannelClient, decodes recognized messages and broadcasts them.
Persistence, memory extraction and safety logging are left to subscribers.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Sequence

from moxie_control.core.events import EventHub
from moxie_control.messaging.client import BrokerMessage, MessageChannelClient, Subscription

logger = logging.getLogger(__name__)

# Recognized by the last topic segment.
RECOGNIZED_KINDS = frozenset(
    {"user", "assistant", "start", "metadata", "remote_chat", "wakeword"}
)


@dataclass(frozen=True)
class ConversationEvent:
    """Decoded inbound conversation/telemetry message.

    Attributes:
        topic: Topic the message arrived on.
        raw_payload: Payload as text.
        received_at: Arrival time.
        kind: Last topic segment ("user", "assistant", "remote_chat", ...).
        text: Spoken/displayed text, if the payload carried any.
        fields: Parsed JSON object (empty if the payload was not a JSON object).
        actions: Names of response actions (remote_chat responses).
        personality: Personality most recently announced via metadata.
    """

    topic: str
    raw_payload: str
    received_at: datetime
    kind: str
    text: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    actions: tuple[str, ...] = ()
    personality: str | None = None


def decode_message(message: BrokerMessage, personality: str | None = None) -> ConversationEvent | None:
    """Decode a broker message, or return None for unrecognized topics."""
    kind = message.topic.rstrip("/").rsplit("/", 1)[-1]
    if kind not in RECOGNIZED_KINDS:
        return None

    raw = message.text
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        parsed = {}
    fields = parsed if isinstance(parsed, dict) else {}

    text = fields.get("text")
    output = fields.get("output")
    if text is None and isinstance(output, dict):
        text = output.get("text")

    actions: list[str] = []
    raw_actions = fields.get("response_actions")
    for action in raw_actions if isinstance(raw_actions, list) else ():
        if isinstance(action, dict) and isinstance(action.get("action"), str):
            actions.append(action["action"])

    return ConversationEvent(
        topic=message.topic,
        raw_payload=raw,
        received_at=message.received_at,
        kind=kind,
        text=text if isinstance(text, str) else None,
        fields=fields,
        actions=tuple(actions),
        personality=personality,
    )


class ConversationListener:
    """Fans out decoded conversation events from the broker.

    Args:
        client: The process's message channel client.
        topic_filters: Telemetry/conversation filters to subscribe to.
    """

    def __init__(self, client: MessageChannelClient, topic_filters: Sequence[str]) -> None:
        self._client = client
        self._topic_filters = tuple(topic_filters)
        self._subscriptions: list[Subscription] = []
        self._personality: str | None = None
        self._message_count = 0
        self._last_message_at: datetime | None = None

        self.events = EventHub("conversation_events")
        self.error_events = EventHub("listener_errors")

    @property
    def is_listening(self) -> bool:
        return bool(self._subscriptions)

    @property
    def message_count(self) -> int:
        """Number of recognized messages broadcast since construction."""
        return self._message_count

    @property
    def last_message_at(self) -> datetime | None:
        return self._last_message_at

    @property
    def personality(self) -> str | None:
        return self._personality

    async def start_listening(self) -> bool:
        """Subscribe to every configured filter.

        Returns:
            True if listening, False if the client was not connected (an
            error is emitted on error_events in that case).
        """
        if self.is_listening:
            return True
        if not self._client.is_connected:
            message = (
                f"Cannot start conversation listener: broker connection is "
                f"{self._client.state.name}"
            )
            logger.warning(message)
            self.error_events.emit(message)
            return False

        for topic_filter in self._topic_filters:
            self._subscriptions.append(
                await self._client.subscribe(topic_filter, self._on_message)
            )
        logger.info("Conversation listener started (%d filters).", len(self._topic_filters))
        return True

    async def stop_listening(self) -> None:
        """Unsubscribe from all filters. Idempotent."""
        if not self._subscriptions:
            return
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await self._client.unsubscribe(subscription)
        logger.info("Conversation listener stopped.")

    def _on_message(self, message: BrokerMessage) -> None:
        event = decode_message(message, self._personality)
        if event is None:
            logger.debug("Ignoring message on %s", message.topic)
            return

        if event.kind == "metadata":
            personality = event.fields.get("personality")
            if isinstance(personality, str):
                self._personality = personality
                logger.info("Personality: %s", personality)
                event = replace(event, personality=personality)
        elif event.kind == "user" and event.text:
            logger.info("User: %s", event.text)
        elif event.kind in ("assistant", "remote_chat") and event.text:
            logger.info("Moxie: %s", event.text)

        self._message_count += 1
        self._last_message_at = event.received_at
        self.events.emit(event)
