"""Shared fakes for broker-facing tests.

FakeBroker stands in for ``aiomqtt.Client``: each connection attempt either
fails with MqttError or yields a FakeSession whose publish/subscribe calls
are recorded and whose message stream is fed by the test.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, patch

import aiomqtt
import pytest

FAIL = "fail"


class FakeSession:
    """One established broker connection."""

    def __init__(self, options: dict[str, Any]) -> None:
        self.options = options
        self.publish = AsyncMock()
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> FakeSession:
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        return False

    @property
    def messages(self):
        return self._stream()

    async def _stream(self):
        while True:
            item = await self._inbox.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    def deliver(self, topic: str, payload: bytes | str) -> None:
        self._inbox.put_nowait(SimpleNamespace(topic=topic, payload=payload))

    def drop(self) -> None:
        self._inbox.put_nowait(aiomqtt.MqttError("Connection lost"))


class _RefusedConnection:
    async def __aenter__(self) -> None:
        raise aiomqtt.MqttError("Connection refused")

    async def __aexit__(self, *exc_info: object) -> bool:
        return False


class FakeBroker:
    """Callable replacement for ``aiomqtt.Client``.

    ``script`` holds the outcome of upcoming attempts (FAIL or "ok"); once it
    is exhausted every attempt uses ``default``.
    """

    def __init__(self) -> None:
        self.script: list[str] = []
        self.default = "ok"
        self.attempts = 0
        self.sessions: list[FakeSession] = []

    def __call__(self, **options: Any):
        self.attempts += 1
        outcome = self.script.pop(0) if self.script else self.default
        if outcome == FAIL:
            return _RefusedConnection()
        session = FakeSession(options)
        self.sessions.append(session)
        return session

    @property
    def current(self) -> FakeSession:
        return self.sessions[-1]


@pytest.fixture
def broker():
    fake = FakeBroker()
    with patch("aiomqtt.Client", fake):
        yield fake


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)
