"""Tests for the observer hubs and state definitions."""

from __future__ import annotations

from moxie_control.core.events import EventHub
from moxie_control.core.state_machine import SETUP_SEQUENCE, ConnectionState, SetupStage


class TestEventHub:
    def test_delivers_in_registration_order(self) -> None:
        hub = EventHub("test")
        seen: list[str] = []
        hub.subscribe(lambda v: seen.append(f"a:{v}"))
        hub.subscribe(lambda v: seen.append(f"b:{v}"))

        hub.emit(1)
        assert seen == ["a:1", "b:1"]

    def test_failing_observer_does_not_block_others(self) -> None:
        hub = EventHub("test")
        seen: list[int] = []

        def broken(value: int) -> None:
            raise RuntimeError("boom")

        hub.subscribe(broken)
        hub.subscribe(seen.append)

        hub.emit(7)
        assert seen == [7]

    def test_unsubscribe_handle(self) -> None:
        hub = EventHub("test")
        seen: list[int] = []
        remove = hub.subscribe(seen.append)

        hub.emit(1)
        remove()
        hub.emit(2)

        assert seen == [1]
        assert hub.observer_count == 0

    def test_unsubscribe_unknown_is_ignored(self) -> None:
        hub = EventHub("test")
        hub.unsubscribe(print)
        assert hub.observer_count == 0

    def test_observer_may_unsubscribe_during_emit(self) -> None:
        hub = EventHub("test")
        seen: list[int] = []
        remove = None

        def once(value: int) -> None:
            seen.append(value)
            remove()

        remove = hub.subscribe(once)
        hub.emit(1)
        hub.emit(2)
        assert seen == [1]


class TestStates:
    def test_connection_states_distinct(self) -> None:
        assert len(set(ConnectionState)) == 3

    def test_setup_sequence_order(self) -> None:
        assert SETUP_SEQUENCE[0] is SetupStage.CHECKING_PREREQUISITES
        assert SETUP_SEQUENCE[-1] is SetupStage.COMPLETE
        assert SetupStage.FAILED not in SETUP_SEQUENCE
        assert SetupStage.IDLE not in SETUP_SEQUENCE
