"""State definitions for the broker connection and first-run setup."""

from __future__ import annotations

from enum import Enum, auto


class ConnectionState(Enum):
    """States of the broker connection.

    Transitions:
        DISCONNECTED → CONNECTING (connect() or auto-reconnect attempt)
        CONNECTING → CONNECTED (broker accepted the session)
        CONNECTING → DISCONNECTED (attempt failed)
        CONNECTED → DISCONNECTED (drop, broker close, or disconnect())
    """

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()


class SetupStage(Enum):
    """Stages of the first-run installation.

    Transitions:
        IDLE → CHECKING_PREREQUISITES → INSTALLING_ENGINE
             → INSTALLING_MESSAGE_BROKER → STARTING_CONTAINER
             → VERIFYING → COMPLETE
        Any → FAILED (absorbing until reset)
    """

    IDLE = auto()
    CHECKING_PREREQUISITES = auto()
    INSTALLING_ENGINE = auto()
    INSTALLING_MESSAGE_BROKER = auto()
    STARTING_CONTAINER = auto()
    VERIFYING = auto()
    COMPLETE = auto()
    FAILED = auto()


# Forward order of the setup run, used for percent-complete reporting.
SETUP_SEQUENCE = (
    SetupStage.CHECKING_PREREQUISITES,
    SetupStage.INSTALLING_ENGINE,
    SetupStage.INSTALLING_MESSAGE_BROKER,
    SetupStage.STARTING_CONTAINER,
    SetupStage.VERIFYING,
    SetupStage.COMPLETE,
)
