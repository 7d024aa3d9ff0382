"""Control intents and their wire encoding.

Every intent is validated when it is built, so an invalid value is
rejected before anything touches the network. Encoded payloads use the
bracketed ``[key:value]`` / ``[key:value1:value2]`` format Moxie expects.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from moxie_control.core.errors import InvalidParameter


class MoveDirection(Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    LEFT = "left"
    RIGHT = "right"


class LookDirection(Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    CENTER = "center"


class ArmSide(Enum):
    LEFT = "left"
    RIGHT = "right"


class ArmPosition(Enum):
    UP = "up"
    DOWN = "down"


class Emotion(Enum):
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    SURPRISED = "surprised"
    NEUTRAL = "neutral"
    EXCITED = "excited"
    SLEEPY = "sleepy"
    CONFUSED = "confused"


class IntentKind(Enum):
    MOVE = "move"
    LOOK = "look"
    ARM = "arm"
    VOLUME = "volume"
    MUTE = "mute"
    CAMERA = "camera"
    EMOTION = "emotion"


@dataclass(frozen=True)
class ControlIntent:
    """A validated, not-yet-encoded robot action.

    Attributes:
        kind: Which control the intent addresses.
        parameters: Kind-specific values, already validated.
    """

    kind: IntentKind
    parameters: tuple[Any, ...]


@dataclass(frozen=True)
class ControlCommand:
    """An encoded command ready for publication."""

    topic: str
    payload: str


def _member(enum_cls: type[Enum], value: Any, label: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(m.value for m in enum_cls)
    raise InvalidParameter(f"Invalid {label} {value!r}. Must be one of: {allowed}")


def _flag(value: Any, label: str) -> bool:
    if isinstance(value, bool):
        return value
    raise InvalidParameter(f"{label} must be a boolean, got {value!r}")


def move(direction: MoveDirection | str) -> ControlIntent:
    return ControlIntent(IntentKind.MOVE, (_member(MoveDirection, direction, "move direction"),))


def look(direction: LookDirection | str) -> ControlIntent:
    return ControlIntent(IntentKind.LOOK, (_member(LookDirection, direction, "look direction"),))


def arm(side: ArmSide | str, position: ArmPosition | str) -> ControlIntent:
    return ControlIntent(
        IntentKind.ARM,
        (_member(ArmSide, side, "arm side"), _member(ArmPosition, position, "arm position")),
    )


def emotion(value: Emotion | str) -> ControlIntent:
    return ControlIntent(IntentKind.EMOTION, (_member(Emotion, value, "emotion"),))


def volume(level: int) -> ControlIntent:
    """Build a volume intent.

    Args:
        level: Volume percentage, 0-100 inclusive.

    Raises:
        InvalidParameter: If level is not an int in range.
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise InvalidParameter(f"Volume must be an integer, got {level!r}")
    if not 0 <= level <= 100:
        raise InvalidParameter(f"Volume must be between 0 and 100, got {level}")
    return ControlIntent(IntentKind.VOLUME, (level,))


def mute(muted: bool) -> ControlIntent:
    return ControlIntent(IntentKind.MUTE, (_flag(muted, "mute"),))


def camera(enabled: bool) -> ControlIntent:
    return ControlIntent(IntentKind.CAMERA, (_flag(enabled, "camera"),))


_BUILDERS = {
    IntentKind.MOVE: move,
    IntentKind.LOOK: look,
    IntentKind.ARM: arm,
    IntentKind.EMOTION: emotion,
    IntentKind.VOLUME: volume,
    IntentKind.MUTE: mute,
    IntentKind.CAMERA: camera,
}


def encode(intent: ControlIntent) -> str:
    """Encode an intent as its wire payload, e.g. ``[arm:left:up]``.

    The parameters are re-validated, so hand-built ControlIntent values
    with out-of-domain parameters are rejected too.

    Raises:
        InvalidParameter: If the intent or any parameter is invalid.
    """
    if not isinstance(intent, ControlIntent) or intent.kind not in _BUILDERS:
        raise InvalidParameter(f"Unsupported intent: {intent!r}")
    try:
        validated = _BUILDERS[intent.kind](*intent.parameters)
    except TypeError as e:
        raise InvalidParameter(f"Wrong parameters for {intent.kind.value}: {e}") from e

    parts = [intent.kind.value]
    for param in validated.parameters:
        if isinstance(param, Enum):
            parts.append(param.value)
        elif isinstance(param, bool):
            parts.append("true" if param else "false")
        else:
            parts.append(str(param))
    return "[" + ":".join(parts) + "]"


def build_remote_chat_event(speech: str, event_id: str | None = None) -> str:
    """Build the remote-chat event JSON the OpenMoxie backend consumes.

    Args:
        speech: Text (or an encoded control payload) for Moxie.
        event_id: Unique event id. A random UUID if omitted.

    Returns:
        Compact JSON string.
    """
    payload = {
        "event_id": event_id or str(uuid.uuid4()),
        "command": "continue" if speech else "prompt",
        "speech": speech,
        "backend": "router",
        "module_id": "OPENMOXIE_CHAT",
        "content_id": "default",
    }
    return json.dumps(payload, separators=(",", ":"))
