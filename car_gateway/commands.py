"""
Command codec for the car's TCP protocol.

Builds the newline-terminated JSON records understood by the car firmware:

    {"H":"Elegoo","N":4,"D1":<left>,"D2":<right>}   drive / stop
    {"H":"Elegoo","N":3,"D1":<1|2>,"D2":<speed>}    turn in place

plus the literal ``{Heartbeat}`` keepalive line. Payloads are plain
``bytes`` so that identical logical commands compare equal for the
link's de-duplication.
"""

import json
import math
from dataclasses import dataclass
from typing import Dict, Optional

COMMAND_ID = "Elegoo"

OP_DRIVE = 4
OP_TURN = 3

DIR_CODE_LEFT = 1
DIR_CODE_RIGHT = 2

SPEED_MAX = 255

DEFAULT_SPEED = 100
TURNING_SPEED = 75

HEARTBEAT = b"{Heartbeat}\n"

_DIRECTION_CODES = {
    "LEFT": DIR_CODE_LEFT,
    "RIGHT": DIR_CODE_RIGHT,
}


def _clamp(value: float, low: int, high: int) -> int:
    # round() is banker's rounding; the firmware tables assume half-up
    rounded = math.floor(value + 0.5)
    return max(low, min(high, rounded))


def _encode(op: int, d1: int, d2: int) -> bytes:
    record = {"H": COMMAND_ID, "N": op, "D1": d1, "D2": d2}
    return (json.dumps(record, separators=(",", ":")) + "\n").encode("utf-8")


def stop_command() -> bytes:
    """Both wheels to zero."""
    return _encode(OP_DRIVE, 0, 0)


def move_command(left_speed: float, right_speed: float) -> bytes:
    """
    Differential drive command.

    Each wheel speed is rounded and clamped to [-255, 255].
    """
    left = _clamp(left_speed, -SPEED_MAX, SPEED_MAX)
    right = _clamp(right_speed, -SPEED_MAX, SPEED_MAX)
    return _encode(OP_DRIVE, left, right)


def turn_command(direction: str, speed: float) -> bytes:
    """
    Turn-in-place command.

    Args:
        direction: "LEFT" or "RIGHT"
        speed: Turning speed, clamped to [0, 255]
    """
    try:
        code = _DIRECTION_CODES[direction.upper()]
    except (KeyError, AttributeError):
        raise ValueError(f"Invalid turn direction: {direction!r}") from None
    return _encode(OP_TURN, code, _clamp(speed, 0, SPEED_MAX))


def heartbeat() -> bytes:
    return HEARTBEAT


@dataclass(frozen=True)
class CommandSet:
    """Prebuilt payloads for the fixed UI actions."""
    stop: bytes
    forward: bytes
    backward: bytes
    left: bytes
    right: bytes

    @classmethod
    def build(
        cls,
        default_speed: int = DEFAULT_SPEED,
        turning_speed: int = TURNING_SPEED,
    ) -> 'CommandSet':
        return cls(
            stop=stop_command(),
            forward=move_command(default_speed, default_speed),
            backward=move_command(-default_speed, -default_speed),
            left=turn_command("LEFT", turning_speed),
            right=turn_command("RIGHT", turning_speed),
        )

    def action_map(self) -> Dict[str, bytes]:
        """Actions a client may request. BACKWARD is not exposed to the UI."""
        return {
            "STOP": self.stop,
            "FORWARD": self.forward,
            "LEFT": self.left,
            "RIGHT": self.right,
        }

    def for_action(self, action: str) -> Optional[bytes]:
        return self.action_map().get(action)


DEFAULT_COMMANDS = CommandSet.build()

CMD_STOP = DEFAULT_COMMANDS.stop
CMD_FORWARD = DEFAULT_COMMANDS.forward
CMD_BACKWARD = DEFAULT_COMMANDS.backward
CMD_LEFT = DEFAULT_COMMANDS.left
CMD_RIGHT = DEFAULT_COMMANDS.right
