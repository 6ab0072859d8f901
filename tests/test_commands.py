"""Tests for the car command codec."""

import json

import pytest

from car_gateway import commands
from car_gateway.commands import (
    CMD_BACKWARD,
    CMD_FORWARD,
    CMD_LEFT,
    CMD_RIGHT,
    CMD_STOP,
    CommandSet,
    heartbeat,
    move_command,
    stop_command,
    turn_command,
)


def _decode(payload: bytes) -> dict:
    assert payload.endswith(b"\n")
    return json.loads(payload)


def test_stop_command_wire_format():
    assert stop_command() == b'{"H":"Elegoo","N":4,"D1":0,"D2":0}\n'


def test_move_command_clamps_each_operand():
    assert _decode(move_command(999, -999)) == {"H": "Elegoo", "N": 4, "D1": 255, "D2": -255}
    assert _decode(move_command(-300, 300)) == {"H": "Elegoo", "N": 4, "D1": -255, "D2": 255}


@pytest.mark.parametrize(
    "value,expected",
    [(99.4, 99), (99.5, 100), (-99.5, -99), (-99.6, -100), (0.0, 0)],
)
def test_move_command_rounds_half_up(value, expected):
    assert _decode(move_command(value, value))["D1"] == expected


def test_turn_command_encodes_direction_and_clamps_speed():
    assert turn_command("LEFT", 75) == b'{"H":"Elegoo","N":3,"D1":1,"D2":75}\n'
    assert _decode(turn_command("RIGHT", 75))["D1"] == 2
    assert _decode(turn_command("right", 500))["D2"] == 255
    assert _decode(turn_command("LEFT", -20))["D2"] == 0


def test_turn_command_rejects_unknown_direction():
    with pytest.raises(ValueError):
        turn_command("UP", 75)


def test_heartbeat_is_literal_not_json():
    assert heartbeat() == b"{Heartbeat}\n"
    with pytest.raises(json.JSONDecodeError):
        json.loads(heartbeat())


def test_prebuilt_commands_match_builders():
    assert turn_command("LEFT", commands.TURNING_SPEED) == CMD_LEFT
    assert turn_command("RIGHT", commands.TURNING_SPEED) == CMD_RIGHT
    assert move_command(commands.DEFAULT_SPEED, commands.DEFAULT_SPEED) == CMD_FORWARD
    assert move_command(-100, -100) == CMD_BACKWARD
    assert stop_command() == CMD_STOP


def test_builders_are_deterministic():
    assert CommandSet.build() == CommandSet.build()
    assert move_command(10, 20) == move_command(10, 20)


def test_action_map_does_not_expose_backward():
    action_map = CommandSet.build().action_map()
    assert set(action_map) == {"STOP", "FORWARD", "LEFT", "RIGHT"}
    assert CMD_BACKWARD not in action_map.values()


def test_command_set_uses_configured_speeds():
    custom = CommandSet.build(default_speed=150, turning_speed=60)
    assert _decode(custom.forward) == {"H": "Elegoo", "N": 4, "D1": 150, "D2": 150}
    assert _decode(custom.for_action("LEFT"))["D2"] == 60
    assert custom.for_action("JUMP") is None
