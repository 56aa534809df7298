from __future__ import annotations

import json
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple, Union


OP_MOTOR = 1
OP_CAR_TIMED = 2
OP_CAR = 3
OP_MOTOR_SPEED = 4
OP_SERVO = 5
OP_ULTRASONIC = 21
OP_INFRARED = 22
OP_LEFT_GROUND = 23
OP_JOYSTICK_CLEAR = 100
OP_SWITCH_MODE = 101
OP_JOYSTICK = 102
OP_CAMERA = 106
OP_PROGRAMMING_CLEAR = 110

STOP_DIRECTION = 5

_PARAM_KEYS = ("D1", "D2", "D3")


def as_int(name: str, value: Union[int, float, str]) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, not {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{name} must be a whole number, {value} is out of range")
        return int(value)
    return int(value)


def _check_range(name: str, value: int, low: int, high: int) -> int:
    value = as_int(name, value)
    if value < low or value > high:
        raise ValueError(f"{name} must be between {low} and {high}, {value} is out of range")
    return value


def _check_choice(name: str, value: int, choices: Tuple[int, ...]) -> int:
    value = as_int(name, value)
    if value not in choices:
        allowed = " or ".join(str(c) for c in choices)
        raise ValueError(f"{name} can only be {allowed}, {value} is out of range")
    return value


@dataclass(frozen=True, slots=True)
class Command:
    opcode: int
    params: Tuple[int, ...] = ()
    duration: Optional[int] = None
    acknowledged: bool = False
    sequence: Optional[int] = None

    def with_sequence(self, sequence: int) -> "Command":
        return replace(self, sequence=int(sequence))

    def to_dict(self) -> Dict[str, Union[str, int]]:
        out: Dict[str, Union[str, int]] = {}
        if self.sequence is not None:
            out["H"] = str(self.sequence)
        out["N"] = self.opcode
        for key, value in zip(_PARAM_KEYS, self.params):
            out[key] = value
        if self.duration is not None:
            out["T"] = self.duration
        return out

    def to_payload(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


class SequenceCounter:
    """Monotonic sequence source for acknowledged commands; one per session."""

    __slots__ = ("_value", "_lock")

    def __init__(self, start: int = 0) -> None:
        self._value = int(start)
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


def car_control(direction: int, speed: int) -> Command:
    direction = _check_range("direction", direction, 1, 4)
    speed = _check_range("speed", speed, 0, 255)
    return Command(OP_CAR, (direction, speed), acknowledged=True)


def car_control_time(direction: int, speed: int, duration_ms: int) -> Command:
    direction = _check_range("direction", direction, 1, 4)
    speed = _check_range("speed", speed, 0, 255)
    return Command(OP_CAR_TIMED, (direction, speed), duration=as_int("duration_ms", duration_ms), acknowledged=True)


def car_stop() -> Command:
    return Command(OP_CAR_TIMED, (STOP_DIRECTION, 0), duration=0, acknowledged=True)


def camera_rotation(direction: int) -> Command:
    direction = _check_range("direction", direction, 1, 5)
    return Command(OP_CAMERA, (direction,))


def motor_control(motor: int, speed: int, direction: int) -> Command:
    motor = _check_range("motor", motor, 0, 2)
    speed = _check_range("speed", speed, 0, 255)
    direction = _check_choice("direction", direction, (1, 2))
    return Command(OP_MOTOR, (motor, speed, direction), acknowledged=True)


def motor_control_speed(left_speed: int, right_speed: int) -> Command:
    left_speed = _check_range("left_speed", left_speed, 0, 255)
    right_speed = _check_range("right_speed", right_speed, 0, 255)
    return Command(OP_MOTOR_SPEED, (left_speed, right_speed), acknowledged=True)


def servo_control(servo: int, angle: int) -> Command:
    servo = _check_choice("servo", servo, (1, 2))
    angle = _check_range("angle", angle, 0, 180)
    return Command(OP_SERVO, (servo, angle), acknowledged=True)


def switch_mode(mode: int) -> Command:
    # mode 0 is not a payload; callers send joystick_clear() instead
    mode = _check_range("mode", mode, 1, 3)
    return Command(OP_SWITCH_MODE, (mode,))


def ultrasonic_status(mode: int) -> Command:
    mode = _check_choice("mode", mode, (1, 2))
    return Command(OP_ULTRASONIC, (mode,))


def infrared_status(sensor: int) -> Command:
    sensor = _check_range("sensor", sensor, 0, 2)
    return Command(OP_INFRARED, (sensor,))


def joystick_clear() -> Command:
    return Command(OP_JOYSTICK_CLEAR)


def joystick_movement(direction: int) -> Command:
    direction = _check_range("direction", direction, 0, 9)
    return Command(OP_JOYSTICK, (direction,))


def left_ground() -> Command:
    return Command(OP_LEFT_GROUND)


def programming_clear() -> Command:
    return Command(OP_PROGRAMMING_CLEAR, acknowledged=True)
