from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Callable, Mapping, Optional

from .commands import OP_INFRARED, OP_ULTRASONIC

logger = logging.getLogger(__name__)

FRESHNESS_WINDOW_S = 5.0

# Raw analog line readings run 0..1023; dark surface reads low.
LINE_DETECTION_THRESHOLD = 500

SENSOR_OPCODES = (OP_ULTRASONIC, OP_INFRARED)


class LineSensor(IntEnum):
    LEFT = 0
    MIDDLE = 1
    RIGHT = 2


_LINE_FIELDS = {
    LineSensor.LEFT: "left_line_detected",
    LineSensor.MIDDLE: "middle_line_detected",
    LineSensor.RIGHT: "right_line_detected",
}


def _fresh(timestamp: Optional[float], now: float, window_s: float) -> bool:
    return timestamp is not None and (now - timestamp) < window_s


@dataclass(frozen=True, slots=True)
class SensorSnapshot:
    ultrasonic_distance: int = -1
    ultrasonic_timestamp: Optional[float] = None
    left_line_detected: bool = False
    middle_line_detected: bool = False
    right_line_detected: bool = False
    line_timestamp: Optional[float] = None

    def ultrasonic_fresh(self, now: Optional[float] = None, window_s: float = FRESHNESS_WINDOW_S) -> bool:
        return _fresh(self.ultrasonic_timestamp, time.monotonic() if now is None else now, window_s)

    def line_fresh(self, now: Optional[float] = None, window_s: float = FRESHNESS_WINDOW_S) -> bool:
        return _fresh(self.line_timestamp, time.monotonic() if now is None else now, window_s)

    def is_available(self, now: Optional[float] = None, window_s: float = FRESHNESS_WINDOW_S) -> bool:
        now = time.monotonic() if now is None else now
        return self.ultrasonic_fresh(now, window_s) or self.line_fresh(now, window_s)

    def as_dict(self) -> dict:
        return {
            "ultrasonic_distance": self.ultrasonic_distance,
            "ultrasonic_timestamp": self.ultrasonic_timestamp,
            "ultrasonic_fresh": self.ultrasonic_fresh(),
            "left_line_detected": self.left_line_detected,
            "middle_line_detected": self.middle_line_detected,
            "right_line_detected": self.right_line_detected,
            "line_timestamp": self.line_timestamp,
            "line_fresh": self.line_fresh(),
            "available": self.is_available(),
        }


class SensorCorrelator:
    """Turns ambiguous ``{id_value}`` readings into sensor fields.

    The car answers both ultrasonic and line-sensor requests with the same
    token shape. A line request arms a single pending slot; the next reading
    is taken as that sensor's analog value and the slot is cleared. With no
    pending slot a reading is an ultrasonic distance in centimeters.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._snapshot = SensorSnapshot()
        self._pending_line_sensor: Optional[LineSensor] = None
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> SensorSnapshot:
        return self._snapshot

    @property
    def pending_line_sensor(self) -> Optional[LineSensor]:
        return self._pending_line_sensor

    def expect_line_reading(self, sensor: int) -> None:
        sensor = int(sensor)
        if sensor not in (0, 1, 2):
            raise ValueError(f"sensor must be between 0 and 2, {sensor} is out of range")
        with self._lock:
            self._pending_line_sensor = LineSensor(sensor)

    def clear_pending(self) -> None:
        with self._lock:
            self._pending_line_sensor = None

    def reset(self) -> None:
        with self._lock:
            self._pending_line_sensor = None
            self._snapshot = SensorSnapshot()

    def apply_reading(self, value: int) -> SensorSnapshot:
        now = self._clock()
        with self._lock:
            sensor = self._pending_line_sensor
            if sensor is not None:
                detected = int(value) < LINE_DETECTION_THRESHOLD
                self._snapshot = replace(
                    self._snapshot, **{_LINE_FIELDS[sensor]: detected, "line_timestamp": now}
                )
                self._pending_line_sensor = None
                logger.info(
                    "Line %s: %d -> %s", sensor.name, value, "DETECTED" if detected else "NOT DETECTED"
                )
            else:
                self._snapshot = replace(
                    self._snapshot, ultrasonic_distance=int(value), ultrasonic_timestamp=now
                )
                logger.info("Ultrasonic: %d cm", value)
            return self._snapshot

    def apply_structured(self, fields: Mapping[str, Any]) -> Optional[SensorSnapshot]:
        """Apply an explicitly typed sensor message; returns None if it is not one."""
        try:
            opcode = int(fields.get("N"))
        except (TypeError, ValueError, OverflowError):
            return None

        now = self._clock()
        if opcode == OP_ULTRASONIC:
            distance = _int_field(fields, "D")
            if distance is None:
                logger.error("Ultrasonic response missing 'D' field: %s", dict(fields))
                return None
            with self._lock:
                self._snapshot = replace(
                    self._snapshot, ultrasonic_distance=distance, ultrasonic_timestamp=now
                )
                logger.info("Ultrasonic: %d cm", distance)
                return self._snapshot

        if opcode == OP_INFRARED:
            left = _int_field(fields, "D1")
            if left is None:
                logger.error("Line tracking response missing 'D1' field: %s", dict(fields))
                return None
            middle = _int_field(fields, "D2") or 0
            right = _int_field(fields, "D3") or 0
            # explicit line messages report 0 for a detected line
            with self._lock:
                self._snapshot = replace(
                    self._snapshot,
                    left_line_detected=left == 0,
                    middle_line_detected=middle == 0,
                    right_line_detected=right == 0,
                    line_timestamp=now,
                )
                logger.info("Line: L=%d M=%d R=%d", left, middle, right)
                return self._snapshot

        return None


def _int_field(fields: Mapping[str, Any], key: str) -> Optional[int]:
    value = fields.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None
