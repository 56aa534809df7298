import pytest

from smartcar_client.wifi_link.sensors import (
    LINE_DETECTION_THRESHOLD,
    LineSensor,
    SensorCorrelator,
    SensorSnapshot,
)


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_default_snapshot_is_unknown() -> None:
    snapshot = SensorSnapshot()

    assert snapshot.ultrasonic_distance == -1
    assert snapshot.is_available(now=1000.0) is False


def test_pending_line_request_then_ultrasonic() -> None:
    correlator = SensorCorrelator(clock=FakeClock())
    correlator.expect_line_reading(1)

    snapshot = correlator.apply_reading(200)
    assert snapshot.middle_line_detected is True
    assert snapshot.left_line_detected is False
    assert snapshot.line_timestamp == 100.0
    assert correlator.pending_line_sensor is None

    snapshot = correlator.apply_reading(44)
    assert snapshot.ultrasonic_distance == 44
    assert snapshot.middle_line_detected is True


def test_line_threshold_boundary() -> None:
    correlator = SensorCorrelator(clock=FakeClock())

    correlator.expect_line_reading(LineSensor.LEFT)
    assert correlator.apply_reading(LINE_DETECTION_THRESHOLD - 1).left_line_detected is True

    correlator.expect_line_reading(LineSensor.RIGHT)
    assert correlator.apply_reading(LINE_DETECTION_THRESHOLD).right_line_detected is False


def test_expect_line_reading_validates_sensor() -> None:
    with pytest.raises(ValueError):
        SensorCorrelator().expect_line_reading(3)


def test_structured_ultrasonic_overwrites_distance() -> None:
    correlator = SensorCorrelator(clock=FakeClock())
    correlator.expect_line_reading(0)

    snapshot = correlator.apply_structured({"N": 21, "D": 37})

    assert snapshot is not None
    assert snapshot.ultrasonic_distance == 37
    # explicit messages bypass correlation
    assert correlator.pending_line_sensor == LineSensor.LEFT


def test_structured_line_message_sets_all_three() -> None:
    correlator = SensorCorrelator(clock=FakeClock())

    snapshot = correlator.apply_structured({"N": 22, "D1": 0, "D2": 1, "D3": 0})

    assert (snapshot.left_line_detected, snapshot.middle_line_detected, snapshot.right_line_detected) == (
        True,
        False,
        True,
    )


def test_structured_missing_field_or_other_opcode_ignored() -> None:
    correlator = SensorCorrelator(clock=FakeClock())

    assert correlator.apply_structured({"N": 21}) is None
    assert correlator.apply_structured({"N": 22, "D2": 1}) is None
    assert correlator.apply_structured({"N": 3, "D1": 1}) is None
    assert correlator.apply_structured({"H": "1"}) is None
    assert correlator.snapshot == SensorSnapshot()


def test_freshness_window() -> None:
    clock = FakeClock(10.0)
    correlator = SensorCorrelator(clock=clock)
    snapshot = correlator.apply_reading(55)

    assert snapshot.ultrasonic_fresh(now=14.9) is True
    assert snapshot.ultrasonic_fresh(now=15.1) is False
    assert snapshot.line_fresh(now=11.0) is False
    assert snapshot.is_available(now=14.0) is True


def test_reset_clears_snapshot_and_pending() -> None:
    correlator = SensorCorrelator(clock=FakeClock())
    correlator.expect_line_reading(2)
    correlator.apply_structured({"N": 21, "D": 9})

    correlator.reset()

    assert correlator.pending_line_sensor is None
    assert correlator.snapshot == SensorSnapshot()


def test_unrepresentable_numbers_ignored() -> None:
    correlator = SensorCorrelator(clock=FakeClock())

    assert correlator.apply_structured({"N": float("inf")}) is None
    assert correlator.apply_structured({"N": 21, "D": float("inf")}) is None
    assert correlator.apply_structured({"N": 22, "D1": float("-inf")}) is None
    assert correlator.snapshot.ultrasonic_distance == -1
