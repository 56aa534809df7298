import threading

import pytest

from smartcar_client.wifi_link.events import MESSAGE_RECEIVED, SENSOR_DATA_UPDATED, EventHub


def test_subscribers_receive_in_emit_order() -> None:
    hub = EventHub()
    seen = []
    hub.subscribe(MESSAGE_RECEIVED, seen.append)

    for i in range(5):
        hub.emit(MESSAGE_RECEIVED, f"{{{i}_ok}}")

    assert seen == ["{0_ok}", "{1_ok}", "{2_ok}", "{3_ok}", "{4_ok}"]


def test_unsubscribe_and_unknown_event() -> None:
    hub = EventHub()
    seen = []
    unsubscribe = hub.subscribe(SENSOR_DATA_UPDATED, seen.append)
    unsubscribe()
    unsubscribe()

    hub.emit(SENSOR_DATA_UPDATED, object())

    assert seen == []
    with pytest.raises(ValueError):
        hub.subscribe("nope", seen.append)


def test_failing_subscriber_does_not_block_others() -> None:
    hub = EventHub()
    seen = []

    def boom(_payload) -> None:
        raise RuntimeError("subscriber bug")

    hub.subscribe(MESSAGE_RECEIVED, boom)
    hub.subscribe(MESSAGE_RECEIVED, seen.append)
    hub.emit(MESSAGE_RECEIVED, "{ok}")

    assert seen == ["{ok}"]


def test_dispatch_is_never_concurrent() -> None:
    hub = EventHub()
    active = {"now": 0, "max": 0}
    lock = threading.Lock()

    def slow(_payload) -> None:
        with lock:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
        threading.Event().wait(0.005)
        with lock:
            active["now"] -= 1

    hub.subscribe(MESSAGE_RECEIVED, slow)
    threads = [
        threading.Thread(target=lambda: [hub.emit(MESSAGE_RECEIVED, "x") for _ in range(10)]) for _ in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert active["max"] == 1
