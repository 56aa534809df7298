from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

MESSAGE_RECEIVED = "message_received"
CONNECTION_STATUS_CHANGED = "connection_status_changed"
SENSOR_DATA_UPDATED = "sensor_data_updated"
CAR_ERROR = "car_error"

EVENT_NAMES = (MESSAGE_RECEIVED, CONNECTION_STATUS_CHANGED, SENSOR_DATA_UPDATED, CAR_ERROR)

Callback = Callable[[Any], None]


class EventHub:
    """Observer list per event name.

    Dispatch is serialized so subscribers never run concurrently, and events
    are delivered in the order they were emitted.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callback]] = {name: [] for name in EVENT_NAMES}
        self._subscribers_lock = threading.Lock()
        self._dispatch_lock = threading.RLock()

    def subscribe(self, name: str, callback: Callback) -> Callable[[], None]:
        if name not in self._subscribers:
            raise ValueError(f"unknown event: {name}")
        with self._subscribers_lock:
            self._subscribers[name].append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                try:
                    self._subscribers[name].remove(callback)
                except ValueError:
                    pass

        return unsubscribe

    def emit(self, name: str, payload: Any) -> None:
        with self._subscribers_lock:
            callbacks = list(self._subscribers.get(name, ()))
        if not callbacks:
            return
        with self._dispatch_lock:
            for callback in callbacks:
                try:
                    callback(payload)
                except Exception:
                    logger.exception("Subscriber for %s failed", name)
