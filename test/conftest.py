from __future__ import annotations

import contextlib
import socket
import threading
import time
from typing import Callable, Iterator, List, Optional

import pytest

from smartcar_client.config import LinkConfig, LinkTimings


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeCar:
    """Localhost TCP peer standing in for the car's command port."""

    def __init__(self) -> None:
        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(4)
        self._server.settimeout(0.1)
        self.port = self._server.getsockname()[1]

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._conn: Optional[socket.socket] = None
        self._received = bytearray()
        self.accepted = 0
        self._threads: List[threading.Thread] = []

        accept = threading.Thread(target=self._accept_loop, daemon=True, name="fake-car-accept")
        accept.start()
        self._threads.append(accept)

    def _accept_loop(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(0.1)
            with self._lock:
                self._conn = conn
                self.accepted += 1
            reader = threading.Thread(target=self._read_loop, args=(conn,), daemon=True, name="fake-car-read")
            reader.start()
            self._threads.append(reader)

    def _read_loop(self, conn: socket.socket) -> None:
        while not self._stop.is_set():
            try:
                data = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not data:
                break
            with self._lock:
                self._received.extend(data)

    @property
    def received(self) -> bytes:
        with self._lock:
            return bytes(self._received)

    def clear_received(self) -> None:
        with self._lock:
            self._received.clear()

    def send(self, data: bytes) -> None:
        with self._lock:
            conn = self._conn
        assert conn is not None, "no client connected"
        conn.sendall(data)

    def drop_client(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            with contextlib.suppress(OSError):
                conn.shutdown(socket.SHUT_RDWR)
            conn.close()

    def close(self) -> None:
        self._stop.set()
        self.drop_client()
        self._server.close()
        for thread in self._threads:
            thread.join(timeout=1.0)


FAST_TIMINGS = LinkTimings(
    heartbeat_check_interval_s=0.05,
    heartbeat_warn_s=0.5,
    heartbeat_timeout_s=5.0,
    heartbeat_echo_min_interval_s=0.5,
    mode_initial_delay_s=0.1,
    mode_interval_s=0.1,
    reconnect_delay_s=0.1,
    queue_poll_s=0.02,
    join_timeout_s=1.0,
)


@pytest.fixture
def fake_car() -> Iterator[FakeCar]:
    car = FakeCar()
    try:
        yield car
    finally:
        car.close()


@pytest.fixture
def link_config(fake_car: FakeCar) -> LinkConfig:
    return LinkConfig(
        host="127.0.0.1",
        port=fake_car.port,
        connect_timeout_s=1.0,
        io_timeout_s=0.5,
        auto_reconnect=False,
        timings=FAST_TIMINGS,
    )
