from __future__ import annotations

import contextlib
import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Any, Callable, List, Mapping, Optional, Union

from ..config import LinkConfig
from ..logging_config import TRACE
from . import commands
from .commands import Command, SequenceCounter
from .events import (
    CAR_ERROR,
    CONNECTION_STATUS_CHANGED,
    MESSAGE_RECEIVED,
    SENSOR_DATA_UPDATED,
    EventHub,
)
from .protocol import HEARTBEAT, HEARTBEAT_BYTES, StreamFramer, Token, TokenKind
from .sensors import SENSOR_OPCODES, SensorCorrelator, SensorSnapshot

logger = logging.getLogger(__name__)

RECV_CHUNK = 4096


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Mode(IntEnum):
    MANUAL = 0
    LINE_FOLLOW = 1
    OBSTACLE_AVOID = 2
    FOLLOW = 3


@dataclass(slots=True)
class LinkStats:
    tx_ok: int = 0
    tx_errors: int = 0
    rx_bytes: int = 0
    heartbeats: int = 0
    heartbeat_echoes: int = 0
    acks: int = 0
    sensor_readings: int = 0
    structured_messages: int = 0
    malformed_spans: int = 0
    dropped_bytes: int = 0
    car_errors: int = 0
    rejected_commands: int = 0
    disconnects: int = 0
    reconnect_attempts: int = 0


def _close_socket(sock: Optional[socket.socket]) -> None:
    if sock is None:
        return
    # shutdown wakes a recv() blocked in another thread; close() alone does not
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)
    with contextlib.suppress(OSError):
        sock.close()


def _opcode(fields: Optional[Mapping[str, Any]]) -> Optional[int]:
    if not fields:
        return None
    try:
        return int(fields.get("N"))
    except (TypeError, ValueError, OverflowError):
        return None


class CarClient:
    """Session with the car's command/telemetry channel.

    A successful connect starts four daemon threads sharing one cancellation
    event: receive, send, heartbeat watchdog and mode maintenance. Any I/O
    failure or heartbeat timeout tears them down, emits
    ``connection_status_changed(False)`` and, with ``auto_reconnect``, retries
    the full connect every ``reconnect_delay_s`` until it succeeds.
    """

    def __init__(
        self,
        config: Optional[LinkConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or LinkConfig()
        self.timings = self.config.timings
        self._clock = clock

        self.events = EventHub()
        self._sequence = SequenceCounter()
        self._correlator = SensorCorrelator(clock=clock)
        self._framer = StreamFramer()
        self._send_queue: "queue.Queue[str]" = queue.Queue()
        self._submit_lock = threading.Lock()

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._sock: Optional[socket.socket] = None
        self._cancel = threading.Event()
        self._cancel.set()
        self._closed = threading.Event()
        self._duties: List[threading.Thread] = []
        self._reconnecting = False
        self._reconnect_thread: Optional[threading.Thread] = None

        self._mode = Mode.MANUAL
        self._last_heartbeat = clock()
        self._last_echo: Optional[float] = None

        self._stats = LinkStats()
        self._stats_lock = threading.Lock()

    def __enter__(self) -> "CarClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    # -- queries ---------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def current_mode(self) -> Mode:
        return self._mode

    @property
    def last_sequence(self) -> int:
        return self._sequence.value

    @property
    def pending_line_sensor(self) -> Optional[int]:
        return self._correlator.pending_line_sensor

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def current_sensor_snapshot(self) -> SensorSnapshot:
        return self._correlator.snapshot

    def seconds_since_heartbeat(self) -> float:
        return self._clock() - self._last_heartbeat

    def queued_payloads(self) -> int:
        return self._send_queue.qsize()

    def get_stats(self) -> LinkStats:
        with self._stats_lock:
            return replace(self._stats)

    # -- lifecycle -------------------------------------------------------

    def connect(self) -> bool:
        if self._closed.is_set():
            logger.error("Client disposed, not connecting")
            return False

        with self._state_lock:
            if self._state is ConnectionState.CONNECTED:
                return True
            if self._state is ConnectionState.CONNECTING:
                logger.warning("Connect attempt already in progress")
                return False
            self._state = ConnectionState.CONNECTING

        host, port = self.config.host, self.config.port
        logger.info("Connecting to %s:%d...", host, port)
        try:
            sock = self._open_socket()
        except OSError as exc:
            logger.error("Connection to %s:%d failed: %s", host, port, exc)
            with self._state_lock:
                self._state = ConnectionState.DISCONNECTED
            return False

        self._join_duties()
        self._discard_stale_payloads()
        self._framer.reset()
        self._correlator.clear_pending()

        cancel = threading.Event()
        with self._state_lock:
            if self._closed.is_set():
                self._state = ConnectionState.DISCONNECTED
                _close_socket(sock)
                return False
            self._sock = sock
            self._cancel = cancel
            self._last_heartbeat = self._clock()
            self._last_echo = None
            self._state = ConnectionState.CONNECTED

        logger.info("Connected to %s:%d", host, port)
        self.events.emit(CONNECTION_STATUS_CHANGED, True)

        self._duties = [
            threading.Thread(target=self._rx_loop, args=(sock, cancel), name="smartcar-rx", daemon=True),
            threading.Thread(target=self._tx_loop, args=(sock, cancel), name="smartcar-tx", daemon=True),
            threading.Thread(target=self._watchdog_loop, args=(cancel,), name="smartcar-watchdog", daemon=True),
            threading.Thread(target=self._mode_loop, args=(cancel,), name="smartcar-mode", daemon=True),
        ]
        for thread in self._duties:
            thread.start()
        return True

    def dispose(self) -> None:
        self._closed.set()
        with self._state_lock:
            was_connected = self._state is ConnectionState.CONNECTED
            self._state = ConnectionState.DISCONNECTED
            sock, self._sock = self._sock, None
            cancel = self._cancel
        cancel.set()
        _close_socket(sock)

        self._join_duties()
        reconnect = self._reconnect_thread
        if reconnect is not None and reconnect is not threading.current_thread():
            reconnect.join(timeout=self.timings.join_timeout_s)
        self._discard_stale_payloads()

        if was_connected:
            logger.info("Disconnected from %s:%d", self.config.host, self.config.port)
            self.events.emit(CONNECTION_STATUS_CHANGED, False)

    def _open_socket(self) -> socket.socket:
        cfg = self.config
        sock = socket.create_connection((cfg.host, cfg.port), timeout=cfg.connect_timeout_s)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, cfg.buffer_size)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, cfg.buffer_size)
            sock.settimeout(cfg.io_timeout_s)
        except OSError:
            sock.close()
            raise
        return sock

    def _join_duties(self) -> None:
        current = threading.current_thread()
        for thread in self._duties:
            if thread is not current and thread.is_alive():
                thread.join(timeout=self.timings.join_timeout_s)
        self._duties = []

    def _discard_stale_payloads(self) -> None:
        dropped = 0
        while True:
            try:
                self._send_queue.get_nowait()
            except queue.Empty:
                break
            dropped += 1
        if dropped:
            logger.warning("Discarded %d stale queued payload(s)", dropped)

    # -- commands --------------------------------------------------------

    def submit_command(self, command: Union[Command, str]) -> bool:
        """Queue a command for the send thread.

        Returns False, without queuing, while not connected. Acknowledged
        commands get their sequence number here so wire order matches it.
        """
        if not self.is_connected():
            shown = command.to_payload() if isinstance(command, Command) else command
            logger.error("Not connected, command not sent: %s", shown)
            self._bump("rejected_commands")
            return False

        with self._submit_lock:
            if isinstance(command, Command):
                if command.acknowledged:
                    command = command.with_sequence(self._sequence.next())
                payload = command.to_payload()
            else:
                payload = str(command)
            self._send_queue.put(payload)

        logger.info("Queuing command: %s", payload)
        return True

    def switch_mode(self, mode: int) -> bool:
        mode = commands.as_int("mode", mode)
        if mode < Mode.MANUAL or mode > Mode.FOLLOW:
            raise ValueError(f"mode must be between 0 and 3, {mode} is out of range")

        self._mode = Mode(mode)
        if self._mode is Mode.MANUAL:
            logger.info("Switching to mode 0 (MANUAL), clearing autonomous behavior")
            return self.submit_command(commands.joystick_clear())

        logger.info("Switching to mode %d (%s)", mode, self._mode.name)
        return self.submit_command(commands.switch_mode(mode))

    def request_line_sensor(self, sensor: int) -> bool:
        command = commands.infrared_status(sensor)
        if self.is_connected():
            # armed before sending so the reply cannot outrun it
            self._correlator.expect_line_reading(sensor)
        return self.submit_command(command)

    def request_ultrasonic(self, mode: int = 1) -> bool:
        return self.submit_command(commands.ultrasonic_status(mode))

    # -- duties ----------------------------------------------------------

    def _rx_loop(self, sock: socket.socket, cancel: threading.Event) -> None:
        while not cancel.is_set():
            try:
                chunk = sock.recv(RECV_CHUNK)
            except socket.timeout:
                continue
            except OSError as exc:
                if not cancel.is_set():
                    logger.error("Receive error: %s", exc)
                    self._handle_disconnection("receive error")
                return

            if not chunk:
                if not cancel.is_set():
                    for token in self._framer.flush():
                        self._dispatch_safely(token)
                    logger.error("Connection closed by remote host (0 bytes read)")
                    self._handle_disconnection("closed by remote host")
                return

            if HEARTBEAT_BYTES in chunk:
                logger.log(TRACE, "<- %r", chunk)
            else:
                logger.info("<- Received: %s", chunk.decode("latin-1"))

            tokens = self._framer.feed(chunk)
            with self._stats_lock:
                self._stats.rx_bytes += len(chunk)
                self._stats.malformed_spans = self._framer.malformed_spans
                self._stats.dropped_bytes = self._framer.dropped_bytes

            for token in tokens:
                self._dispatch_safely(token)

    def _dispatch_safely(self, token: Token) -> None:
        try:
            self._dispatch(token)
        except Exception:
            logger.exception("Failed to handle %r", token.raw)

    def _dispatch(self, token: Token) -> None:
        kind = token.kind

        if kind is TokenKind.HEARTBEAT:
            self._on_heartbeat()

        elif kind is TokenKind.ACK:
            self._bump("acks")
            logger.info("Acknowledgment: %s", token.raw)
            self.events.emit(MESSAGE_RECEIVED, token.raw)

        elif kind is TokenKind.SENSOR_VALUE:
            logger.debug(
                "Raw sensor response %s -> value=%d, pending line sensor=%s",
                token.raw,
                token.value,
                self._correlator.pending_line_sensor,
            )
            snapshot = self._correlator.apply_reading(token.value)
            self._bump("sensor_readings")
            self.events.emit(SENSOR_DATA_UPDATED, snapshot)

        elif kind is TokenKind.STRUCTURED:
            if _opcode(token.fields) in SENSOR_OPCODES:
                snapshot = self._correlator.apply_structured(token.fields)
                if snapshot is not None:
                    self._bump("sensor_readings")
                    self.events.emit(SENSOR_DATA_UPDATED, snapshot)
                return
            self._bump("structured_messages")
            logger.debug("Structured message: %s", token.raw)
            self.events.emit(MESSAGE_RECEIVED, token.raw)

        elif kind is TokenKind.ERROR_TEXT:
            self._bump("car_errors")
            logger.warning("Car error: %s", token.raw)
            self.events.emit(CAR_ERROR, token.text)

    def _on_heartbeat(self) -> None:
        now = self._clock()
        self._last_heartbeat = now
        self._bump("heartbeats")

        # the car drops the link unless every heartbeat period sees an echo
        last = self._last_echo
        if last is not None and now - last < self.timings.heartbeat_echo_min_interval_s:
            return
        self._last_echo = now
        self._send_queue.put(HEARTBEAT)
        self._bump("heartbeat_echoes")

    def _tx_loop(self, sock: socket.socket, cancel: threading.Event) -> None:
        while not cancel.is_set():
            try:
                payload = self._send_queue.get(timeout=self.timings.queue_poll_s)
            except queue.Empty:
                continue
            if cancel.is_set():
                return

            try:
                sock.sendall(payload.encode("utf-8"))
            except OSError as exc:
                self._bump("tx_errors")
                if not cancel.is_set():
                    logger.error("Send failed: %s", exc)
                    self._handle_disconnection("send failure")
                return

            self._bump("tx_ok")
            if payload == HEARTBEAT:
                logger.log(TRACE, "-> %s", payload)
            else:
                logger.info("-> Command sent: %s", payload)

    def _watchdog_loop(self, cancel: threading.Event) -> None:
        t = self.timings
        while not cancel.wait(t.heartbeat_check_interval_s):
            silence = self._clock() - self._last_heartbeat
            if silence > t.heartbeat_timeout_s:
                logger.warning("Heartbeat timeout - no heartbeat for %.1fs", silence)
                self._handle_disconnection("heartbeat timeout")
                return
            if silence > t.heartbeat_warn_s:
                logger.warning("Slow heartbeat - last received %.1fs ago", silence)

    def _mode_loop(self, cancel: threading.Event) -> None:
        t = self.timings
        if cancel.wait(t.mode_initial_delay_s):
            return

        maintenance = 0
        while not cancel.wait(t.mode_interval_s):
            mode = self._mode
            if mode is Mode.MANUAL:
                continue
            maintenance += 1
            # autonomous modes are not kept by the car and must be re-sent
            logger.info("Maintenance #%d: re-asserting mode %d (%s)", maintenance, mode, mode.name)
            self._send_queue.put(commands.switch_mode(mode).to_payload())

    # -- failure handling ------------------------------------------------

    def _handle_disconnection(self, reason: str) -> None:
        with self._state_lock:
            if self._state is not ConnectionState.CONNECTED:
                logger.debug("Already disconnected, ignoring %s", reason)
                return
            self._state = ConnectionState.DISCONNECTED
            sock, self._sock = self._sock, None
            cancel = self._cancel
            reconnect = (
                self.config.auto_reconnect and not self._closed.is_set() and not self._reconnecting
            )
            if reconnect:
                self._reconnecting = True

        cancel.set()
        _close_socket(sock)
        self._bump("disconnects")
        logger.warning("*** DISCONNECTED from car (%s) ***", reason)
        self.events.emit(CONNECTION_STATUS_CHANGED, False)

        if reconnect:
            self._reconnect_thread = threading.Thread(
                target=self._reconnect_loop, name="smartcar-reconnect", daemon=True
            )
            self._reconnect_thread.start()

    def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._closed.wait(self.timings.reconnect_delay_s):
            attempt += 1
            self._bump("reconnect_attempts")
            logger.info("Attempting to reconnect (attempt %d)...", attempt)
            if not self.connect():
                continue
            with self._state_lock:
                if self._state is ConnectionState.CONNECTED:
                    self._reconnecting = False
                    return

        with self._state_lock:
            self._reconnecting = False

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + amount)
