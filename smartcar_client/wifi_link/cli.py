from __future__ import annotations

import argparse
import json
import logging
import threading
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import load_config
from ..logging_config import configure_logging, resolve_log_level
from . import commands
from .sensors import SensorSnapshot
from .transport import CarClient


HELP_TEXT = """Commands:
  help
  status
  connect
  drive <direction 1..4> <speed 0..255> [duration_ms]
  stop
  cam <direction 1..5>
  motor <motor 0..2> <speed 0..255> <direction 1|2>
  speeds <left 0..255> <right 0..255>
  servo <servo 1|2> <angle 0..180>
  mode <0..3>
  ultra [1|2]
  line <sensor 0..2>
  joy <direction 0..9>
  ground
  pclear
  raw <payload>
  watch on|off
  log on|off
  quit
"""


class SessionLogger:
    def __init__(self, path: Optional[str]) -> None:
        self._path = Path(path).expanduser() if path else None
        self._file = None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")

    def write(self, event: str, command: str, sensors: Optional[dict], extra: Optional[dict] = None) -> None:
        if self._file is None:
            return
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "command": command,
            "sensors": sensors,
            "extra": extra or {},
        }
        self._file.write(json.dumps(payload, ensure_ascii=True) + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def _parse_on_off(raw: str) -> bool:
    if raw == "on":
        return True
    if raw == "off":
        return False
    raise ValueError("expected 'on' or 'off'")


def _format_sensors(snapshot: SensorSnapshot) -> str:
    distance = f"{snapshot.ultrasonic_distance} cm" if snapshot.ultrasonic_fresh() else "N/A"
    if snapshot.line_fresh():
        line = "".join(
            "X" if hit else "."
            for hit in (
                snapshot.left_line_detected,
                snapshot.middle_line_detected,
                snapshot.right_line_detected,
            )
        )
    else:
        line = "N/A"
    return f"sensors: ultrasonic={distance} line[L M R]={line}"


def _watch_loop(client: CarClient, stop_event: threading.Event, enabled_ref: dict, period_s: float) -> None:
    while not stop_event.is_set():
        if enabled_ref.get("watch", False):
            print(_format_sensors(client.current_sensor_snapshot()))
        stop_event.wait(period_s)


def _expect_args(parts: list, low: int, high: int, usage: str) -> None:
    if not (low <= len(parts) - 1 <= high):
        raise ValueError(f"usage: {usage}")


def execute(client: CarClient, raw: str) -> Optional[str]:
    """Run one console line against the client; returns text to print."""
    parts = raw.split()
    cmd = parts[0].lower()

    if cmd == "help":
        return HELP_TEXT.rstrip("\n")

    if cmd == "status":
        stats = client.get_stats()
        return "\n".join(
            [
                f"state: {client.connection_state.value} mode={client.current_mode.name} "
                f"last_seq={client.last_sequence} heartbeat_age={client.seconds_since_heartbeat():.1f}s",
                _format_sensors(client.current_sensor_snapshot()),
                "stats: "
                f"tx_ok={stats.tx_ok} tx_err={stats.tx_errors} rx_bytes={stats.rx_bytes} "
                f"hb={stats.heartbeats} echo={stats.heartbeat_echoes} acks={stats.acks} "
                f"malformed={stats.malformed_spans} rejected={stats.rejected_commands} "
                f"disconnects={stats.disconnects}",
            ]
        )

    if cmd == "connect":
        return "connected" if client.connect() else "connect failed"

    if cmd == "drive":
        _expect_args(parts, 2, 3, "drive <direction> <speed> [duration_ms]")
        direction, speed = int(parts[1]), int(parts[2])
        if len(parts) == 4:
            command = commands.car_control_time(direction, speed, int(parts[3]))
        else:
            command = commands.car_control(direction, speed)
        return _sent(client.submit_command(command))

    if cmd == "stop":
        return _sent(client.submit_command(commands.car_stop()))

    if cmd == "cam":
        _expect_args(parts, 1, 1, "cam <direction>")
        return _sent(client.submit_command(commands.camera_rotation(int(parts[1]))))

    if cmd == "motor":
        _expect_args(parts, 3, 3, "motor <motor> <speed> <direction>")
        command = commands.motor_control(int(parts[1]), int(parts[2]), int(parts[3]))
        return _sent(client.submit_command(command))

    if cmd == "speeds":
        _expect_args(parts, 2, 2, "speeds <left> <right>")
        return _sent(client.submit_command(commands.motor_control_speed(int(parts[1]), int(parts[2]))))

    if cmd == "servo":
        _expect_args(parts, 2, 2, "servo <servo> <angle>")
        return _sent(client.submit_command(commands.servo_control(int(parts[1]), int(parts[2]))))

    if cmd == "mode":
        _expect_args(parts, 1, 1, "mode <0..3>")
        return _sent(client.switch_mode(int(parts[1])))

    if cmd == "ultra":
        _expect_args(parts, 0, 1, "ultra [1|2]")
        return _sent(client.request_ultrasonic(int(parts[1]) if len(parts) == 2 else 1))

    if cmd == "line":
        _expect_args(parts, 1, 1, "line <sensor>")
        return _sent(client.request_line_sensor(int(parts[1])))

    if cmd == "joy":
        _expect_args(parts, 1, 1, "joy <direction 0..9>")
        return _sent(client.submit_command(commands.joystick_movement(int(parts[1]))))

    if cmd == "ground":
        return _sent(client.submit_command(commands.left_ground()))

    if cmd == "pclear":
        return _sent(client.submit_command(commands.programming_clear()))

    if cmd == "raw":
        payload = raw.strip()[len(parts[0]):].strip()
        if not payload:
            raise ValueError("usage: raw <payload>")
        return _sent(client.submit_command(payload))

    return "unknown command. try: help"


def _sent(ok: bool) -> str:
    return "queued" if ok else "not sent (disconnected)"


def run_cli(args: argparse.Namespace) -> int:
    configure_logging(resolve_log_level(args.log_level), use_color=not args.no_color)

    config = load_config(args.config)
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.connect_timeout is not None:
        overrides["connect_timeout_s"] = args.connect_timeout
    if args.no_reconnect:
        overrides["auto_reconnect"] = False
    config = replace(config, **overrides)

    client = CarClient(config)
    logger = SessionLogger(args.log_file)
    link_logger = logging.getLogger(__package__)

    watch_state = {"watch": False}
    watch_stop = threading.Event()
    watch_thread = threading.Thread(
        target=_watch_loop,
        args=(client, watch_stop, watch_state, 1.0 / max(0.1, float(args.sensor_print_hz))),
        daemon=True,
        name="smartcar-watch",
    )

    try:
        if not client.connect():
            print(f"could not connect to {config.host}:{config.port}; use 'connect' to retry")
        watch_thread.start()
        print("SmartCar console ready. Type 'help' for commands.")

        while True:
            try:
                raw = input("car> ").strip()
            except EOFError:
                raw = "quit"

            if not raw:
                continue

            parts = raw.split()
            cmd = parts[0].lower()

            try:
                if cmd == "quit":
                    print("exiting...")
                    logger.write(event="command", command=raw, sensors=client.current_sensor_snapshot().as_dict())
                    break

                if cmd == "watch":
                    _expect_args(parts, 1, 1, "watch on|off")
                    watch_state["watch"] = _parse_on_off(parts[1].lower())
                    print(f"watch={'on' if watch_state['watch'] else 'off'}")
                elif cmd == "log":
                    _expect_args(parts, 1, 1, "log on|off")
                    enabled = _parse_on_off(parts[1].lower())
                    link_logger.setLevel(logging.DEBUG if enabled else logging.NOTSET)
                    print(f"log={'on' if enabled else 'off'}")
                else:
                    output = execute(client, raw)
                    if output:
                        print(output)

                logger.write(
                    event="command",
                    command=raw,
                    sensors=client.current_sensor_snapshot().as_dict(),
                    extra={"stats": asdict(client.get_stats()), "connected": client.is_connected()},
                )

            except ValueError as exc:
                print(f"error: {exc}")

    except KeyboardInterrupt:
        print("\ninterrupted by user")

    finally:
        watch_stop.set()
        if watch_thread.is_alive():
            watch_thread.join(timeout=1.0)
        client.dispose()
        logger.close()

    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SmartCar WiFi command console")
    parser.add_argument("--host", default=None, help="Car address (default: 192.168.4.1 or SMARTCAR_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Car command port (default: 100 or SMARTCAR_PORT)")
    parser.add_argument("--config", default=None, help="Optional application.json with a 'Robot' section")
    parser.add_argument("--connect-timeout", type=float, default=None, help="Connect timeout in seconds (default: 10)")
    parser.add_argument("--no-reconnect", action="store_true", help="Do not reconnect after the link drops")
    parser.add_argument(
        "--sensor-print-hz",
        type=float,
        default=1.0,
        help="Sensor print rate when watch=on (default: 1)",
    )
    parser.add_argument("--log-level", default=None, help="TRACE, DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--no-color", action="store_true", help="Disable colored log output")
    parser.add_argument("--log-file", default=None, help="Optional JSONL session log path")
    return parser
