from __future__ import annotations

import argparse
import asyncio
import json
import logging
import threading
import time
from dataclasses import asdict, replace
from typing import Any, Dict, Optional, Set

import websockets

from .config import load_config
from .logging_config import configure_logging, resolve_log_level
from .wifi_link import commands
from .wifi_link.events import EVENT_NAMES
from .wifi_link.sensors import SensorSnapshot
from .wifi_link.transport import CarClient

logger = logging.getLogger(__name__)


def _int_arg(data: Dict[str, Any], name: str, default: Optional[int] = None) -> int:
    if name not in data:
        if default is not None:
            return default
        raise ValueError(f"'{name}' is required")
    value = data[name]
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"'{name}' must be an integer")
    return int(value)


class BridgeServer:
    """WebSocket front end for a CarClient.

    Peers send JSON requests such as ``{"op": "drive", "direction": 3,
    "speed": 100}`` and receive a JSON reply; client events are pushed to every
    connected peer as ``{"event": <name>, "data": ...}``.
    """

    def __init__(self, client: CarClient, host: str = "0.0.0.0", port: int = 8765) -> None:
        self._client = client
        self._host = host
        self._port = port

        self._ws_loop: Optional[asyncio.AbstractEventLoop] = None
        self._ws_thread: Optional[threading.Thread] = None
        self._ws_server = None
        self._ws_ready = threading.Event()
        self._peers: Set[Any] = set()
        self._unsubscribe = []

    def start(self) -> None:
        for name in EVENT_NAMES:
            self._unsubscribe.append(self._client.events.subscribe(name, self._make_forwarder(name)))
        self._ws_loop = asyncio.new_event_loop()
        self._ws_thread = threading.Thread(target=self._ws_thread_main, daemon=True, name="smartcar-ws")
        self._ws_thread.start()
        if not self._ws_ready.wait(timeout=5.0):
            logger.warning("WebSocket bridge did not start listening within 5s")

    @property
    def port(self) -> int:
        """Port the bridge is listening on, resolved once started with port 0."""
        if self._ws_server is not None:
            for sock in self._ws_server.sockets:
                return sock.getsockname()[1]
        return self._port

    def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

        if self._ws_loop is not None:
            if self._ws_server is not None:
                async def _close_ws():
                    self._ws_server.close()
                    await self._ws_server.wait_closed()

                fut = asyncio.run_coroutine_threadsafe(_close_ws(), self._ws_loop)
                try:
                    fut.result(timeout=1.0)
                except Exception as exc:
                    logger.warning("WebSocket server did not close cleanly: %s", exc)
            self._ws_loop.call_soon_threadsafe(self._ws_loop.stop)
        if self._ws_thread is not None:
            self._ws_thread.join(timeout=1.0)

    def _ws_thread_main(self) -> None:
        assert self._ws_loop is not None
        asyncio.set_event_loop(self._ws_loop)
        self._ws_loop.run_until_complete(self._ws_start())
        self._ws_loop.run_forever()

    async def _ws_start(self) -> None:
        self._ws_server = await websockets.serve(self._ws_handler, self._host, self._port)
        logger.info("WebSocket bridge listening on ws://%s:%d", self._host, self.port)
        self._ws_ready.set()

    async def _ws_handler(self, websocket) -> None:
        self._peers.add(websocket)
        try:
            await websocket.send(json.dumps({"ok": True, "message": "smartcar bridge ready"}, ensure_ascii=True))
            async for raw in websocket:
                # facade calls can block briefly (connect), keep them off the loop
                response = await asyncio.get_running_loop().run_in_executor(None, self.handle_raw, raw)
                await websocket.send(json.dumps(response, ensure_ascii=True))
        except websockets.ConnectionClosed:
            pass
        finally:
            self._peers.discard(websocket)

    def _make_forwarder(self, name: str):
        def forward(payload: Any) -> None:
            if isinstance(payload, SensorSnapshot):
                payload = payload.as_dict()
            message = json.dumps({"event": name, "data": payload, "timestamp": time.time()}, ensure_ascii=True)
            loop = self._ws_loop
            if loop is not None and loop.is_running():
                asyncio.run_coroutine_threadsafe(self._broadcast(message), loop)

        return forward

    async def _broadcast(self, message: str) -> None:
        for peer in list(self._peers):
            try:
                await peer.send(message)
            except websockets.ConnectionClosed:
                self._peers.discard(peer)

    def handle_raw(self, raw: str) -> Dict[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            return {"ok": False, "error": f"invalid_json: {exc}"}

        if not isinstance(data, dict):
            return {"ok": False, "error": "payload must be object"}
        return self.handle_request(data)

    def handle_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        client = self._client
        op = str(data.get("op", "")).strip().lower()

        try:
            if op == "status":
                return {"ok": True, "state": self.snapshot()}
            if op == "connect":
                return {"ok": client.connect(), "state": self.snapshot()}

            if op == "drive":
                direction = _int_arg(data, "direction")
                speed = _int_arg(data, "speed")
                if "duration_ms" in data:
                    command = commands.car_control_time(direction, speed, _int_arg(data, "duration_ms"))
                else:
                    command = commands.car_control(direction, speed)
                queued = client.submit_command(command)
            elif op == "stop":
                queued = client.submit_command(commands.car_stop())
            elif op == "camera":
                queued = client.submit_command(commands.camera_rotation(_int_arg(data, "direction")))
            elif op == "motor":
                queued = client.submit_command(
                    commands.motor_control(
                        _int_arg(data, "motor"), _int_arg(data, "speed"), _int_arg(data, "direction")
                    )
                )
            elif op == "speeds":
                queued = client.submit_command(
                    commands.motor_control_speed(_int_arg(data, "left"), _int_arg(data, "right"))
                )
            elif op == "servo":
                queued = client.submit_command(
                    commands.servo_control(_int_arg(data, "servo"), _int_arg(data, "angle"))
                )
            elif op == "mode":
                queued = client.switch_mode(_int_arg(data, "mode"))
            elif op == "ultrasonic":
                queued = client.request_ultrasonic(_int_arg(data, "mode", default=1))
            elif op == "line":
                queued = client.request_line_sensor(_int_arg(data, "sensor"))
            elif op == "joystick":
                queued = client.submit_command(commands.joystick_movement(_int_arg(data, "direction")))
            elif op == "left_ground":
                queued = client.submit_command(commands.left_ground())
            elif op == "programming_clear":
                queued = client.submit_command(commands.programming_clear())
            elif op == "raw":
                payload = data.get("payload")
                if not isinstance(payload, str) or not payload:
                    raise ValueError("'payload' must be a non-empty string")
                queued = client.submit_command(payload)
            else:
                raise ValueError(f"unknown op '{op}'")

            return {"ok": queued, "queued": queued, "state": self.snapshot()}

        except (TypeError, ValueError) as exc:
            return {"ok": False, "error": str(exc)}

    def snapshot(self) -> Dict[str, Any]:
        client = self._client
        return {
            "connection": client.connection_state.value,
            "connected": client.is_connected(),
            "mode": int(client.current_mode),
            "last_sequence": client.last_sequence,
            "sensors": client.current_sensor_snapshot().as_dict(),
            "stats": asdict(client.get_stats()),
        }


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="WebSocket bridge for the SmartCar command channel")
    parser.add_argument("--host", default=None, help="Car address (default: 192.168.4.1 or SMARTCAR_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Car command port (default: 100 or SMARTCAR_PORT)")
    parser.add_argument("--config", default=None, help="Optional application.json with a 'Robot' section")
    parser.add_argument("--ws-host", default="0.0.0.0", help="Bridge bind address (default: 0.0.0.0)")
    parser.add_argument("--ws-port", type=int, default=8765, help="Bridge port (default: 8765)")
    parser.add_argument("--log-level", default=None, help="TRACE, DEBUG, INFO, WARNING or ERROR")
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    configure_logging(resolve_log_level(args.log_level))

    config = load_config(args.config)
    if args.host:
        config = replace(config, host=args.host)
    if args.port:
        config = replace(config, port=args.port)

    client = CarClient(config)
    bridge = BridgeServer(client, host=args.ws_host, port=args.ws_port)
    bridge.start()
    if not client.connect():
        logger.warning("Initial connect to %s:%d failed; use op 'connect' to retry", config.host, config.port)

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        bridge.stop()
        client.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
