from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_HOST = "192.168.4.1"
DEFAULT_PORT = 100


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LinkTimings:
    """Intervals of the session duties, in seconds."""
    heartbeat_check_interval_s: float = 10.0
    heartbeat_warn_s: float = 10.0
    heartbeat_timeout_s: float = 30.0
    heartbeat_echo_min_interval_s: float = 0.5
    mode_initial_delay_s: float = 5.0
    mode_interval_s: float = 5.0
    reconnect_delay_s: float = 2.0
    queue_poll_s: float = 0.2
    join_timeout_s: float = 1.0


@dataclass(frozen=True)
class LinkConfig:
    """Connection settings for the car's command channel."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    connect_timeout_s: float = 10.0
    io_timeout_s: float = 15.0
    buffer_size: int = 8192
    auto_reconnect: bool = True
    timings: LinkTimings = field(default_factory=LinkTimings)

    @classmethod
    def from_env(cls, base: Optional["LinkConfig"] = None) -> "LinkConfig":
        base = base or cls()
        connect_ms = os.getenv("SMARTCAR_CONNECT_TIMEOUT_MS")
        return replace(
            base,
            host=os.getenv("SMARTCAR_HOST", base.host),
            port=int(os.getenv("SMARTCAR_PORT", str(base.port))),
            connect_timeout_s=int(connect_ms) / 1000.0 if connect_ms else base.connect_timeout_s,
            auto_reconnect=_env_bool("SMARTCAR_AUTO_RECONNECT", base.auto_reconnect),
        )

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "LinkConfig":
        """Read the ``Robot`` section of an application.json file.

        A missing or unreadable file falls back to defaults.
        """
        path = Path(path).expanduser()
        if not path.exists():
            logger.info("Configuration file not found: %s, using defaults", path)
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Error loading configuration %s: %s, using defaults", path, exc)
            return cls()

        robot = data.get("Robot") if isinstance(data, dict) else None
        if not isinstance(robot, dict):
            logger.warning("Configuration %s has no 'Robot' section, using defaults", path)
            return cls()

        config = cls(
            host=str(robot.get("IpAddress", DEFAULT_HOST)),
            port=int(robot.get("Port", DEFAULT_PORT)),
        )
        if "ConnectionTimeoutMs" in robot:
            config = replace(config, connect_timeout_s=int(robot["ConnectionTimeoutMs"]) / 1000.0)
        logger.info("Configuration loaded from %s", path)
        return config


def load_config(path: Optional[Union[str, Path]] = None) -> LinkConfig:
    base = LinkConfig.from_json_file(path) if path else LinkConfig()
    return LinkConfig.from_env(base)
