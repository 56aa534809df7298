from .config import LinkConfig, LinkTimings, load_config
from .wifi_link import CarClient, ConnectionState, Mode, SensorSnapshot

__all__ = [
    "CarClient",
    "ConnectionState",
    "LinkConfig",
    "LinkTimings",
    "Mode",
    "SensorSnapshot",
    "load_config",
]
