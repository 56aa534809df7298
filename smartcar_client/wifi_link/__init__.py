from .commands import Command, SequenceCounter
from .events import EventHub
from .protocol import StreamFramer, Token, TokenKind
from .sensors import SensorCorrelator, SensorSnapshot
from .transport import CarClient, ConnectionState, LinkStats, Mode

__all__ = [
    "CarClient",
    "Command",
    "ConnectionState",
    "EventHub",
    "LinkStats",
    "Mode",
    "SensorCorrelator",
    "SensorSnapshot",
    "SequenceCounter",
    "StreamFramer",
    "Token",
    "TokenKind",
]
