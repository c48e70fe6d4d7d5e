"""Client-side bridge between a chat bot and external audio nodes."""

from .config import Config, NodeOptions, node_options_from_env
from .errors import ConnectionFailure, LinkError, ParseError, SerializeError
from .metrics import NodeMetrics
from .node import NodeConnection, NodeState
from .player import PlayerSession
from .router import (
    JoinRequest,
    LeaveRequest,
    Router,
    ShardTransport,
    VoiceServerUpdate,
)
from .signals import Signal

__version__ = "0.1.0"

__all__ = [
    "Config",
    "NodeOptions",
    "node_options_from_env",
    "ConnectionFailure",
    "LinkError",
    "ParseError",
    "SerializeError",
    "NodeMetrics",
    "NodeConnection",
    "NodeState",
    "PlayerSession",
    "JoinRequest",
    "LeaveRequest",
    "Router",
    "ShardTransport",
    "VoiceServerUpdate",
    "Signal",
]
