"""Gateway network stack (transport/connection/session)."""

from relaycord.network.connection import Connection, ExponentialBackoff
from relaycord.network.heartbeat import Clock, HeartbeatTimer
from relaycord.network.session import Disconnect, DisconnectReason, GatewaySession
from relaycord.network.session_state import SessionState, SessionTracker, ShardInfo
from relaycord.network.transport.base import BaseTransport, TransportClosed
from relaycord.network.transport.dummy import DummyTransport
from relaycord.network.transport.websocket import WebSocketTransport

__all__ = [
    "BaseTransport",
    "Clock",
    "Connection",
    "Disconnect",
    "DisconnectReason",
    "DummyTransport",
    "ExponentialBackoff",
    "GatewaySession",
    "HeartbeatTimer",
    "SessionState",
    "SessionTracker",
    "ShardInfo",
    "TransportClosed",
    "WebSocketTransport",
]
