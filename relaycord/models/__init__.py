from .events import EventKey, EventType, GatewayEvent, event_key
from .gateway import (
    CloseCode,
    ConnectionProperties,
    GatewayBot,
    GatewayEnvelope,
    HelloPayload,
    IdentifyPayload,
    Opcode,
    ReadyPayload,
    ResumePayload,
    SessionStartLimit,
    build_frame,
)

__all__ = [
    "CloseCode",
    "ConnectionProperties",
    "EventKey",
    "EventType",
    "GatewayBot",
    "GatewayEnvelope",
    "GatewayEvent",
    "HelloPayload",
    "IdentifyPayload",
    "Opcode",
    "ReadyPayload",
    "ResumePayload",
    "SessionStartLimit",
    "build_frame",
    "event_key",
]
