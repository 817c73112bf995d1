"""Gateway frame models: the envelope the session inspects and the frames it sends."""

from __future__ import annotations

import enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Opcode(enum.IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    PRESENCE_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


class CloseCode(enum.IntEnum):
    """Gateway close codes with a defined reconnect policy."""

    UNKNOWN_ERROR = 4000
    UNKNOWN_OPCODE = 4001
    DECODE_ERROR = 4002
    NOT_AUTHENTICATED = 4003
    AUTHENTICATION_FAILED = 4004
    ALREADY_AUTHENTICATED = 4005
    INVALID_SEQ = 4007
    RATE_LIMITED = 4008
    SESSION_TIMED_OUT = 4009
    INVALID_SHARD = 4010
    SHARDING_REQUIRED = 4011
    INVALID_API_VERSION = 4012
    INVALID_INTENTS = 4013
    DISALLOWED_INTENTS = 4014


FATAL_CLOSE_CODES = frozenset(
    {
        CloseCode.AUTHENTICATION_FAILED,
        CloseCode.INVALID_SHARD,
        CloseCode.SHARDING_REQUIRED,
        CloseCode.INVALID_API_VERSION,
        CloseCode.INVALID_INTENTS,
        CloseCode.DISALLOWED_INTENTS,
    }
)

# Closes after which the server has discarded the session.
NON_RESUMABLE_CLOSE_CODES = frozenset({1000, 1001, CloseCode.INVALID_SEQ, CloseCode.SESSION_TIMED_OUT})


class GatewayEnvelope(BaseModel):
    """Decoded inbound frame ``{op, s, t, d}``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    op: int
    sequence: Optional[int] = Field(default=None, alias="s")
    event_type: Optional[str] = Field(default=None, alias="t")
    payload: Any = Field(default=None, alias="d")

    @property
    def opcode(self) -> Optional[Opcode]:
        try:
            return Opcode(self.op)
        except ValueError:
            return None


class HelloPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    heartbeat_interval: int


class ReadyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str
    resume_gateway_url: Optional[str] = None
    shard: Optional[List[int]] = None


class ConnectionProperties(BaseModel):
    os: str
    browser: str
    device: str


class IdentifyPayload(BaseModel):
    token: str
    intents: int
    shard: List[int]
    properties: ConnectionProperties
    large_threshold: int = 50
    presence: Optional[Dict[str, Any]] = None


class ResumePayload(BaseModel):
    token: str
    session_id: str
    seq: int


class SessionStartLimit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total: int
    remaining: int
    reset_after: int
    max_concurrency: int = 1


class GatewayBot(BaseModel):
    """Response of ``GET /gateway/bot``."""

    model_config = ConfigDict(extra="ignore")

    url: str
    shards: int = 1
    session_start_limit: Optional[SessionStartLimit] = None


def build_frame(op: Opcode, payload: Any) -> dict[str, Any]:
    """Serialize an outbound frame ``{op, d}``."""

    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", exclude_none=True)
    return {"op": int(op), "d": payload}
