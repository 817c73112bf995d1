"""Session tracking for one gateway connection."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


class SessionState(enum.Enum):
    """Gateway session states; ``CLOSED`` is terminal."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    IDENTIFYING = "IDENTIFYING"
    RESUMING = "RESUMING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ShardInfo:
    shard_id: int
    shard_count: int

    def __post_init__(self) -> None:
        if self.shard_count < 1 or not 0 <= self.shard_id < self.shard_count:
            raise ValueError(f"Invalid shard {self.shard_id}/{self.shard_count}")

    def as_list(self) -> list[int]:
        return [self.shard_id, self.shard_count]


@dataclass
class SessionTracker:
    """In-memory session metadata."""

    state: SessionState = SessionState.IDLE
    session_id: Optional[str] = None
    sequence: Optional[int] = None
    resume_url: Optional[str] = None
    resumable: bool = True
    heartbeat_interval: Optional[float] = None
    last_heartbeat_sent: Optional[float] = None
    last_heartbeat_ack: Optional[float] = None
    last_transition_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def transition(self, next_state: SessionState) -> None:
        """Move the session into a new state, validating allowed transitions."""

        if not self._is_valid_transition(self.state, next_state):
            raise ValueError(f"Invalid transition {self.state.value} → {next_state.value}")
        self.state = next_state
        self.last_transition_at = datetime.now(tz=timezone.utc)

    @staticmethod
    def _is_valid_transition(current: SessionState, nxt: SessionState) -> bool:
        allowed = {
            SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED},
            SessionState.CONNECTING: {SessionState.IDENTIFYING, SessionState.RECONNECTING, SessionState.CLOSED},
            SessionState.IDENTIFYING: {SessionState.CONNECTED, SessionState.RECONNECTING, SessionState.CLOSED},
            SessionState.CONNECTED: {SessionState.RECONNECTING, SessionState.CLOSED},
            SessionState.RECONNECTING: {SessionState.RESUMING, SessionState.IDENTIFYING, SessionState.CLOSED},
            SessionState.RESUMING: {
                SessionState.CONNECTED,
                SessionState.IDENTIFYING,
                SessionState.RECONNECTING,
                SessionState.CLOSED,
            },
            SessionState.CLOSED: set(),
        }
        return nxt in allowed.get(current, set())

    def record_sequence(self, seq: Optional[int]) -> bool:
        """Advance the last-seen sequence; lower values never move it backwards."""

        if seq is None:
            return False
        if self.sequence is not None and seq < self.sequence:
            return False
        self.sequence = seq
        return True

    def can_resume(self) -> bool:
        return self.resumable and self.session_id is not None and self.sequence is not None

    def clear_session(self) -> None:
        self.session_id = None
        self.sequence = None
        self.resume_url = None

    @property
    def latency(self) -> Optional[float]:
        if self.last_heartbeat_sent is None or self.last_heartbeat_ack is None:
            return None
        if self.last_heartbeat_ack < self.last_heartbeat_sent:
            return None
        return self.last_heartbeat_ack - self.last_heartbeat_sent
