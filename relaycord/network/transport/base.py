"""Transport abstractions for the gateway connection."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class TransportClosed(RuntimeError):
    """Raised by ``receive``/``send`` once the peer has closed the channel."""

    def __init__(self, code: Optional[int] = None, reason: str = "") -> None:
        super().__init__(f"Transport closed (code={code}, reason={reason!r})")
        self.code = code
        self.reason = reason


class BaseTransport(ABC):
    """Abstract WebSocket-like duplex frame channel used by a gateway session."""

    @abstractmethod
    async def connect(self, url: str) -> None:
        ...

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def receive(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...
