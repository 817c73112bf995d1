"""Scripted in-memory transport for offline runs and tests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from .base import BaseTransport, TransportClosed

LOGGER = logging.getLogger(__name__)


class DummyTransport(BaseTransport):
    """Transport fed from an in-memory inbox.

    Frames pushed with :meth:`feed` are returned by :meth:`receive` in order;
    :meth:`fail` makes the next receive raise ``TransportClosed``. Sent frames
    are recorded in ``sent``.
    """

    def __init__(self, settings=None, frames: Optional[Iterable[dict[str, Any]]] = None) -> None:
        self._settings = settings
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.url: Optional[str] = None
        self.connected = False
        self.close_code: Optional[int] = None
        for frame in frames or ():
            self.feed(frame)

    def feed(self, frame: dict[str, Any]) -> None:
        self._inbox.put_nowait(frame)

    def fail(self, code: Optional[int] = None, reason: str = "") -> None:
        self._inbox.put_nowait(TransportClosed(code, reason))

    async def connect(self, url: str) -> None:
        LOGGER.debug("Dummy transport connect(%s)", url)
        self.url = url
        self.connected = True

    async def send(self, message: dict[str, Any]) -> None:
        if not self.connected:
            raise TransportClosed(self.close_code, "not connected")
        LOGGER.debug("Dummy transport send(): %s", message)
        self.sent.append(message)

    async def receive(self) -> dict[str, Any]:
        item = await self._inbox.get()
        if isinstance(item, TransportClosed):
            self.connected = False
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        LOGGER.debug("Dummy transport close(%s)", code)
        self.connected = False
        self.close_code = code
