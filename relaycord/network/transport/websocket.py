"""WebSocket transport implementation."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed

from relaycord.config import GatewaySettings
from relaycord.network.transport.base import BaseTransport, TransportClosed

LOGGER = logging.getLogger(__name__)

MAX_FRAME_BYTES = 16 * 1024 * 1024


class WebSocketTransport(BaseTransport):
    """JSON-over-WebSocket gateway transport."""

    def __init__(self, settings: GatewaySettings) -> None:
        self._settings = settings
        self._ws: Optional[ClientConnection] = None

    async def connect(self, url: str) -> None:
        LOGGER.info("Connecting to gateway WebSocket at %s", url)
        self._ws = await ws_connect(
            url,
            max_size=MAX_FRAME_BYTES,
            open_timeout=self._settings.connect_timeout_seconds,
            close_timeout=self._settings.close_timeout_seconds,
            # gateway heartbeats are driven by the session, not websocket pings
            ping_interval=None,
        )

    async def send(self, message: dict[str, Any]) -> None:
        if not self._ws:
            raise RuntimeError("WebSocket transport not connected")
        payload = json.dumps(message)
        LOGGER.debug("WebSocket send: op=%s", message.get("op"))
        try:
            await self._ws.send(payload)
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc

    async def receive(self) -> dict[str, Any]:
        if not self._ws:
            raise RuntimeError("WebSocket transport not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as exc:
            raise self._closed_error(exc) from exc
        LOGGER.debug("WebSocket receive: %s", raw[:200])
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._ws:
            LOGGER.info("Closing WebSocket transport (code=%s)", code)
            ws = self._ws
            self._ws = None
            await ws.close(code=code, reason=reason)

    @staticmethod
    def _closed_error(exc: ConnectionClosed) -> TransportClosed:
        if exc.rcvd is not None:
            return TransportClosed(exc.rcvd.code, exc.rcvd.reason)
        return TransportClosed(None, str(exc))
