"""Connection wrapper that owns one gateway transport and its receive loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from relaycord.config import GatewaySettings
from relaycord.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)


class ExponentialBackoff:
    """Jittered exponential delay: ``min(max_delay, base * 2**(n-1)) * U(1-j, 1+j)``."""

    def __init__(self, base_delay: float, max_delay: float, jitter: float) -> None:
        self._base_delay = float(base_delay)
        self._max_delay = float(max_delay)
        self._jitter = float(jitter)
        self.attempts = 0

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> ExponentialBackoff:
        return cls(
            settings.reconnect_base_delay_seconds,
            settings.reconnect_max_delay_seconds,
            settings.reconnect_jitter,
        )

    def next_delay(self) -> float:
        self.attempts += 1
        delay = min(self._max_delay, self._base_delay * (2 ** (self.attempts - 1)))
        jitter_factor = random.uniform(1 - self._jitter, 1 + self._jitter)
        return max(0.0, delay * jitter_factor)

    def reset(self) -> None:
        self.attempts = 0


class Connection:
    """Opens a transport, pumps inbound frames to ``on_frame`` and reports loss to ``on_lost``.

    A connection is single-use: once closed or lost, the session creates a new one.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        transport_factory: Callable[[GatewaySettings], BaseTransport],
        *,
        on_frame: Callable[[dict[str, Any]], Awaitable[None]],
        on_lost: Callable[[Exception], Awaitable[None]],
        name: str = "gateway",
    ) -> None:
        self._settings = settings
        self._transport_factory = transport_factory
        self._transport: Optional[BaseTransport] = None
        self._on_frame = on_frame
        self._on_lost = on_lost
        self._name = name
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._closing = False

    @property
    def open(self) -> bool:
        return self._transport is not None and not self._closing

    async def connect(self, url: str) -> None:
        """Open the transport within the connect timeout and start receiving."""

        transport = self._transport_factory(self._settings)
        await asyncio.wait_for(transport.connect(url), timeout=self._settings.connect_timeout_seconds)
        self._transport = transport
        self._recv_task = asyncio.create_task(self._receive_loop(), name=f"{self._name}-recv")

    async def send(self, message: dict[str, Any]) -> None:
        if not self._transport or self._closing:
            raise ConnectionResetError("Gateway transport not available")
        await self._transport.send(message)

    async def close(self, code: int = 1000, reason: str = "", *, timeout: Optional[float] = None) -> None:
        """Stop receiving and close the transport; raises ``asyncio.TimeoutError`` past ``timeout``."""

        self._closing = True
        task = self._recv_task
        self._recv_task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        transport = self._transport
        self._transport = None
        if transport is None:
            return
        if timeout is None:
            await transport.close(code, reason)
        else:
            await asyncio.wait_for(transport.close(code, reason), timeout=timeout)

    async def _receive_loop(self) -> None:
        transport = self._transport
        if transport is None:
            return
        while not self._closing:
            try:
                raw = await transport.receive()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                if self._closing:
                    return
                LOGGER.debug("Receive loop for %s ended: %s", self._name, exc)
                self._closing = True
                await self._on_lost(exc)
                return
            await self._on_frame(raw)
