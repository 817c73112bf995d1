"""High-level client wiring shards, events and the REST dispatcher together."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from relaycord.config import GatewaySettings, get_settings
from relaycord.events import ErrorHook, EventDispatcher, Handler
from relaycord.http.api import RestApi
from relaycord.http.buckets import BucketRegistry
from relaycord.http.client import HTTPResponse, HTTPTransport
from relaycord.http.dispatcher import RequestDispatcher, RequestSender
from relaycord.models.events import EventKey
from relaycord.network.heartbeat import Clock
from relaycord.network.transport.base import BaseTransport
from relaycord.network.transport.dummy import DummyTransport
from relaycord.network.transport.websocket import WebSocketTransport
from relaycord.shard.coordinator import ShardCoordinator

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[GatewaySettings], BaseTransport]


def default_transport_factory(settings: GatewaySettings) -> TransportFactory:
    if settings.transport == "dummy":
        return DummyTransport
    return WebSocketTransport


class Client:
    """Gateway client facade.

    Owns the single :class:`BucketRegistry` shared by REST requests and
    identify pacing, the :class:`ShardCoordinator` and the
    :class:`EventDispatcher` its shards feed.

    Example::

        client = Client()

        @client.on(EventType.MESSAGE_CREATE)
        async def on_message(event):
            ...

        await client.start()
        await client.wait_closed()
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        http_transport: Optional[RequestSender] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or Clock()
        self.registry = BucketRegistry(
            clock=self.clock,
            grace_seconds=self.settings.ratelimit_grace_seconds,
            global_limit=self.settings.global_rate_limit,
        )
        self.requests = RequestDispatcher(
            settings=self.settings,
            registry=self.registry,
            sender=http_transport or HTTPTransport(self.settings),
        )
        self.api = RestApi(self.requests)
        self.events = EventDispatcher(self.settings)
        self.shards = ShardCoordinator(
            settings=self.settings,
            registry=self.registry,
            transport_factory=transport_factory or default_transport_factory(self.settings),
            event_sink=self.events,
            api=self.api,
            clock=self.clock,
        )
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event_type: EventKey, handler: Optional[Handler] = None) -> Any:
        """Register an event handler; usable directly or as ``@client.on(event_type)``."""

        if handler is not None:
            return self.events.on(event_type, handler)

        def decorator(func: Handler) -> Handler:
            return self.events.on(event_type, func)

        return decorator

    def off(self, event_type: EventKey, handler: Handler) -> None:
        self.events.off(event_type, handler)

    def on_error(self, hook: ErrorHook) -> ErrorHook:
        """Register a hook for handler failures (usable as a decorator)."""

        self.events.add_error_hook(hook)
        return hook

    async def request(
        self,
        method: str,
        path: str,
        route_key: Optional[str] = None,
        body: Any = None,
        **kwargs: Any,
    ) -> HTTPResponse:
        """Submit a raw REST request through the rate limited dispatcher."""

        return await self.requests.submit(method, path, route_key, body, **kwargs)

    async def start(self) -> None:
        """Connect every configured shard; returns once all are READY.

        Does nothing when already started or once the client is closed.
        """

        if self._started or self._closed:
            return
        self._started = True
        try:
            await self.shards.start()
        except Exception:
            await self._shutdown()
            raise

    async def stop(self) -> None:
        """Close shards, drop queued requests and stop event delivery."""

        try:
            await self.shards.stop()
        finally:
            await self._shutdown()

    async def wait_closed(self) -> None:
        """Block until every shard closes; re-raises a fatal gateway error."""

        await self.shards.wait_closed()

    async def run(self) -> None:
        """Start and run until all shards close or the task is cancelled."""

        await self.start()
        try:
            await self.wait_closed()
        finally:
            await self.stop()

    async def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.events.close()
        await self.requests.close()
        LOGGER.info("Client closed")

    async def __aenter__(self) -> Client:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
