"""Rate-limited REST request dispatcher.

Requests are queued per route key and drained by one worker task per key, so
requests against the same key reach the network in submission order while
distinct keys proceed independently. Every send is admitted by the shared
:class:`BucketRegistry`; 429 responses are the only failures retried here.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from relaycord.config import GatewaySettings
from relaycord.errors import ClientError, RateLimited, RequestCancelledError, ServerError, TransportError
from relaycord.http.buckets import GLOBAL_KEY, BucketRegistry
from relaycord.http.client import HTTPRequest, HTTPResponse
from relaycord.http.routes import Route

LOGGER = logging.getLogger(__name__)


class RequestSender(Protocol):
    async def send(self, request: HTTPRequest) -> HTTPResponse:
        ...

    async def close(self) -> None:
        ...


@dataclass
class PendingRequest:
    route_key: Optional[str]
    request: HTTPRequest
    future: asyncio.Future[HTTPResponse]
    priority: bool = False
    admitted: bool = False
    attempts: int = 0


@dataclass
class RequestDispatcher:
    """Serializes outbound requests through the bucket registry."""

    settings: GatewaySettings
    registry: BucketRegistry
    sender: RequestSender

    _queues: dict[str, asyncio.Queue[PendingRequest]] = field(default_factory=dict, init=False, repr=False)
    _workers: dict[str, asyncio.Task[None]] = field(default_factory=dict, init=False, repr=False)
    _busy: set[str] = field(default_factory=set, init=False, repr=False)
    _closing: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closing.is_set()

    def pending(self, route_key: str) -> int:
        queue = self._queues.get(route_key)
        return queue.qsize() if queue is not None else 0

    async def submit_route(
        self,
        route: Route,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> HTTPResponse:
        """Submit a :class:`Route` call."""

        return await self.submit(route.method, route.path, route.route_key, json, params=params, reason=reason)

    async def submit(
        self,
        method: str,
        path: str,
        route_key: Optional[str] = None,
        body: Any = None,
        *,
        params: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> HTTPResponse:
        """Queue a request and wait for its response.

        Suspends while the route or global bucket is exhausted. A ``None``
        route key is a global-scope request: it is checked against the global
        bucket only and takes priority over per-route requests for it.

        Raises
        ------
        ClientError
            The server answered with a 4xx other than 429.
        ServerError
            The server answered with a 5xx.
        RateLimited
            The request hit 429 more than ``max_ratelimit_retries`` times.
        TransportError
            No response was received.
        RequestCancelledError
            The dispatcher was closed before the request was admitted.
        """

        if self.closed:
            raise RequestCancelledError("Request dispatcher is closed")
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            route_key=route_key,
            request=HTTPRequest(method=method.upper(), path=path, json=body, params=params, reason=reason),
            future=loop.create_future(),
            priority=route_key is None,
        )
        self._get_queue(route_key or GLOBAL_KEY).put_nowait(pending)
        return await pending.future

    async def close(self) -> None:
        """Drop queued requests, let admitted ones finish, then close the sender."""

        if self.closed:
            return
        self._closing.set()
        dropped = 0
        for queue in self._queues.values():
            while not queue.empty():
                pending = queue.get_nowait()
                if self._cancel(pending):
                    dropped += 1
        if dropped:
            LOGGER.info("Dropped %s queued requests on shutdown", dropped)
        idle = [task for key, task in self._workers.items() if key not in self._busy]
        busy = [task for key, task in self._workers.items() if key in self._busy]
        for task in idle:
            task.cancel()
        await asyncio.gather(*idle, *busy, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        await self.sender.close()

    def _get_queue(self, key: str) -> asyncio.Queue[PendingRequest]:
        queue = self._queues.get(key)
        if queue is not None:
            return queue
        queue = asyncio.Queue()
        self._queues[key] = queue
        self._workers[key] = asyncio.create_task(self._worker(key, queue), name=f"http-route-{key}")
        return queue

    async def _worker(self, key: str, queue: asyncio.Queue[PendingRequest]) -> None:
        idle_seconds = self.settings.request_worker_idle_seconds
        while not self.closed:
            try:
                pending = await asyncio.wait_for(queue.get(), timeout=idle_seconds)
            except asyncio.TimeoutError:
                if queue.empty() and self._queues.get(key) is queue:
                    self._queues.pop(key, None)
                    self._workers.pop(key, None)
                    LOGGER.debug("Route worker %s idle; exiting", key)
                    return
                continue
            self._busy.add(key)
            try:
                await self._process(pending)
            except asyncio.CancelledError:
                self._cancel(pending)
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Route worker %s failed processing %s", key, pending.request.path)
                if not pending.future.done():
                    pending.future.set_exception(exc)
            finally:
                self._busy.discard(key)

    async def _process(self, pending: PendingRequest) -> None:
        registry = self.registry
        while True:
            if pending.future.done():
                return
            if pending.priority:
                with registry.priority_waiter():
                    admission = await registry.admit(None, priority=True)
            else:
                admission = await registry.admit(pending.route_key)
            if not admission.granted:
                delay = admission.wait_until - registry.clock.now()
                LOGGER.debug("Route %s throttled for %.3fs", pending.route_key or GLOBAL_KEY, delay)
                if pending.priority:
                    with registry.priority_waiter():
                        stopped = await self._sleep_or_close(delay)
                else:
                    stopped = await self._sleep_or_close(delay)
                if stopped:
                    self._cancel(pending)
                    return
                continue
            if pending.future.done():
                return

            pending.admitted = True
            try:
                response = await self.sender.send(pending.request)
            except TransportError as exc:
                LOGGER.warning("%s %s failed: %s", pending.request.method, pending.request.path, exc)
                if not pending.future.done():
                    pending.future.set_exception(exc)
                return
            hit = await registry.record(pending.route_key, response.status, response.headers, response.body)
            if hit is not None:
                pending.attempts += 1
                pending.admitted = False
                if pending.attempts > self.settings.max_ratelimit_retries:
                    if not pending.future.done():
                        pending.future.set_exception(RateLimited(hit.retry_after, is_global=hit.is_global))
                    return
                continue
            self._complete(pending, response)
            return

    @staticmethod
    def _complete(pending: PendingRequest, response: HTTPResponse) -> None:
        if pending.future.done():
            return
        if response.status >= 500:
            pending.future.set_exception(ServerError(response.status, response.body))
        elif response.status >= 400:
            pending.future.set_exception(ClientError(response.status, response.body, headers=response.headers))
        else:
            pending.future.set_result(response)

    @staticmethod
    def _cancel(pending: PendingRequest) -> bool:
        if pending.future.done() or pending.admitted:
            return False
        pending.future.set_exception(RequestCancelledError(f"{pending.request.method} {pending.request.path} cancelled"))
        return True

    async def _sleep_or_close(self, delay: float) -> bool:
        if self.closed:
            return True
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._closing.wait(), timeout=max(0.0, delay))
        return self.closed
