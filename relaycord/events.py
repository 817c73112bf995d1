"""Delivery of gateway events to caller-registered handlers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, DefaultDict, Dict, List, Tuple

from relaycord.config import GatewaySettings
from relaycord.models.events import EventKey, GatewayEvent, event_key

LOGGER = logging.getLogger(__name__)

Handler = Callable[[GatewayEvent], Awaitable[None]]
ErrorHook = Callable[[GatewayEvent, Handler, BaseException], Awaitable[None] | None]


@dataclass
class EventDispatcher:
    """Runs handlers per shard in arrival order.

    Each shard gets its own queue and worker task; handlers for one event run
    sequentially in registration order, so events from a shard are observed in
    the order the gateway delivered them. A failing handler never stops the
    worker: the failure goes to the error hooks (logged when there are none).
    """

    settings: GatewaySettings

    _handlers: DefaultDict[str, List[Handler]] = field(default_factory=lambda: defaultdict(list), init=False, repr=False)
    _error_hooks: List[ErrorHook] = field(default_factory=list, init=False, repr=False)
    _shard_queues: Dict[int, asyncio.Queue[GatewayEvent]] = field(default_factory=dict, init=False, repr=False)
    _shard_tasks: Dict[int, asyncio.Task[None]] = field(default_factory=dict, init=False, repr=False)
    _handler_failures: Dict[Tuple[str, Handler], int] = field(default_factory=dict, init=False, repr=False)
    _handler_backoff_until: Dict[Tuple[str, Handler], float] = field(default_factory=dict, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)
    _closing: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event_type: EventKey, handler: Handler) -> Handler:
        """Register ``handler`` for ``event_type``; handlers must be coroutine functions."""

        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Event handler {handler!r} must be a coroutine function")
        key = event_key(event_type)
        LOGGER.debug("Registering handler for %s: %s", key, handler)
        self._handlers[key].append(handler)
        return handler

    def off(self, event_type: EventKey, handler: Handler) -> None:
        handlers = self._handlers.get(event_key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event_type: EventKey) -> List[Handler]:
        return list(self._handlers.get(event_key(event_type), []))

    def add_error_hook(self, hook: ErrorHook) -> None:
        """Register a hook invoked with ``(event, handler, exc)`` when a handler fails."""

        self._error_hooks.append(hook)

    async def __call__(self, event: GatewayEvent) -> None:
        await self.dispatch(event)

    async def dispatch(self, event: GatewayEvent) -> None:
        """Queue ``event`` on its shard's worker. Dropped once closed.

        A full bounded queue follows ``dispatch_queue_overflow``; ``block`` waits
        for room only until the dispatcher closes.
        """

        if self._closed:
            LOGGER.debug("Dispatcher closed; dropping %s from shard %s", event.type, event.shard_id)
            return
        if not self._handlers.get(event.type):
            return
        queue = self._get_shard_queue(event.shard_id)
        if not queue.full():
            queue.put_nowait(event)
            return
        overflow = self.settings.dispatch_queue_overflow
        if overflow == "drop_new":
            LOGGER.warning("Event queue full for shard %s; dropping %s seq=%s", event.shard_id, event.type, event.sequence)
            return
        if overflow == "drop_oldest":
            try:
                dropped = queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            else:
                LOGGER.warning(
                    "Event queue full for shard %s; dropping oldest %s seq=%s",
                    event.shard_id,
                    dropped.type,
                    dropped.sequence,
                )
            queue.put_nowait(event)
            return
        put = asyncio.ensure_future(queue.put(event))
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({put, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closing.cancel()
            if not put.done():
                put.cancel()
                LOGGER.debug("Dispatcher closed; dropping blocked %s from shard %s", event.type, event.shard_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing.set()
        tasks = list(self._shard_tasks.values())
        self._shard_tasks.clear()
        self._shard_queues.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _get_shard_queue(self, shard_id: int) -> asyncio.Queue[GatewayEvent]:
        queue = self._shard_queues.get(shard_id)
        if queue is not None:
            return queue
        queue = asyncio.Queue(maxsize=self.settings.dispatch_queue_max)
        self._shard_queues[shard_id] = queue
        self._shard_tasks[shard_id] = asyncio.create_task(
            self._shard_loop(shard_id, queue),
            name=f"event-dispatch-shard-{shard_id}",
        )
        return queue

    async def _shard_loop(self, shard_id: int, queue: asyncio.Queue[GatewayEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._run_handlers(event)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                LOGGER.exception("Dispatch loop failed for shard %s", shard_id)

    async def _run_handlers(self, event: GatewayEvent) -> None:
        timeout = float(self.settings.dispatch_timeout_seconds or 0)
        now = asyncio.get_running_loop().time()
        for handler in list(self._handlers.get(event.type, [])):
            key = (event.type, handler)
            backoff_until = self._handler_backoff_until.get(key)
            if backoff_until and backoff_until > now:
                LOGGER.warning(
                    "Handler in cooldown for %s (%.0fms remaining)",
                    event.type,
                    (backoff_until - now) * 1000,
                )
                continue
            try:
                if timeout > 0:
                    await asyncio.wait_for(handler(event), timeout=timeout)
                else:
                    await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                await self._record_handler_failure(event, handler, exc)
            else:
                self._handler_failures.pop(key, None)
                self._handler_backoff_until.pop(key, None)

    async def _record_handler_failure(self, event: GatewayEvent, handler: Handler, exc: BaseException) -> None:
        key = (event.type, handler)
        count = self._handler_failures.get(key, 0) + 1
        self._handler_failures[key] = count
        limit = int(self.settings.dispatch_max_failures or 0)
        cooldown = float(self.settings.dispatch_failure_cooldown_seconds or 0)
        if limit > 0 and count >= limit and cooldown > 0:
            self._handler_backoff_until[key] = asyncio.get_running_loop().time() + cooldown
            LOGGER.warning("Handler cooldown for %s (%.2fs) after %s failures", event.type, cooldown, count)
        await self._report(event, handler, exc)

    async def _report(self, event: GatewayEvent, handler: Handler, exc: BaseException) -> None:
        if not self._error_hooks:
            if isinstance(exc, asyncio.TimeoutError):
                LOGGER.warning("Handler timed out for %s on shard %s", event.type, event.shard_id)
            else:
                LOGGER.error(
                    "Handler error for %s on shard %s",
                    event.type,
                    event.shard_id,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
            return
        for hook in list(self._error_hooks):
            try:
                result = hook(event, handler, exc)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                LOGGER.exception("Error hook failed: %s", hook)
