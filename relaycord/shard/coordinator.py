"""Shard coordination: gateway discovery, identify pacing and shard lifecycle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

from relaycord.config import GatewaySettings
from relaycord.errors import GatewayError
from relaycord.http.api import RestApi
from relaycord.http.buckets import BucketRegistry
from relaycord.network.heartbeat import Clock
from relaycord.network.session import EventSink, GatewaySession
from relaycord.network.session_state import ShardInfo
from relaycord.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)


class RegistryIdentifyGate:
    """Paces identifies through ``identify:{shard_id % max_concurrency}`` buckets.

    Each bucket grants one identify per ``interval`` seconds and does not count
    against the REST global budget.
    """

    def __init__(self, registry: BucketRegistry, *, max_concurrency: int, interval: float) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._registry = registry
        self.max_concurrency = max_concurrency
        for slot in range(max_concurrency):
            registry.configure(self.key_for(slot), 1, interval)

    def key_for(self, shard_id: int) -> str:
        return f"identify:{shard_id % self.max_concurrency}"

    async def acquire(self, shard_id: int) -> None:
        key = self.key_for(shard_id)
        clock = self._registry.clock
        while True:
            admission = await self._registry.admit(key, include_global=False)
            if admission.granted:
                return
            LOGGER.debug("Shard %s waiting %.2fs for identify slot %s", shard_id, admission.wait_until - clock.now(), key)
            await clock.sleep_until(admission.wait_until)


@dataclass(frozen=True)
class GatewayPlan:
    url: str
    shard_count: int
    max_concurrency: int


@dataclass
class ShardCoordinator:
    """Owns one :class:`GatewaySession` per shard and fans their events into one sink."""

    settings: GatewaySettings
    registry: BucketRegistry
    transport_factory: Callable[[GatewaySettings], BaseTransport]
    event_sink: Optional[EventSink] = None
    api: Optional[RestApi] = None
    clock: Clock = field(default_factory=Clock)

    _sessions: Dict[int, GatewaySession] = field(default_factory=dict, init=False, repr=False)
    _gate: Optional[RegistryIdentifyGate] = field(default=None, init=False, repr=False)
    _supervisor: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    _fatal_error: Optional[GatewayError] = field(default=None, init=False, repr=False)
    _plan: Optional[GatewayPlan] = field(default=None, init=False, repr=False)

    @property
    def sessions(self) -> Dict[int, GatewaySession]:
        return dict(self._sessions)

    @property
    def plan(self) -> Optional[GatewayPlan]:
        return self._plan

    @property
    def fatal_error(self) -> Optional[GatewayError]:
        return self._fatal_error

    @property
    def latencies(self) -> Dict[int, Optional[float]]:
        return {shard_id: session.latency for shard_id, session in self._sessions.items()}

    async def resolve(self) -> GatewayPlan:
        """Work out gateway URL, shard count and identify concurrency.

        Settings win; ``GET /gateway/bot`` fills in whatever is left open
        (``shard_count: auto`` or no ``gateway_url``).
        """

        settings = self.settings
        url = str(settings.gateway_url) if settings.gateway_url else None
        shard_count = settings.shard_count
        max_concurrency = settings.identify_max_concurrency
        if url is None or shard_count == "auto":
            if self.api is None:
                raise GatewayError("Gateway discovery requires a REST API client")
            info = await self.api.get_gateway_bot()
            url = url or info.url
            if shard_count == "auto":
                shard_count = info.shards
            limit = info.session_start_limit
            if limit is not None:
                max_concurrency = limit.max_concurrency
                LOGGER.info(
                    "Gateway session starts remaining: %s/%s (reset in %.0fs)",
                    limit.remaining,
                    limit.total,
                    limit.reset_after / 1000.0,
                )
                if limit.remaining < len(self._shard_ids(int(shard_count))):
                    LOGGER.warning("Not enough session starts left for every shard")
        return GatewayPlan(url=url, shard_count=int(shard_count), max_concurrency=max(1, int(max_concurrency)))

    def _shard_ids(self, shard_count: int) -> list[int]:
        shard_ids: Iterable[int] = self.settings.shard_ids or range(shard_count)
        ids = sorted(set(shard_ids))
        invalid = [shard_id for shard_id in ids if shard_id >= shard_count]
        if invalid:
            raise ValueError(f"Shard ids {invalid} exceed shard count {shard_count}")
        return ids

    async def start(self) -> None:
        """Launch every shard and return once all of them are READY.

        If any shard fails fatally first, every shard is stopped and that
        error is raised.
        """

        if self._sessions:
            return
        plan = await self.resolve()
        self._plan = plan
        self._gate = RegistryIdentifyGate(
            self.registry,
            max_concurrency=plan.max_concurrency,
            interval=self.settings.identify_interval_seconds,
        )
        for shard_id in self._shard_ids(plan.shard_count):
            self._sessions[shard_id] = GatewaySession(
                settings=self.settings,
                shard=ShardInfo(shard_id, plan.shard_count),
                gateway_url=plan.url,
                transport_factory=self.transport_factory,
                event_sink=self.event_sink,
                identify_gate=self._gate,
                clock=self.clock,
            )
        LOGGER.info("Starting %s shard(s) of %s against %s", len(self._sessions), plan.shard_count, plan.url)
        for session in self._sessions.values():
            session.start()
        self._supervisor = asyncio.create_task(self._supervise(), name="shard-supervisor")

        try:
            await asyncio.gather(*(session.wait_ready() for session in self._sessions.values()))
        except GatewayError as exc:
            if self._fatal_error is None:
                self._fatal_error = next(
                    (session.fatal_error for session in self._sessions.values() if session.fatal_error), None
                )
            await self._stop_sessions()
            raise self._fatal_error or exc
        LOGGER.info("All %s shard(s) ready", len(self._sessions))

    async def stop(self) -> None:
        """Close every shard gracefully; re-raises the first close handshake failure."""

        errors = await self._stop_sessions()
        if self._supervisor is not None:
            await asyncio.wait({self._supervisor})
        if errors:
            raise errors[0]

    async def wait_closed(self) -> None:
        """Wait until every shard is closed; raises the fatal error that closed them, if any."""

        if self._supervisor is not None:
            await asyncio.wait({self._supervisor})
        else:
            await asyncio.gather(*(session.wait_closed() for session in self._sessions.values()))
        if self._fatal_error is not None:
            raise self._fatal_error

    async def _stop_sessions(self) -> list[BaseException]:
        results = await asyncio.gather(
            *(session.stop() for session in self._sessions.values()),
            return_exceptions=True,
        )
        errors = [result for result in results if isinstance(result, BaseException)]
        for error in errors:
            LOGGER.warning("Shard stop reported: %s", error)
        return errors

    async def _supervise(self) -> None:
        waiters = {
            asyncio.ensure_future(session.wait_closed()): session for session in self._sessions.values()
        }
        try:
            while waiters:
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                for fut in done:
                    session = waiters.pop(fut)
                    error = session.fatal_error
                    if error is None or self._fatal_error is not None:
                        continue
                    self._fatal_error = error
                    LOGGER.error("Shard %s failed fatally; stopping all shards: %s", session.shard_id, error)
                    await self._stop_sessions()
        finally:
            for fut in waiters:
                fut.cancel()
