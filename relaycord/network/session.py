"""Gateway session state machine.

One :class:`GatewaySession` drives a single shard's connection:

- Transport lifecycle (via :class:`Connection`)
- HELLO / IDENTIFY / RESUME handshakes and the heartbeat loop
- Zombie detection, reconnect backoff and close-code policy
- Sequence tracking and forwarding of dispatch events

Inbound frames, transport loss, heartbeat misses and shutdown requests all
arrive on one inbox queue and are consumed by the session task in order.
Reconnects are explicit transitions driven by :class:`Disconnect` values.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import platform
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Union
from urllib.parse import urlencode, urlsplit

from pydantic import ValidationError

from relaycord.config import GatewaySettings
from relaycord.errors import AuthenticationError, GatewayConnectionError, GatewayError
from relaycord.models.events import EventType, GatewayEvent
from relaycord.models.gateway import (
    FATAL_CLOSE_CODES,
    NON_RESUMABLE_CLOSE_CODES,
    CloseCode,
    ConnectionProperties,
    GatewayEnvelope,
    HelloPayload,
    IdentifyPayload,
    Opcode,
    ReadyPayload,
    ResumePayload,
    build_frame,
)
from relaycord.network.connection import Connection, ExponentialBackoff
from relaycord.network.heartbeat import Clock, HeartbeatTimer
from relaycord.network.session_state import SessionState, SessionTracker, ShardInfo
from relaycord.network.transport.base import BaseTransport, TransportClosed

LOGGER = logging.getLogger(__name__)

# Close code used when dropping a connection we intend to resume; 1000/1001 invalidate the session.
RESUMABLE_CLOSE_CODE = 4000

EventSink = Callable[[GatewayEvent], Awaitable[None]]


class IdentifyGate(Protocol):
    async def acquire(self, shard_id: int) -> None:
        ...


class DisconnectReason(enum.Enum):
    TRANSPORT_CLOSED = "transport_closed"
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    ZOMBIE = "zombie"
    RECONNECT_REQUESTED = "reconnect_requested"
    INVALID_SESSION = "invalid_session"
    FATAL_CLOSE = "fatal_close"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class Disconnect:
    """Why a connection ended and whether the session survives it."""

    reason: DisconnectReason
    resumable: bool = True
    close_code: Optional[int] = None
    detail: str = ""

    @property
    def fatal(self) -> bool:
        return self.reason is DisconnectReason.FATAL_CLOSE

    @classmethod
    def from_exception(cls, exc: BaseException) -> Disconnect:
        if isinstance(exc, TransportClosed):
            code = exc.code
            if code is not None and code in FATAL_CLOSE_CODES:
                return cls(DisconnectReason.FATAL_CLOSE, resumable=False, close_code=code, detail=exc.reason)
            resumable = code not in NON_RESUMABLE_CLOSE_CODES
            return cls(DisconnectReason.TRANSPORT_CLOSED, resumable=resumable, close_code=code, detail=exc.reason)
        if isinstance(exc, asyncio.TimeoutError):
            return cls(DisconnectReason.TIMEOUT, detail="transport timed out")
        return cls(DisconnectReason.TRANSPORT_ERROR, detail=str(exc))


InboxItem = Union[GatewayEnvelope, Disconnect]


def with_gateway_query(url: str, version: int) -> str:
    """Append ``v``/``encoding`` query parameters unless the URL already has a query."""

    if urlsplit(url).query:
        return url
    return f"{url.rstrip('/')}/?{urlencode({'v': version, 'encoding': 'json'})}"


@dataclass
class GatewaySession:
    """One shard's gateway connection and its protocol state."""

    settings: GatewaySettings
    shard: ShardInfo
    gateway_url: str
    transport_factory: Callable[[GatewaySettings], BaseTransport]
    event_sink: Optional[EventSink] = None
    identify_gate: Optional[IdentifyGate] = None
    clock: Clock = field(default_factory=Clock)
    tracker: SessionTracker = field(default_factory=SessionTracker)

    _conn: Optional[Connection] = field(default=None, init=False, repr=False)
    _heartbeat: Optional[HeartbeatTimer] = field(default=None, init=False, repr=False)
    _inbox: asyncio.Queue[tuple[Optional[int], InboxItem]] = field(
        default_factory=asyncio.Queue, init=False, repr=False
    )
    _generation: int = field(default=0, init=False, repr=False)
    _task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)
    _backoff: ExponentialBackoff = field(init=False, repr=False)
    _stop_requested: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _ready: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _closed: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _handshake_deadline: Optional[float] = field(default=None, init=False, repr=False)
    _awaiting_ack: bool = field(default=False, init=False, repr=False)
    _missed_acks: int = field(default=0, init=False, repr=False)
    _fatal_error: Optional[GatewayError] = field(default=None, init=False, repr=False)
    _close_error: Optional[GatewayError] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._backoff = ExponentialBackoff.from_settings(self.settings)

    # ------------------------------------------------------------------ public

    @property
    def state(self) -> SessionState:
        return self.tracker.state

    @property
    def shard_id(self) -> int:
        return self.shard.shard_id

    @property
    def fatal_error(self) -> Optional[GatewayError]:
        return self._fatal_error

    @property
    def latency(self) -> Optional[float]:
        return self.tracker.latency

    def start(self) -> None:
        """Launch the session task. Idempotent; a closed session cannot be restarted."""

        if self._task is not None or self.state is SessionState.CLOSED:
            return
        self._task = asyncio.create_task(self._run(), name=f"gateway-shard-{self.shard_id}")

    async def stop(self) -> None:
        """Request a graceful close and wait until the session reaches CLOSED."""

        if self._task is None:
            if self.state is not SessionState.CLOSED:
                self.tracker.transition(SessionState.CLOSED)
                self._closed.set()
            return
        if not self._stop_requested.is_set():
            self._stop_requested.set()
            self._inbox.put_nowait((None, Disconnect(DisconnectReason.SHUTDOWN, resumable=False)))
        await self.wait_closed()
        if self._close_error is not None:
            raise self._close_error

    async def wait_ready(self) -> None:
        """Wait for READY/RESUMED; raises the fatal error if the session closes first."""

        if self._ready.is_set():
            return
        ready = asyncio.ensure_future(self._ready.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({ready, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()
            closed.cancel()
        if self._ready.is_set():
            return
        if self._fatal_error is not None:
            raise self._fatal_error
        raise GatewayError(f"Shard {self.shard_id} closed before becoming ready")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # ------------------------------------------------------------------ state machine

    async def _run(self) -> None:
        try:
            self._transition(SessionState.CONNECTING)
            outcome = await self._open(with_gateway_query(self.gateway_url, self.settings.api_version))
            while True:
                if outcome is None:
                    outcome = await self._handshake_and_pump()
                if outcome.reason is DisconnectReason.SHUTDOWN or self._stop_requested.is_set():
                    await self._close_gracefully()
                    return
                if outcome.fatal:
                    await self._fail(self._fatal_from(outcome))
                    return
                outcome = await self._reconnect(outcome)
        except asyncio.CancelledError:
            await self._teardown(code=1000)
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Shard %s session crashed", self.shard_id)
            await self._fail(GatewayError(f"Shard {self.shard_id} session crashed: {exc}"))
        finally:
            if self.state is not SessionState.CLOSED:
                self.tracker.transition(SessionState.CLOSED)
            self._closed.set()
            LOGGER.info("Shard %s closed", self.shard_id)

    async def _reconnect(self, outcome: Disconnect) -> Optional[Disconnect]:
        """Tear down, back off and reopen; returns ``None`` once HELLO arrives on the new connection."""

        if self.state is not SessionState.RECONNECTING:
            self._transition(SessionState.RECONNECTING)
        LOGGER.warning(
            "Shard %s disconnected (%s code=%s resumable=%s); reconnecting",
            self.shard_id,
            outcome.reason.value,
            outcome.close_code,
            outcome.resumable,
        )
        self.tracker.resumable = outcome.resumable
        if not outcome.resumable:
            self.tracker.clear_session()
        await self._teardown(code=RESUMABLE_CLOSE_CODE if outcome.resumable else 1000)

        limit = self.settings.reconnect_max_attempts
        if limit and self._backoff.attempts >= limit:
            return Disconnect(
                DisconnectReason.FATAL_CLOSE,
                resumable=False,
                close_code=outcome.close_code,
                detail=f"gave up after {self._backoff.attempts} reconnect attempts",
            )
        delay = self._backoff.next_delay()
        LOGGER.info("Shard %s reconnect attempt %s in %.2fs", self.shard_id, self._backoff.attempts, delay)
        if await self._sleep_or_stop(delay):
            return Disconnect(DisconnectReason.SHUTDOWN, resumable=False)

        url = self.tracker.resume_url if self.tracker.can_resume() and self.tracker.resume_url else self.gateway_url
        return await self._open(with_gateway_query(url, self.settings.api_version))

    async def _open(self, url: str) -> Optional[Disconnect]:
        """Open a new connection and wait for HELLO; starts the heartbeat on success."""

        self._generation += 1
        generation = self._generation
        self._awaiting_ack = False
        self._missed_acks = 0

        async def _on_frame(raw: dict[str, Any]) -> None:
            envelope = self._decode(raw)
            if envelope is not None:
                await self._inbox.put((generation, envelope))

        async def _on_lost(exc: Exception) -> None:
            await self._inbox.put((generation, Disconnect.from_exception(exc)))

        self._conn = Connection(
            self.settings,
            self.transport_factory,
            on_frame=_on_frame,
            on_lost=_on_lost,
            name=f"gateway-shard-{self.shard_id}",
        )
        try:
            await self._conn.connect(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Shard %s failed to open gateway connection: %s", self.shard_id, exc)
            return Disconnect.from_exception(exc)

        deadline = self.clock.now() + self.settings.hello_timeout_seconds
        while True:
            item = await self._next_item(deadline)
            if item is None:
                return Disconnect(DisconnectReason.TIMEOUT, detail="no HELLO received")
            if isinstance(item, Disconnect):
                return item
            if item.opcode is not Opcode.HELLO:
                LOGGER.debug("Shard %s ignoring op=%s before HELLO", self.shard_id, item.op)
                continue
            try:
                hello = HelloPayload.model_validate(item.payload)
            except ValidationError:
                LOGGER.warning("Shard %s received malformed HELLO: %s", self.shard_id, item.payload)
                return Disconnect(DisconnectReason.TRANSPORT_ERROR, detail="malformed HELLO")
            self._start_heartbeat(hello.heartbeat_interval / 1000.0)
            return None

    async def _handshake_and_pump(self) -> Disconnect:
        if self.state is SessionState.RECONNECTING and self.tracker.can_resume():
            self._transition(SessionState.RESUMING)
            await self._send_resume()
            self._handshake_deadline = self.clock.now() + self.settings.resume_timeout_seconds
        else:
            outcome = await self._identify()
            if outcome is not None:
                return outcome
        return await self._pump()

    async def _identify(self) -> Optional[Disconnect]:
        self.tracker.clear_session()
        self.tracker.resumable = True
        self._transition(SessionState.IDENTIFYING)
        if self.identify_gate is not None:
            outcome = await self._wait_for_identify_slot(self.identify_gate)
            if outcome is not None:
                return outcome
        await self._send_identify()
        self._handshake_deadline = self.clock.now() + self.settings.identify_timeout_seconds
        return None

    async def _wait_for_identify_slot(self, identify_gate: IdentifyGate) -> Optional[Disconnect]:
        """Wait on the identify gate while still serving the open connection.

        Heartbeat acks and server heartbeats keep being handled so a long wait
        for a slot does not look like a zombie connection.
        """

        gate = asyncio.ensure_future(identify_gate.acquire(self.shard_id))
        getter: Optional[asyncio.Future[Optional[InboxItem]]] = None
        try:
            while not gate.done():
                getter = asyncio.ensure_future(self._next_item(None))
                await asyncio.wait({gate, getter}, return_when=asyncio.FIRST_COMPLETED)
                if not getter.done():
                    getter.cancel()
                    await asyncio.wait({getter})
                if getter.cancelled():
                    continue
                item = getter.result()
                if isinstance(item, Disconnect):
                    return item
                outcome = await self._handle(item)
                if outcome is not None:
                    return outcome
            gate.result()
        finally:
            if not gate.done():
                gate.cancel()
            if getter is not None and not getter.done():
                getter.cancel()
        return None

    async def _pump(self) -> Disconnect:
        while True:
            item = await self._next_item(self._handshake_deadline)
            if item is None:
                resumable = self.state is not SessionState.RESUMING
                detail = "no RESUMED received" if not resumable else "no READY received"
                return Disconnect(DisconnectReason.TIMEOUT, resumable=resumable, detail=detail)
            if isinstance(item, Disconnect):
                return item
            outcome = await self._handle(item)
            if outcome is not None:
                return outcome

    async def _handle(self, envelope: GatewayEnvelope) -> Optional[Disconnect]:
        opcode = envelope.opcode
        if opcode is Opcode.DISPATCH:
            await self._handle_dispatch(envelope)
        elif opcode is Opcode.HEARTBEAT:
            await self._send_heartbeat()
        elif opcode is Opcode.HEARTBEAT_ACK:
            self._awaiting_ack = False
            self._missed_acks = 0
            self.tracker.last_heartbeat_ack = self.clock.now()
        elif opcode is Opcode.RECONNECT:
            return Disconnect(DisconnectReason.RECONNECT_REQUESTED, resumable=True)
        elif opcode is Opcode.INVALID_SESSION:
            resumable = bool(envelope.payload)
            if self.state is SessionState.RESUMING and not resumable:
                LOGGER.info("Shard %s resume rejected; identifying again", self.shard_id)
                delay = random.uniform(1.0, 5.0) * self.settings.reconnect_base_delay_seconds
                if await self._sleep_or_stop(delay):
                    return Disconnect(DisconnectReason.SHUTDOWN, resumable=False)
                return await self._identify()
            return Disconnect(DisconnectReason.INVALID_SESSION, resumable=resumable)
        elif opcode is Opcode.HELLO:
            LOGGER.debug("Shard %s ignoring repeated HELLO", self.shard_id)
        else:
            LOGGER.debug("Shard %s ignoring unhandled op=%s", self.shard_id, envelope.op)
        return None

    async def _handle_dispatch(self, envelope: GatewayEnvelope) -> None:
        if envelope.sequence is not None and not self.tracker.record_sequence(envelope.sequence):
            LOGGER.warning(
                "Shard %s received out-of-order sequence %s (last %s)",
                self.shard_id,
                envelope.sequence,
                self.tracker.sequence,
            )
        event_type = envelope.event_type or ""
        if event_type == EventType.READY.value:
            try:
                ready = ReadyPayload.model_validate(envelope.payload)
            except ValidationError:
                LOGGER.warning("Shard %s received malformed READY", self.shard_id)
            else:
                self.tracker.session_id = ready.session_id
                self.tracker.resume_url = ready.resume_gateway_url
                self._mark_connected()
                LOGGER.info("Shard %s ready (session %s)", self.shard_id, ready.session_id)
        elif event_type == EventType.RESUMED.value:
            self._mark_connected()
            LOGGER.info("Shard %s resumed at sequence %s", self.shard_id, self.tracker.sequence)
        if self.event_sink is not None and event_type:
            event = GatewayEvent(
                shard_id=self.shard_id,
                type=event_type,
                sequence=envelope.sequence,
                payload=envelope.payload,
            )
            await self._forward(self.event_sink, event)

    async def _forward(self, sink: EventSink, event: GatewayEvent) -> None:
        """Hand ``event`` to ``sink``; a sink applying backpressure is abandoned on shutdown."""

        forward = asyncio.ensure_future(sink(event))
        stop = asyncio.ensure_future(self._stop_requested.wait())
        try:
            await asyncio.wait({forward, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not forward.done():
                forward.cancel()
                await asyncio.wait({forward})
        if forward.cancelled():
            LOGGER.debug("Shard %s dropped %s during shutdown", self.shard_id, event.type)
            return
        forward.result()

    def _mark_connected(self) -> None:
        if self.state in {SessionState.IDENTIFYING, SessionState.RESUMING}:
            self._transition(SessionState.CONNECTED)
        self._handshake_deadline = None
        self.tracker.resumable = True
        self._backoff.reset()
        self._ready.set()

    # ------------------------------------------------------------------ heartbeat

    def _start_heartbeat(self, interval: float) -> None:
        self.tracker.heartbeat_interval = interval
        self._heartbeat = HeartbeatTimer(
            interval,
            self._on_heartbeat_tick,
            clock=self.clock,
            name=f"gateway-shard-{self.shard_id}-heartbeat",
        )
        self._heartbeat.start()

    async def _on_heartbeat_tick(self) -> None:
        if self._awaiting_ack:
            self._missed_acks += 1
            LOGGER.warning(
                "Shard %s heartbeat not acknowledged (%s/%s)",
                self.shard_id,
                self._missed_acks,
                self.settings.heartbeat_missed_ack_limit,
            )
            if self._missed_acks >= self.settings.heartbeat_missed_ack_limit:
                await self._inbox.put(
                    (self._generation, Disconnect(DisconnectReason.ZOMBIE, detail="heartbeat ack missing"))
                )
                if self._heartbeat is not None:
                    await self._heartbeat.stop()
                return
        await self._send_heartbeat()
        self._awaiting_ack = True

    async def _send_heartbeat(self) -> None:
        self.tracker.last_heartbeat_sent = self.clock.now()
        await self._send(build_frame(Opcode.HEARTBEAT, self.tracker.sequence))

    # ------------------------------------------------------------------ outbound frames

    async def _send_identify(self) -> None:
        payload = IdentifyPayload(
            token=self.settings.authorization,
            intents=self.settings.intents,
            shard=self.shard.as_list(),
            properties=ConnectionProperties(
                os=platform.system().lower() or "unknown",
                browser=self.settings.client_name,
                device=self.settings.client_name,
            ),
            large_threshold=self.settings.large_threshold,
        )
        LOGGER.info("Shard %s identifying (%s/%s)", self.shard_id, *self.shard.as_list())
        await self._send(build_frame(Opcode.IDENTIFY, payload))

    async def _send_resume(self) -> None:
        if self.tracker.session_id is None or self.tracker.sequence is None:
            raise GatewayError(f"Shard {self.shard_id} has no session to resume")
        payload = ResumePayload(
            token=self.settings.authorization,
            session_id=self.tracker.session_id,
            seq=self.tracker.sequence,
        )
        LOGGER.info("Shard %s resuming session %s at %s", self.shard_id, self.tracker.session_id, self.tracker.sequence)
        await self._send(build_frame(Opcode.RESUME, payload))

    async def _send(self, frame: dict[str, Any]) -> None:
        """Send a frame; a failure is reported through the inbox instead of raising."""

        conn = self._conn
        generation = self._generation
        if conn is None:
            return
        try:
            await conn.send(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Shard %s send failed: %s", self.shard_id, exc)
            await self._inbox.put((generation, Disconnect.from_exception(exc)))

    # ------------------------------------------------------------------ helpers

    async def _next_item(self, deadline: Optional[float]) -> Optional[InboxItem]:
        """Next inbox item for the live connection, or ``None`` once ``deadline`` passes."""

        while True:
            timeout = None if deadline is None else deadline - self.clock.now()
            if timeout is not None and timeout <= 0:
                return None
            try:
                generation, item = await asyncio.wait_for(self._inbox.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
            if generation is not None and generation != self._generation:
                continue
            return item

    def _decode(self, raw: dict[str, Any]) -> Optional[GatewayEnvelope]:
        try:
            return GatewayEnvelope.model_validate(raw)
        except ValidationError as exc:
            LOGGER.warning("Shard %s dropping malformed frame: %s", self.shard_id, exc.errors()[:1])
            return None

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Sleep for ``delay``; returns ``True`` early if shutdown was requested."""

        if self._stop_requested.is_set():
            return True
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_requested.wait(), timeout=max(0.0, delay))
        return self._stop_requested.is_set()

    def _transition(self, state: SessionState) -> None:
        previous = self.state
        self.tracker.transition(state)
        LOGGER.debug("Shard %s %s -> %s", self.shard_id, previous.value, state.value)

    async def _teardown(self, *, code: int) -> None:
        if self._heartbeat is not None:
            await self._heartbeat.stop()
            self._heartbeat = None
        conn = self._conn
        self._conn = None
        if conn is None:
            return
        try:
            await conn.close(code, timeout=self.settings.close_timeout_seconds)
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport close error", exc_info=True)

    async def _close_gracefully(self) -> None:
        if self._heartbeat is not None:
            await self._heartbeat.stop()
            self._heartbeat = None
        conn = self._conn
        self._conn = None
        if conn is not None:
            try:
                await conn.close(1000, "shutdown", timeout=self.settings.close_timeout_seconds)
            except asyncio.TimeoutError:
                LOGGER.warning("Shard %s close handshake timed out", self.shard_id)
                self._close_error = GatewayError(f"Shard {self.shard_id} close handshake timed out")
            except Exception as exc:  # noqa: BLE001
                LOGGER.debug("Shard %s close error: %s", self.shard_id, exc)
        self._transition(SessionState.CLOSED)

    def _fatal_from(self, outcome: Disconnect) -> GatewayError:
        if outcome.close_code == CloseCode.AUTHENTICATION_FAILED:
            return AuthenticationError(f"Shard {self.shard_id}: authentication failed")
        return GatewayConnectionError(
            f"Shard {self.shard_id}: {outcome.detail or outcome.reason.value} (close code {outcome.close_code})",
            close_code=outcome.close_code,
        )

    async def _fail(self, error: GatewayError) -> None:
        LOGGER.error("Shard %s closing: %s", self.shard_id, error)
        self._fatal_error = error
        await self._teardown(code=1000)
        if self.state is not SessionState.CLOSED:
            self._transition(SessionState.CLOSED)
