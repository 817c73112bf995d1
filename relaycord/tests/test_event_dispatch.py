import asyncio
import logging

import pytest

from relaycord.config import GatewaySettings
from relaycord.events import EventDispatcher
from relaycord.models.events import EventType, GatewayEvent


def _event(shard_id: int, seq: int, event_type: str = "MESSAGE_CREATE") -> GatewayEvent:
    return GatewayEvent(shard_id=shard_id, type=event_type, sequence=seq, payload={"seq": seq})


async def _drain(dispatcher: EventDispatcher, predicate, *, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.005)


def test_handlers_must_be_coroutine_functions():
    dispatcher = EventDispatcher(GatewaySettings())

    def not_async(event):
        return None

    with pytest.raises(TypeError):
        dispatcher.on(EventType.MESSAGE_CREATE, not_async)


@pytest.mark.asyncio
async def test_events_keep_per_shard_order_with_slow_handlers():
    dispatcher = EventDispatcher(GatewaySettings())
    seen: dict[int, list[int]] = {0: [], 1: []}

    async def handler(event: GatewayEvent) -> None:
        # shard 0 is slow; shard 1 must not wait for it
        await asyncio.sleep(0.01 if event.shard_id == 0 else 0)
        seen[event.shard_id].append(event.sequence)

    dispatcher.on("message_create", handler)
    try:
        for seq in range(1, 6):
            await dispatcher.dispatch(_event(0, seq))
            await dispatcher.dispatch(_event(1, seq))
        await _drain(dispatcher, lambda: len(seen[0]) == 5)
        assert seen[0] == [1, 2, 3, 4, 5]
        assert seen[1] == [1, 2, 3, 4, 5]
    finally:
        await dispatcher.close()


@pytest.mark.asyncio
async def test_handlers_run_in_registration_order():
    dispatcher = EventDispatcher(GatewaySettings())
    calls = []

    async def first(event):
        calls.append("first")

    async def second(event):
        calls.append("second")

    dispatcher.on(EventType.GUILD_CREATE, first)
    dispatcher.on(EventType.GUILD_CREATE, second)
    try:
        await dispatcher.dispatch(_event(0, 1, "GUILD_CREATE"))
        await _drain(dispatcher, lambda: len(calls) == 2)
        assert calls == ["first", "second"]
    finally:
        await dispatcher.close()


@pytest.mark.asyncio
async def test_failing_handler_is_isolated_and_reported():
    dispatcher = EventDispatcher(GatewaySettings())
    delivered = []
    failures = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        delivered.append(event.sequence)

    async def on_error(event, handler, exc):
        failures.append((event.sequence, handler, exc))

    dispatcher.on(EventType.MESSAGE_CREATE, broken)
    dispatcher.on(EventType.MESSAGE_CREATE, healthy)
    dispatcher.add_error_hook(on_error)
    try:
        await dispatcher.dispatch(_event(0, 1))
        await dispatcher.dispatch(_event(0, 2))
        await _drain(dispatcher, lambda: len(delivered) == 2)
        assert delivered == [1, 2]
        assert [seq for seq, _, _ in failures] == [1, 2]
        assert failures[0][1] is broken
        assert isinstance(failures[0][2], RuntimeError)
    finally:
        await dispatcher.close()


@pytest.mark.asyncio
async def test_handler_errors_are_logged_without_hooks(caplog):
    dispatcher = EventDispatcher(GatewaySettings())
    done = asyncio.Event()

    async def broken(event):
        done.set()
        raise ValueError("bad payload")

    dispatcher.on(EventType.MESSAGE_CREATE, broken)
    caplog.set_level(logging.ERROR, logger="relaycord.events")
    try:
        await dispatcher.dispatch(_event(0, 1))
        await asyncio.wait_for(done.wait(), timeout=1)
        await _drain(dispatcher, lambda: bool(caplog.records))
        assert any("Handler error for MESSAGE_CREATE" in record.getMessage() for record in caplog.records)
    finally:
        await dispatcher.close()


@pytest.mark.asyncio
async def test_handler_timeout_enters_cooldown():
    settings = GatewaySettings(
        dispatch_timeout_seconds=0.01,
        dispatch_max_failures=1,
        dispatch_failure_cooldown_seconds=0.5,
    )
    dispatcher = EventDispatcher(settings)
    calls = {"count": 0}

    async def slow_handler(event):
        calls["count"] += 1
        await asyncio.sleep(0.05)

    dispatcher.on(EventType.MESSAGE_CREATE, slow_handler)

    await dispatcher._run_handlers(_event(0, 1))
    assert calls["count"] == 1

    await dispatcher._run_handlers(_event(0, 2))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_closed_dispatcher_is_inert():
    dispatcher = EventDispatcher(GatewaySettings())
    calls = []

    async def handler(event):
        calls.append(event)

    dispatcher.on(EventType.MESSAGE_CREATE, handler)
    await dispatcher.close()
    await dispatcher.dispatch(_event(0, 1))
    await asyncio.sleep(0.02)

    assert calls == []
    assert dispatcher.closed


@pytest.mark.asyncio
async def test_off_removes_handler():
    dispatcher = EventDispatcher(GatewaySettings())

    async def handler(event):
        return None

    dispatcher.on(EventType.TYPING_START, handler)
    dispatcher.off("typing_start", handler)
    assert dispatcher.handlers(EventType.TYPING_START) == []
    await dispatcher.close()


async def _fill_queue(dispatcher: EventDispatcher, release: asyncio.Event, started: asyncio.Event, delivered: list) -> None:
    async def slow(event):
        started.set()
        await release.wait()
        delivered.append(event.sequence)

    dispatcher.on(EventType.MESSAGE_CREATE, slow)
    await dispatcher.dispatch(_event(0, 1))
    await asyncio.wait_for(started.wait(), timeout=1)
    await dispatcher.dispatch(_event(0, 2))


@pytest.mark.asyncio
async def test_full_queue_drop_new_discards_incoming_event():
    dispatcher = EventDispatcher(GatewaySettings(dispatch_queue_max=1, dispatch_queue_overflow="drop_new"))
    release, started, delivered = asyncio.Event(), asyncio.Event(), []
    try:
        await _fill_queue(dispatcher, release, started, delivered)
        await asyncio.wait_for(dispatcher.dispatch(_event(0, 3)), timeout=0.5)
        release.set()
        await _drain(dispatcher, lambda: len(delivered) == 2)
        await asyncio.sleep(0.02)
        assert delivered == [1, 2]
    finally:
        await dispatcher.close()


@pytest.mark.asyncio
async def test_full_queue_drop_oldest_keeps_latest_event():
    dispatcher = EventDispatcher(GatewaySettings(dispatch_queue_max=1, dispatch_queue_overflow="drop_oldest"))
    release, started, delivered = asyncio.Event(), asyncio.Event(), []
    try:
        await _fill_queue(dispatcher, release, started, delivered)
        await asyncio.wait_for(dispatcher.dispatch(_event(0, 3)), timeout=0.5)
        release.set()
        await _drain(dispatcher, lambda: len(delivered) == 2)
        await asyncio.sleep(0.02)
        assert delivered == [1, 3]
    finally:
        await dispatcher.close()


@pytest.mark.asyncio
async def test_blocked_dispatch_returns_when_dispatcher_closes():
    dispatcher = EventDispatcher(GatewaySettings(dispatch_queue_max=1))
    release, started, delivered = asyncio.Event(), asyncio.Event(), []
    await _fill_queue(dispatcher, release, started, delivered)

    blocked = asyncio.create_task(dispatcher.dispatch(_event(0, 3)))
    await asyncio.sleep(0.02)
    assert not blocked.done()

    await dispatcher.close()
    await asyncio.wait_for(blocked, timeout=0.5)
    assert delivered == []
