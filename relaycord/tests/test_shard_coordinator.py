import asyncio
from typing import Any, Optional

import pytest

from relaycord.config import GatewaySettings
from relaycord.errors import AuthenticationError, GatewayConnectionError
from relaycord.http.buckets import BucketRegistry
from relaycord.models import GatewayBot
from relaycord.network.session_state import SessionState
from relaycord.network.transport.dummy import DummyTransport
from relaycord.shard.coordinator import RegistryIdentifyGate, ShardCoordinator


class _Gateway(DummyTransport):
    def __init__(self, *, reject_identify: bool = False) -> None:
        super().__init__(None)
        self.reject_identify = reject_identify
        self.identified_at: Optional[float] = None
        self.shard: Optional[list[int]] = None

    async def connect(self, url: str) -> None:
        await super().connect(url)
        self.feed({"op": 10, "d": {"heartbeat_interval": 45000}})

    async def send(self, message: dict[str, Any]) -> None:
        await super().send(message)
        if message["op"] == 1:
            self.feed({"op": 11})
        if message["op"] != 2:
            return
        self.identified_at = asyncio.get_running_loop().time()
        self.shard = message["d"]["shard"]
        if self.reject_identify:
            self.fail(4004, "Authentication failed.")
            return
        self.feed({"op": 0, "s": 1, "t": "READY", "d": {"session_id": f"sess-{self.shard[0]}"}})


class _Factory:
    def __init__(self, rejecting_shard: Optional[int] = None) -> None:
        self.rejecting_shard = rejecting_shard
        self.created: list[_Gateway] = []

    def __call__(self, _settings: GatewaySettings) -> _Gateway:
        # shards connect in id order, so creation index is the shard id on first connect
        transport = _Gateway(reject_identify=len(self.created) == self.rejecting_shard)
        self.created.append(transport)
        return transport


class _DiscoveryApi:
    def __init__(self, bot: GatewayBot) -> None:
        self.bot = bot
        self.calls = 0

    async def get_gateway_bot(self) -> GatewayBot:
        self.calls += 1
        return self.bot


def _settings(**overrides: Any) -> GatewaySettings:
    values = dict(
        token="secret",
        gateway_url="wss://gateway.example",
        shard_count=2,
        identify_interval_seconds=0.1,
        reconnect_base_delay_seconds=0.01,
        reconnect_jitter=0.0,
    )
    values.update(overrides)
    return GatewaySettings(**values)


def _coordinator(settings: GatewaySettings, factory: _Factory, **kwargs: Any) -> ShardCoordinator:
    return ShardCoordinator(
        settings=settings,
        registry=BucketRegistry(),
        transport_factory=factory,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_start_returns_once_every_shard_is_ready():
    factory = _Factory()
    coordinator = _coordinator(_settings(), factory)
    try:
        await asyncio.wait_for(coordinator.start(), timeout=2)
        sessions = coordinator.sessions
        assert sorted(sessions) == [0, 1]
        assert all(session.state is SessionState.CONNECTED for session in sessions.values())
        assert sorted(transport.shard[0] for transport in factory.created) == [0, 1]
        assert all(transport.shard[1] == 2 for transport in factory.created)
    finally:
        await coordinator.stop()
    assert all(session.state is SessionState.CLOSED for session in coordinator.sessions.values())


@pytest.mark.asyncio
async def test_identifies_sharing_a_slot_are_spaced_by_interval():
    factory = _Factory()
    coordinator = _coordinator(_settings(identify_interval_seconds=0.1), factory)
    try:
        await asyncio.wait_for(coordinator.start(), timeout=2)
        times = sorted(transport.identified_at for transport in factory.created)
        assert times[1] - times[0] >= 0.09
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_identifies_on_separate_slots_are_not_delayed():
    factory = _Factory()
    coordinator = _coordinator(
        _settings(identify_interval_seconds=5.0, identify_max_concurrency=2),
        factory,
    )
    try:
        await asyncio.wait_for(coordinator.start(), timeout=1)
        times = sorted(transport.identified_at for transport in factory.created)
        assert times[1] - times[0] < 1.0
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_authentication_failure_stops_every_shard():
    factory = _Factory(rejecting_shard=0)
    coordinator = _coordinator(_settings(identify_interval_seconds=0.05), factory)

    with pytest.raises(AuthenticationError):
        await asyncio.wait_for(coordinator.start(), timeout=2)

    sessions = coordinator.sessions
    assert all(session.state is SessionState.CLOSED for session in sessions.values())
    assert len(factory.created) == 2
    assert isinstance(coordinator.fatal_error, AuthenticationError)
    with pytest.raises(AuthenticationError):
        await coordinator.wait_closed()


@pytest.mark.asyncio
async def test_later_fatal_error_closes_all_shards_and_surfaces_from_wait_closed():
    factory = _Factory()
    coordinator = _coordinator(_settings(identify_interval_seconds=0.01), factory)
    await asyncio.wait_for(coordinator.start(), timeout=2)

    factory.created[1].fail(4014, "Disallowed intent(s).")
    with pytest.raises(GatewayConnectionError) as excinfo:
        await asyncio.wait_for(coordinator.wait_closed(), timeout=2)

    assert excinfo.value.close_code == 4014
    assert all(session.state is SessionState.CLOSED for session in coordinator.sessions.values())


@pytest.mark.asyncio
async def test_auto_shard_count_uses_discovery():
    api = _DiscoveryApi(
        GatewayBot.model_validate(
            {
                "url": "wss://discovered.example",
                "shards": 3,
                "session_start_limit": {"total": 1000, "remaining": 999, "reset_after": 0, "max_concurrency": 3},
            }
        )
    )
    factory = _Factory()
    coordinator = _coordinator(_settings(gateway_url=None, shard_count="auto"), factory, api=api)
    try:
        await asyncio.wait_for(coordinator.start(), timeout=2)
        assert api.calls == 1
        assert coordinator.plan.shard_count == 3
        assert coordinator.plan.max_concurrency == 3
        assert all(transport.url.startswith("wss://discovered.example") for transport in factory.created)
        assert sorted(coordinator.sessions) == [0, 1, 2]
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_configured_shard_ids_are_validated():
    coordinator = _coordinator(_settings(shard_count=2, shard_ids=[1, 2]), _Factory())
    with pytest.raises(ValueError):
        await coordinator.start()


@pytest.mark.asyncio
async def test_start_is_idempotent():
    factory = _Factory()
    coordinator = _coordinator(_settings(shard_count=1), factory)
    try:
        await asyncio.wait_for(coordinator.start(), timeout=1)
        await coordinator.start()
        assert len(factory.created) == 1
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_identify_gate_keys_by_concurrency_slot():
    registry = BucketRegistry()
    gate = RegistryIdentifyGate(registry, max_concurrency=4, interval=5.0)

    assert gate.key_for(0) == "identify:0"
    assert gate.key_for(6) == "identify:2"
    assert registry.get("identify:3").configured
    await asyncio.wait_for(gate.acquire(5), timeout=0.5)
