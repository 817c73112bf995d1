import asyncio
from typing import Any

import pytest

from relaycord import Client, EventType, GatewayEvent
from relaycord.config import GatewaySettings
from relaycord.errors import AuthenticationError, RequestCancelledError
from relaycord.http.client import HTTPRequest, HTTPResponse
from relaycord.network.transport.dummy import DummyTransport


class _Gateway(DummyTransport):
    def __init__(self, *, reject: bool = False) -> None:
        super().__init__(None)
        self.reject = reject

    async def connect(self, url: str) -> None:
        await super().connect(url)
        self.feed({"op": 10, "d": {"heartbeat_interval": 45000}})

    async def send(self, message: dict[str, Any]) -> None:
        await super().send(message)
        if message["op"] == 1:
            self.feed({"op": 11})
        elif message["op"] == 2:
            if self.reject:
                self.fail(4004, "Authentication failed.")
                return
            self.feed({"op": 0, "s": 1, "t": "READY", "d": {"session_id": "sess", "user": {"username": "bot"}}})
            self.feed({"op": 0, "s": 2, "t": "MESSAGE_CREATE", "d": {"content": "hi"}})


class _Sender:
    def __init__(self) -> None:
        self.requests: list[HTTPRequest] = []
        self.closed = False

    async def send(self, request: HTTPRequest) -> HTTPResponse:
        self.requests.append(request)
        if request.path == "/gateway/bot":
            return HTTPResponse(200, {}, {"url": "wss://discovered.example", "shards": 1})
        return HTTPResponse(200, {}, {"id": "1"})

    async def close(self) -> None:
        self.closed = True


def _client(reject: bool = False, **overrides: Any) -> tuple[Client, list[_Gateway], _Sender]:
    settings = GatewaySettings(**{"token": "secret", "gateway_url": "wss://gateway.example", **overrides})
    transports: list[_Gateway] = []

    def factory(_settings: GatewaySettings) -> _Gateway:
        transport = _Gateway(reject=reject)
        transports.append(transport)
        return transport

    sender = _Sender()
    return Client(settings, transport_factory=factory, http_transport=sender), transports, sender


@pytest.mark.asyncio
async def test_client_delivers_events_to_decorated_handlers():
    client, transports, sender = _client()
    received: list[GatewayEvent] = []
    done = asyncio.Event()

    @client.on(EventType.MESSAGE_CREATE)
    async def on_message(event: GatewayEvent) -> None:
        received.append(event)
        done.set()

    await asyncio.wait_for(client.start(), timeout=1)
    try:
        await asyncio.wait_for(done.wait(), timeout=1)
        assert received[0].payload == {"content": "hi"}
        assert received[0].shard_id == 0
    finally:
        await client.stop()

    assert client.closed
    assert sender.closed
    assert transports[0].close_code == 1000


@pytest.mark.asyncio
async def test_client_request_goes_through_dispatcher():
    client, _, sender = _client()
    try:
        response = await client.request("POST", "/channels/1/messages", "channels:1", {"content": "hi"})
        message = await client.api.send_message(1, "again")
        assert response.status == 200
        assert message == {"id": "1"}
        assert [request.path for request in sender.requests] == ["/channels/1/messages", "/channels/1/messages"]
    finally:
        await client.stop()

    with pytest.raises(RequestCancelledError):
        await client.request("GET", "/channels/1", "channels:1")


@pytest.mark.asyncio
async def test_client_discovers_gateway_through_rest():
    client, transports, sender = _client(gateway_url=None)
    try:
        await asyncio.wait_for(client.start(), timeout=1)
        assert sender.requests[0].path == "/gateway/bot"
        assert transports[0].url.startswith("wss://discovered.example")
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_client_start_raises_authentication_error_and_closes():
    client, transports, sender = _client(reject=True)

    with pytest.raises(AuthenticationError):
        await asyncio.wait_for(client.start(), timeout=1)

    assert client.closed
    assert sender.closed
    assert len(transports) == 1


def test_on_requires_coroutine_handler():
    client, _, _ = _client()

    with pytest.raises(TypeError):
        client.on(EventType.READY, lambda event: None)


@pytest.mark.asyncio
async def test_on_error_hook_receives_handler_failures():
    client, _, _ = _client()
    failures = []
    done = asyncio.Event()

    @client.on("message_create")
    async def broken(event: GatewayEvent) -> None:
        raise RuntimeError("boom")

    @client.on_error
    async def report(event, handler, exc) -> None:
        failures.append(exc)
        done.set()

    await asyncio.wait_for(client.start(), timeout=1)
    try:
        await asyncio.wait_for(done.wait(), timeout=1)
        assert isinstance(failures[0], RuntimeError)
    finally:
        await client.stop()


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent_once_closed():
    client, transports, _ = _client()
    await asyncio.wait_for(client.start(), timeout=1)
    await client.stop()

    await client.stop()
    await asyncio.wait_for(client.start(), timeout=1)

    assert client.closed
    assert len(transports) == 1
    assert transports[0].close_code == 1000
