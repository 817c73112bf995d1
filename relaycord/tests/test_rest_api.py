import json
from typing import Any, Optional

import httpx
import pytest

from relaycord import __version__
from relaycord.config import GatewaySettings
from relaycord.errors import TransportError
from relaycord.http.api import RestApi
from relaycord.http.client import HTTPRequest, HTTPResponse, HTTPTransport
from relaycord.http.routes import Route, encode_segment


class _RecordingDispatcher:
    def __init__(self, body: Any = None) -> None:
        self.body = body
        self.calls: list[dict[str, Any]] = []

    async def submit_route(
        self,
        route: Route,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> HTTPResponse:
        self.calls.append({"route": route, "json": json, "params": params, "reason": reason})
        return HTTPResponse(200, {}, self.body)

    @property
    def last(self) -> dict[str, Any]:
        return self.calls[-1]


def test_route_key_defaults_to_major_parameter():
    assert Route("GET", "/channels/{channel_id}/messages", channel_id=12).route_key == "channels:12"
    assert Route("PATCH", "/guilds/{guild_id}", guild_id=7).route_key == "guilds:7"
    assert Route("POST", "/webhooks/{webhook_id}/{token}", webhook_id=3, token="t").route_key == "webhooks:3"
    assert Route("GET", "/gateway/bot").route_key == "/gateway/bot"


def test_route_encodes_path_segments():
    route = Route(
        "PUT",
        "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}/@me",
        bucket="channel:{channel_id}:emoji",
        channel_id=1,
        message_id=2,
        emoji="👍",
    )
    assert route.path == "/channels/1/messages/2/reactions/%F0%9F%91%8D/@me"
    assert route.route_key == "channel:1:emoji"
    assert encode_segment("name:123") == "name%3A123"
    assert encode_segment("a-b_c.d~e") == "a-b_c.d~e"


@pytest.mark.asyncio
async def test_message_endpoints_share_channel_bucket():
    dispatcher = _RecordingDispatcher({"id": "99"})
    api = RestApi(dispatcher)

    await api.send_message(5, "hello", reply_to=42)
    assert dispatcher.last["route"].method == "POST"
    assert dispatcher.last["route"].path == "/channels/5/messages"
    assert dispatcher.last["json"] == {"content": "hello", "message_reference": {"message_id": "42"}}

    await api.edit_message(5, 99, content="edited")
    await api.delete_message(5, 99, reason="cleanup")
    assert dispatcher.last["reason"] == "cleanup"
    await api.get_message(5, 99)

    assert {call["route"].route_key for call in dispatcher.calls} == {"channels:5"}


@pytest.mark.asyncio
async def test_reaction_endpoints_use_emoji_bucket():
    dispatcher = _RecordingDispatcher()
    api = RestApi(dispatcher)

    await api.add_reaction(5, 9, "custom:123")
    await api.remove_own_reaction(5, 9, "custom:123")
    await api.remove_user_reaction(5, 9, "custom:123", 77)
    await api.get_reactions(5, 9, "custom:123", limit=10, after=3)
    await api.remove_emoji_reactions(5, 9, "custom:123")
    await api.remove_all_reactions(5, 9)

    assert {call["route"].route_key for call in dispatcher.calls} == {"channel:5:emoji"}
    assert dispatcher.calls[0]["route"].path == "/channels/5/messages/9/reactions/custom%3A123/@me"
    assert dispatcher.calls[2]["route"].path.endswith("/reactions/custom%3A123/77")
    assert dispatcher.calls[3]["params"] == {"limit": 10, "after": 3}
    assert dispatcher.calls[5]["route"].method == "DELETE"


@pytest.mark.asyncio
async def test_get_messages_validates_anchor_and_limit():
    dispatcher = _RecordingDispatcher([])
    api = RestApi(dispatcher)

    await api.get_messages(5, limit=20, before=100)
    assert dispatcher.last["params"] == {"limit": 20, "before": 100}

    with pytest.raises(ValueError):
        await api.get_messages(5, around=1, after=2)
    with pytest.raises(ValueError):
        await api.get_messages(5, limit=101)


@pytest.mark.asyncio
async def test_bulk_delete_and_channel_endpoints():
    dispatcher = _RecordingDispatcher()
    api = RestApi(dispatcher)

    await api.delete_messages(5, [1, 2, 3])
    assert dispatcher.last["route"].path == "/channels/5/messages/bulk-delete"
    assert dispatcher.last["json"] == {"messages": ["1", "2", "3"]}
    with pytest.raises(ValueError):
        await api.delete_messages(5, [1])

    await api.get_channel(5)
    await api.edit_channel(5, name="general", reason="rename")
    assert dispatcher.last["json"] == {"name": "general"}
    await api.edit_channel_permissions(5, 8, allow=1024, deny=2048, target_type=1)
    assert dispatcher.last["route"].path == "/channels/5/permissions/8"
    assert dispatcher.last["json"] == {"allow": "1024", "deny": "2048", "type": 1}
    await api.delete_channel(5)
    assert dispatcher.last["route"].method == "DELETE"


@pytest.mark.asyncio
async def test_get_gateway_bot_parses_response():
    dispatcher = _RecordingDispatcher(
        {
            "url": "wss://gateway.example",
            "shards": 4,
            "session_start_limit": {"total": 1000, "remaining": 990, "reset_after": 1000, "max_concurrency": 2},
        }
    )
    bot = await RestApi(dispatcher).get_gateway_bot()

    assert bot.url == "wss://gateway.example"
    assert bot.shards == 4
    assert bot.session_start_limit.max_concurrency == 2
    assert dispatcher.last["route"].path == "/gateway/bot"


@pytest.mark.asyncio
async def test_http_transport_sends_auth_and_decodes_json():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"id": "1"},
            headers={"X-RateLimit-Remaining": "4"},
        )

    transport = HTTPTransport(GatewaySettings(token="secret"), transport=httpx.MockTransport(handler))
    try:
        response = await transport.send(
            HTTPRequest("POST", "/channels/1/messages", json={"content": "hi"}, reason="testing")
        )
    finally:
        await transport.close()

    assert response.status == 200
    assert response.body == {"id": "1"}
    assert response.headers["x-ratelimit-remaining"] == "4"
    request = seen[0]
    assert str(request.url) == "https://discord.com/api/v10/channels/1/messages"
    assert request.headers["Authorization"] == "Bot secret"
    assert request.headers["User-Agent"] == f"DiscordBot (relaycord, {__version__})"
    assert request.headers["X-Audit-Log-Reason"] == "testing"
    assert json.loads(request.content) == {"content": "hi"}


@pytest.mark.asyncio
async def test_http_transport_maps_network_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = HTTPTransport(GatewaySettings(token="secret"), transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(TransportError):
            await transport.send(HTTPRequest("GET", "/channels/1"))
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_http_transport_returns_text_for_non_json():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    transport = HTTPTransport(GatewaySettings(), transport=httpx.MockTransport(handler))
    try:
        response = await transport.send(HTTPRequest("GET", "/channels/1"))
    finally:
        await transport.close()

    assert response.status == 502
    assert response.body == "bad gateway"
    assert not response.ok
