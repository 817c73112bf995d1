"""Typed helpers for the REST endpoints the client uses."""

from __future__ import annotations

from typing import Any, Optional, Sequence

from relaycord.http.dispatcher import RequestDispatcher
from relaycord.http.routes import Route
from relaycord.models import GatewayBot

CHANNEL_BUCKET = "channels:{channel_id}"
REACTION_BUCKET = "channel:{channel_id}:emoji"
MAX_MESSAGE_FETCH = 100
BULK_DELETE_RANGE = (2, 100)


class RestApi:
    """REST calls expressed as :class:`Route` submissions.

    Every method returns the decoded JSON body (``None`` for empty responses)
    and raises the dispatcher's errors unchanged.
    """

    def __init__(self, dispatcher: RequestDispatcher) -> None:
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    async def _call(
        self,
        route: Route,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Any:
        response = await self._dispatcher.submit_route(route, json=json, params=params, reason=reason)
        return response.body

    # Gateway

    async def get_gateway_bot(self) -> GatewayBot:
        body = await self._call(Route("GET", "/gateway/bot", bucket="gateway:bot"))
        return GatewayBot.model_validate(body)

    # Channels

    async def get_channel(self, channel_id: int) -> dict[str, Any]:
        return await self._call(Route("GET", "/channels/{channel_id}", bucket=CHANNEL_BUCKET, channel_id=channel_id))

    async def edit_channel(self, channel_id: int, *, reason: Optional[str] = None, **fields: Any) -> dict[str, Any]:
        route = Route("PATCH", "/channels/{channel_id}", bucket=CHANNEL_BUCKET, channel_id=channel_id)
        return await self._call(route, json=fields, reason=reason)

    async def delete_channel(self, channel_id: int, *, reason: Optional[str] = None) -> dict[str, Any]:
        route = Route("DELETE", "/channels/{channel_id}", bucket=CHANNEL_BUCKET, channel_id=channel_id)
        return await self._call(route, reason=reason)

    async def edit_channel_permissions(
        self,
        channel_id: int,
        target_id: int,
        *,
        allow: int = 0,
        deny: int = 0,
        target_type: int = 0,
        reason: Optional[str] = None,
    ) -> None:
        route = Route(
            "PUT",
            "/channels/{channel_id}/permissions/{target_id}",
            bucket=CHANNEL_BUCKET,
            channel_id=channel_id,
            target_id=target_id,
        )
        payload = {"allow": str(allow), "deny": str(deny), "type": target_type}
        await self._call(route, json=payload, reason=reason)

    # Messages

    async def get_messages(
        self,
        channel_id: int,
        *,
        limit: int = 50,
        around: Optional[int] = None,
        before: Optional[int] = None,
        after: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        anchors = {name: value for name, value in (("around", around), ("before", before), ("after", after)) if value}
        if len(anchors) > 1:
            raise ValueError("Only one of around, before or after may be given")
        if not 1 <= limit <= MAX_MESSAGE_FETCH:
            raise ValueError(f"limit must be between 1 and {MAX_MESSAGE_FETCH}")
        params: dict[str, Any] = {"limit": limit, **anchors}
        route = Route("GET", "/channels/{channel_id}/messages", bucket=CHANNEL_BUCKET, channel_id=channel_id)
        return await self._call(route, params=params)

    async def get_message(self, channel_id: int, message_id: int) -> dict[str, Any]:
        route = Route(
            "GET",
            "/channels/{channel_id}/messages/{message_id}",
            bucket=CHANNEL_BUCKET,
            channel_id=channel_id,
            message_id=message_id,
        )
        return await self._call(route)

    async def send_message(
        self,
        channel_id: int,
        content: Optional[str] = None,
        *,
        embeds: Optional[Sequence[dict[str, Any]]] = None,
        reply_to: Optional[int] = None,
        tts: bool = False,
        **fields: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = dict(fields)
        if content is not None:
            payload["content"] = content
        if embeds:
            payload["embeds"] = list(embeds)
        if tts:
            payload["tts"] = True
        if reply_to is not None:
            payload["message_reference"] = {"message_id": str(reply_to)}
        if not payload:
            raise ValueError("A message needs content, embeds or other fields")
        route = Route("POST", "/channels/{channel_id}/messages", bucket=CHANNEL_BUCKET, channel_id=channel_id)
        return await self._call(route, json=payload)

    async def edit_message(self, channel_id: int, message_id: int, **fields: Any) -> dict[str, Any]:
        route = Route(
            "PATCH",
            "/channels/{channel_id}/messages/{message_id}",
            bucket=CHANNEL_BUCKET,
            channel_id=channel_id,
            message_id=message_id,
        )
        return await self._call(route, json=fields)

    async def delete_message(self, channel_id: int, message_id: int, *, reason: Optional[str] = None) -> None:
        route = Route(
            "DELETE",
            "/channels/{channel_id}/messages/{message_id}",
            bucket=CHANNEL_BUCKET,
            channel_id=channel_id,
            message_id=message_id,
        )
        await self._call(route, reason=reason)

    async def delete_messages(
        self,
        channel_id: int,
        message_ids: Sequence[int],
        *,
        reason: Optional[str] = None,
    ) -> None:
        low, high = BULK_DELETE_RANGE
        if not low <= len(message_ids) <= high:
            raise ValueError(f"Bulk delete takes between {low} and {high} messages")
        route = Route(
            "POST",
            "/channels/{channel_id}/messages/bulk-delete",
            bucket=CHANNEL_BUCKET,
            channel_id=channel_id,
        )
        await self._call(route, json={"messages": [str(mid) for mid in message_ids]}, reason=reason)

    # Reactions

    def _reaction_route(self, method: str, path: str, channel_id: int, **params: Any) -> Route:
        return Route(method, path, bucket=REACTION_BUCKET, channel_id=channel_id, **params)

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str) -> None:
        route = self._reaction_route(
            "PUT",
            "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}/@me",
            channel_id,
            message_id=message_id,
            emoji=emoji,
        )
        await self._call(route)

    async def remove_own_reaction(self, channel_id: int, message_id: int, emoji: str) -> None:
        route = self._reaction_route(
            "DELETE",
            "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}/@me",
            channel_id,
            message_id=message_id,
            emoji=emoji,
        )
        await self._call(route)

    async def remove_user_reaction(self, channel_id: int, message_id: int, emoji: str, user_id: int) -> None:
        route = self._reaction_route(
            "DELETE",
            "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}/{user_id}",
            channel_id,
            message_id=message_id,
            emoji=emoji,
            user_id=user_id,
        )
        await self._call(route)

    async def get_reactions(
        self,
        channel_id: int,
        message_id: int,
        emoji: str,
        *,
        limit: int = 25,
        after: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        if not 1 <= limit <= MAX_MESSAGE_FETCH:
            raise ValueError(f"limit must be between 1 and {MAX_MESSAGE_FETCH}")
        params: dict[str, Any] = {"limit": limit}
        if after is not None:
            params["after"] = after
        route = self._reaction_route(
            "GET",
            "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}",
            channel_id,
            message_id=message_id,
            emoji=emoji,
        )
        return await self._call(route, params=params)

    async def remove_all_reactions(self, channel_id: int, message_id: int) -> None:
        route = self._reaction_route(
            "DELETE",
            "/channels/{channel_id}/messages/{message_id}/reactions",
            channel_id,
            message_id=message_id,
        )
        await self._call(route)

    async def remove_emoji_reactions(self, channel_id: int, message_id: int, emoji: str) -> None:
        route = self._reaction_route(
            "DELETE",
            "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}",
            channel_id,
            message_id=message_id,
            emoji=emoji,
        )
        await self._call(route)
