"""HTTP transport executing admitted REST requests."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from relaycord import __version__
from relaycord.config import GatewaySettings
from relaycord.errors import TransportError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class HTTPRequest:
    method: str
    path: str
    json: Any = None
    params: Optional[dict[str, Any]] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class HTTPResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HTTPTransport:
    """Thin async wrapper around :class:`httpx.AsyncClient`.

    Performs exactly one network call per :meth:`send`; retries and throttling
    belong to the dispatcher.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._transport = transport
        self._owns_client = client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": f"DiscordBot (relaycord, {__version__})",
            }
            if self._settings.authorization:
                headers["Authorization"] = self._settings.authorization
            self._client = httpx.AsyncClient(
                base_url=str(self._settings.api_base_url).rstrip("/"),
                headers=headers,
                timeout=self._settings.http_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def send(self, request: HTTPRequest) -> HTTPResponse:
        client = self._ensure_client()
        headers = {}
        if request.reason:
            headers["X-Audit-Log-Reason"] = request.reason
        try:
            response = await client.request(
                request.method,
                request.path,
                json=request.json,
                params=request.params,
                headers=headers or None,
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"{request.method} {request.path} failed: {exc}") from exc
        LOGGER.debug("%s %s -> %s", request.method, request.path, response.status_code)
        return HTTPResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=self._decode_body(response),
        )

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                return response.json()
            except json.JSONDecodeError:
                LOGGER.debug("Response declared JSON but failed to decode")
        return response.text

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
