"""Exceptions surfaced across the public boundary of the client."""

from __future__ import annotations

from typing import Any, Optional


class RelaycordError(RuntimeError):
    """Base class for every error raised by relaycord."""


class GatewayError(RelaycordError):
    """Raised for unrecoverable gateway session failures."""


class AuthenticationError(GatewayError):
    """Raised when the gateway rejects the token. Never retried."""


class GatewayConnectionError(GatewayError):
    """Raised when reconnects are exhausted or the server closes with a fatal code."""

    def __init__(self, message: str, *, close_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.close_code = close_code


class HTTPError(RelaycordError):
    """Base class for REST request failures."""


class ClientError(HTTPError):
    """A 4xx response other than 429, surfaced unmodified."""

    def __init__(self, status: int, body: Any = None, *, headers: Optional[dict[str, str]] = None) -> None:
        super().__init__(f"Request failed with status {status}")
        self.status = status
        self.body = body
        self.headers = headers or {}


class ServerError(HTTPError):
    """A 5xx response."""

    def __init__(self, status: int, body: Any = None) -> None:
        super().__init__(f"Server error {status}")
        self.status = status
        self.body = body


class RateLimited(HTTPError):
    """Raised when a request keeps hitting 429 past the configured retry ceiling."""

    def __init__(self, retry_after: float, *, is_global: bool = False) -> None:
        scope = "global" if is_global else "route"
        super().__init__(f"Rate limited ({scope}); retry after {retry_after:.2f}s")
        self.retry_after = retry_after
        self.is_global = is_global


class TransportError(HTTPError):
    """Raised when the HTTP request never produced a response."""


class RequestCancelledError(HTTPError):
    """Raised for queued requests dropped during shutdown."""
