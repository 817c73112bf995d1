"""Sharded gateway client with a rate-limited REST dispatcher."""

__version__ = "0.1.0"

from relaycord.client import Client  # noqa: E402
from relaycord.config import GatewaySettings, get_settings  # noqa: E402
from relaycord.errors import (  # noqa: E402
    AuthenticationError,
    ClientError,
    GatewayConnectionError,
    GatewayError,
    HTTPError,
    RateLimited,
    RelaycordError,
    RequestCancelledError,
    ServerError,
    TransportError,
)
from relaycord.models.events import EventType, GatewayEvent  # noqa: E402

__all__ = [
    "AuthenticationError",
    "Client",
    "ClientError",
    "EventType",
    "GatewayConnectionError",
    "GatewayError",
    "GatewayEvent",
    "GatewaySettings",
    "HTTPError",
    "RateLimited",
    "RelaycordError",
    "RequestCancelledError",
    "ServerError",
    "TransportError",
    "__version__",
    "get_settings",
]
