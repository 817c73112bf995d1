"""Configuration for the relaycord client."""

from .settings import GatewaySettings, get_settings

__all__ = ["GatewaySettings", "get_settings"]
