"""REST routes and their rate limit keys."""

from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

# Path parameters that partition rate limits ("major parameters").
MAJOR_PARAMETERS = ("channel_id", "guild_id", "webhook_id")


def encode_segment(value: Any) -> str:
    """Percent-encode a path segment (emoji, ids), keeping unreserved characters."""

    return quote(str(value), safe="")


class Route:
    """A REST call template plus its rate limit key.

    ``path`` is a format string (``/channels/{channel_id}/messages``). The
    route key defaults to the first major parameter (``channels:123``); pass
    ``bucket`` to group routes explicitly (``channel:{channel_id}:emoji``).
    """

    __slots__ = ("method", "template", "path", "route_key")

    def __init__(self, method: str, path: str, *, bucket: Optional[str] = None, **params: Any) -> None:
        self.method = method.upper()
        self.template = path
        self.path = path.format(**{key: encode_segment(value) for key, value in params.items()})
        if bucket is not None:
            self.route_key = bucket.format(**params)
        else:
            self.route_key = self._default_key(path, params)

    @staticmethod
    def _default_key(path: str, params: dict[str, Any]) -> str:
        for name in MAJOR_PARAMETERS:
            if name in params:
                return f"{name[: -len('_id')]}s:{params[name]}"
        return path

    def __repr__(self) -> str:
        return f"<Route {self.method} {self.path} key={self.route_key}>"
