"""Bootstraps a gateway client with repository-relative imports."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))

    # Lazy import after adjusting sys.path
    from relaycord import Client, EventType, get_settings  # type: ignore

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger("relaycord.bot")
    client = Client(settings)

    @client.on(EventType.READY)
    async def on_ready(event) -> None:
        user = (event.payload or {}).get("user", {})
        logger.info("Shard %s logged in as %s", event.shard_id, user.get("username", "?"))

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")


if __name__ == "__main__":
    main()
