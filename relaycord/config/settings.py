"""Client configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import AnyUrl, Field, NonNegativeInt, PositiveFloat, PositiveInt
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/relaycord/relaycord.yaml"),
    Path("/etc/relaycord/relaycord.yml"),
    Path("./config/relaycord.yaml"),
    Path("./config/relaycord.yml"),
)


class GatewaySettings(BaseSettings):
    """Validated settings for the gateway client runtime."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="RELAYCORD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Identity
    token: str = Field(
        default="",
        description="Bot token; the 'Bot ' prefix is added when missing.",
        repr=False,
    )
    intents: NonNegativeInt = Field(
        default=0,
        description="Gateway intents bitfield sent in identify.",
    )
    shard_count: PositiveInt | Literal["auto"] = Field(
        default=1,
        description="Total number of shards, or 'auto' to use the recommended count.",
    )
    shard_ids: list[NonNegativeInt] | None = Field(
        default=None,
        description="Subset of shard ids run by this process (all when unset).",
    )
    large_threshold: PositiveInt = Field(
        default=50,
        description="Member count above which offline members are not sent in guild payloads.",
    )
    client_name: str = Field(
        default="relaycord",
        description="Library name reported in identify connection properties.",
    )

    # Endpoints
    gateway_url: AnyUrl | None = Field(
        default=None,
        description="Gateway websocket URL; discovered through GET /gateway/bot when unset.",
    )
    api_base_url: AnyUrl = Field(
        default="https://discord.com/api/v10",
        description="REST API base URL.",
    )
    api_version: PositiveInt = Field(
        default=10,
        description="Gateway protocol version appended to the websocket URL.",
    )
    transport: Literal["dummy", "websocket"] = Field(
        default="websocket",
        description="Gateway transport implementation to use.",
    )

    # Session timeouts
    connect_timeout_seconds: PositiveFloat = Field(
        default=10.0,
        description="Bound on opening the gateway transport.",
    )
    hello_timeout_seconds: PositiveFloat = Field(
        default=10.0,
        description="Bound on receiving HELLO after the transport opens.",
    )
    identify_timeout_seconds: PositiveFloat = Field(
        default=30.0,
        description="Bound on receiving READY after identify is sent.",
    )
    resume_timeout_seconds: PositiveFloat = Field(
        default=30.0,
        description="Bound on receiving RESUMED after resume is sent.",
    )
    close_timeout_seconds: PositiveFloat = Field(
        default=5.0,
        description="Bound on the close handshake during shutdown.",
    )
    heartbeat_missed_ack_limit: PositiveInt = Field(
        default=1,
        description="Consecutive unacknowledged heartbeats that mark the connection as a zombie.",
    )

    # Reconnect policy
    reconnect_base_delay_seconds: float = Field(
        default=1.0,
        description="Base delay for reconnection backoff.",
    )
    reconnect_max_delay_seconds: float = Field(
        default=60.0,
        description="Maximum delay for reconnection backoff.",
    )
    reconnect_jitter: float = Field(
        default=0.2,
        description="Jitter factor applied to reconnection backoff (0.0-1.0).",
    )
    reconnect_max_attempts: NonNegativeInt = Field(
        default=0,
        description="Consecutive failed reconnects before giving up (0 retries forever).",
    )

    # Identify pacing
    identify_interval_seconds: PositiveFloat = Field(
        default=5.0,
        description="Minimum spacing between identifies sharing a rate-limit key.",
    )
    identify_max_concurrency: PositiveInt = Field(
        default=1,
        description="Concurrent identify slots; replaced by the server value when discovered.",
    )

    # REST rate limiting
    http_timeout_seconds: PositiveFloat = Field(
        default=30.0,
        description="Timeout applied to each REST request.",
    )
    global_rate_limit: NonNegativeInt = Field(
        default=50,
        description="Requests per second allowed across all routes (0 disables the local budget).",
    )
    ratelimit_grace_seconds: PositiveFloat = Field(
        default=300.0,
        description="Seconds after reset before an idle bucket is evicted.",
    )
    max_ratelimit_retries: NonNegativeInt = Field(
        default=5,
        description="Times a request is retried after 429 before RateLimited is raised.",
    )
    request_worker_idle_seconds: PositiveFloat = Field(
        default=60.0,
        description="Idle time after which a route worker task exits.",
    )

    # Event dispatch
    dispatch_queue_max: NonNegativeInt = Field(
        default=0,
        description="Per-shard event queue bound (0 is unbounded).",
    )
    dispatch_queue_overflow: Literal["block", "drop_new", "drop_oldest"] = Field(
        default="block",
        description="Policy for a full event queue; block waits for room until the dispatcher closes.",
    )
    dispatch_timeout_seconds: float = Field(
        default=0,
        description="Per-handler timeout (0 disables).",
    )
    dispatch_max_failures: NonNegativeInt = Field(
        default=0,
        description="Consecutive handler failures before cooldown (0 disables).",
    )
    dispatch_failure_cooldown_seconds: float = Field(
        default=0,
        description="Cooldown applied to a failing handler.",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the bot process.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("reconnect_jitter")
    @classmethod
    def _clamp_jitter(cls, value: float) -> float:
        return min(max(value, 0.0), 1.0)

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @property
    def authorization(self) -> str:
        """Token formatted for the Authorization header and identify payload."""

        token = self.token.strip()
        if token and not token.startswith("Bot "):
            token = f"Bot {token}"
        return token

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[GatewaySettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._yaml_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _yaml_settings_source(settings_cls: type[GatewaySettings] | None = None) -> Dict[str, Any]:
        candidates: Iterable[Path] = GatewaySettings._resolve_candidate_paths()

        for path in candidates:
            data = GatewaySettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("RELAYCORD_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read relaycord config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid relaycord config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Relaycord config file {path} must contain a mapping at top level.")
        return raw


@lru_cache()
def get_settings() -> GatewaySettings:
    """Return memoized client settings."""

    return GatewaySettings()
