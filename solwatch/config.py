"""Runtime settings for the holdings service.

Settings are read from environment variables (see :data:`ENV_FIELDS`) and
validated with :class:`Settings`.  Durations are expressed in seconds.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from .holdings_cache import DEFAULT_SOURCE_LABELS

# Floor applied to the fallback provider sweep interval.
HELIUS_SWEEP_FLOOR = 60.0
CLEANUP_INTERVAL_FLOOR = 5.0


class SettingsError(ValueError):
    """Raised when the environment holds an invalid setting."""


ENV_FIELDS: Dict[str, str] = {
    "helius_key": "HELIUS_KEY",
    "helius_rpc_url": "HELIUS_RPC_URL",
    "helius_api_url": "HELIUS_API_URL",
    "jup_base_url": "JUP_BASE_URL",
    "jup_key": "JUP_KEY",
    "jup_holdings_path": "JUP_HOLDINGS_PATH",
    "jup_refresh_enabled": "JUP_REFRESH_ENABLED",
    "jup_refresh_batch_size": "JUP_REFRESH_BATCH_SIZE",
    "jup_refresh_rps": "JUP_REFRESH_RPS",
    "jup_holdings_rps": "JUP_HOLDINGS_RPS",
    "helius_refresh_rps": "HELIUS_REFRESH_RPS",
    "helius_refresh_interval": "HELIUS_REFRESH_INTERVAL",
    "jup_backoff": "JUP_BACKOFF_SEC",
    "helius_backoff": "HELIUS_BACKOFF_SEC",
    "mint_min_total": "MINT_MIN_TOTAL_FOR_REFRESH",
    "cleanup_retention": "MINT_CLEANUP_UNDER_TOTAL",
    "cleanup_interval": "MINT_CLEANUP_INTERVAL",
    "flush_size": "BATCH_FLUSH_SIZE",
    "flush_delay": "BATCH_FLUSH_DELAY",
    "enrich_batch_size": "ENRICH_BATCH_SIZE",
    "event_buffer_size": "EVENT_BUFFER_SIZE",
    "heartbeat_interval": "SSE_HEARTBEAT_INTERVAL",
    "refresh_summary_interval": "LOG_REFRESH_SUMMARY_INTERVAL",
    "log_holdings_tick": "LOG_HOLDINGS_TICK",
    "log_api_responses": "LOG_API_RESPONSES",
    "log_dir": "LOG_DIR",
    "database_url": "DATABASE_URL",
    "host": "HOST",
    "port": "PORT",
    "http_max_retries": "HTTP_MAX_RETRIES",
    "http_retry_backoff": "HTTP_RETRY_BACKOFF",
    "http_timeout": "HTTP_TIMEOUT_SEC",
}


class Settings(BaseModel):
    """Validated service configuration."""

    model_config = ConfigDict(frozen=True)

    helius_key: Optional[str] = None
    helius_rpc_url: str = "https://mainnet.helius-rpc.com"
    helius_api_url: str = "https://api.helius.xyz"
    jup_base_url: str = "https://lite-api.jup.ag"
    jup_key: Optional[str] = None
    jup_holdings_path: str = "/ultra/v1/holdings"

    jup_refresh_enabled: bool = True
    jup_refresh_batch_size: int = 50
    jup_refresh_rps: int = 3
    jup_holdings_rps: int = 3
    helius_refresh_rps: int = 8
    helius_refresh_interval: float = 15.0
    jup_backoff: float = 30.0
    helius_backoff: float = 60.0

    mint_min_total: float = 0.0
    cleanup_retention: float = 600.0
    cleanup_interval: float = 30.0

    flush_size: int = 20
    flush_delay: float = 10.0
    enrich_batch_size: int = 10

    event_buffer_size: int = 1000
    heartbeat_interval: float = 15.0
    refresh_summary_interval: float = 10.0

    log_holdings_tick: bool = False
    log_api_responses: bool = False
    log_dir: str = "logs"

    database_url: str = "sqlite:///solwatch.db"
    host: str = "0.0.0.0"
    port: int = 3000

    http_max_retries: int = 2
    http_retry_backoff: float = 0.5
    http_timeout: float = 15.0

    source_labels: Tuple[Tuple[str, str], ...] = DEFAULT_SOURCE_LABELS

    @field_validator(
        "jup_refresh_batch_size",
        "flush_size",
        "enrich_batch_size",
        "event_buffer_size",
    )
    def _positive_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jup_refresh_rps", "jup_holdings_rps", "helius_refresh_rps", "http_max_retries")
    def _non_negative_count(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator(
        "helius_refresh_interval",
        "jup_backoff",
        "helius_backoff",
        "mint_min_total",
        "cleanup_retention",
        "cleanup_interval",
        "flush_delay",
        "heartbeat_interval",
        "refresh_summary_interval",
        "http_retry_backoff",
        "http_timeout",
    )
    def _non_negative_number(cls, value: float) -> float:
        if value != value or value < 0:
            raise ValueError("must be a non-negative number")
        return value

    @field_validator("port")
    def _valid_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("port out of range")
        return value

    @field_validator("helius_rpc_url", "helius_api_url", "jup_base_url")
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _holdings_path(self) -> "Settings":
        if not self.jup_holdings_path.startswith("/"):
            raise ValueError("JUP_HOLDINGS_PATH must start with '/'")
        return self

    # derived values -----------------------------------------------------
    @property
    def helius_sweep_interval(self) -> float:
        return max(self.helius_refresh_interval, HELIUS_SWEEP_FLOOR)

    @property
    def sweeper_interval(self) -> float:
        return max(self.cleanup_interval, CLEANUP_INTERVAL_FLOOR)

    @property
    def async_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///"):
            url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url


def _env_values(env: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for field_name, env_name in ENV_FIELDS.items():
        raw = env.get(env_name)
        if raw is None or str(raw).strip() == "":
            continue
        values[field_name] = str(raw).strip()
    return values


def load_settings(env: Mapping[str, str] | None = None, **overrides: Any) -> Settings:
    """Build :class:`Settings` from ``env`` (default ``os.environ``).

    Keyword ``overrides`` take precedence over the environment.
    """

    source = os.environ if env is None else env
    values = _env_values(source)
    values.update(overrides)
    try:
        return Settings(**values)
    except ValidationError as exc:
        errors: List[str] = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            name = ENV_FIELDS.get(loc, loc)
            errors.append(f"{name}: {err.get('msg')}")
        raise SettingsError("; ".join(errors) or str(exc)) from exc


__all__ = [
    "ENV_FIELDS",
    "HELIUS_SWEEP_FLOOR",
    "CLEANUP_INTERVAL_FLOOR",
    "Settings",
    "SettingsError",
    "load_settings",
]
