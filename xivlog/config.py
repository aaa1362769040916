from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Set
from urllib.parse import quote


class ConfigError(RuntimeError):
    pass


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= minimum else default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_optional_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _get_csv(name: str, default_csv: str = "") -> Set[str]:
    raw = os.getenv(name, default_csv)
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return set(parts)


def _clamp_hour(value: int) -> int:
    return max(0, min(23, value))


def database_url_from_pg_env() -> str:
    """Assemble a postgres DSN from the libpq PG* variables, or "" if incomplete."""
    host = (os.getenv("PGHOST") or "").strip()
    user = (os.getenv("PGUSER") or "").strip()
    database = (os.getenv("PGDATABASE") or "").strip()
    if not host or not user or not database:
        return ""
    port = (os.getenv("PGPORT") or "5432").strip()
    password = os.getenv("PGPASSWORD") or ""
    credentials = quote(user, safe="")
    if password:
        credentials += ":" + quote(password, safe="")
    suffix = "?sslmode=require" if (os.getenv("PGSSLMODE") or "").strip() == "require" else ""
    return f"postgresql://{credentials}@{host}:{port}/{database}{suffix}"


DEFAULT_LOKI_BASE_URL = "http://loki.monitoring.svc.cluster.local:3100"
DEFAULT_LOKI_QUERY = '{content="ffxiv", job="ffxiv-dungeon"}'


@dataclass(frozen=True)
class Settings:
    # Database
    database_url: str

    # Log source (Loki query_range)
    loki_base_url: str
    loki_query: str
    loki_query_filter: str
    loki_query_limit: int
    loki_chunk_hard_limit: int
    loki_timeout_seconds: float
    loki_debug: bool

    # Daily window (hours are JST wall clock)
    app_time_zone: str
    aggregation_start_hour_jst: int
    aggregation_end_hour_jst: int

    # Window aggregation job
    aggregation_backfill_hours: int
    aggregation_buffer_minutes: int
    aggregation_max_windows: Optional[int]

    # Roster presence job
    roster_backfill_hours: int
    roster_max_segments: int
    roster_guild_ids: Set[str]

    # Reference data; empty means the definitions bundled with the package
    ability_definitions_dir: str

    # Discord (daily summary posting)
    alert_discord_webhook_url: str
    post_delay_seconds: float

    # General
    environment: str
    log_level: str

    @staticmethod
    def from_env() -> "Settings":
        database_url = (os.getenv("DATABASE_URL") or "").strip() or database_url_from_pg_env()

        return Settings(
            database_url=database_url,
            loki_base_url=(os.getenv("LOKI_BASE_URL") or DEFAULT_LOKI_BASE_URL).strip(),
            loki_query=(os.getenv("LOKI_QUERY") or DEFAULT_LOKI_QUERY).strip(),
            loki_query_filter=(os.getenv("LOKI_QUERY_FILTER") or "").strip(),
            loki_query_limit=_get_int("LOKI_QUERY_LIMIT", 5000, minimum=1),
            loki_chunk_hard_limit=_get_int("LOKI_CHUNK_HARD_LIMIT", 5000, minimum=1),
            loki_timeout_seconds=_get_float("LOKI_TIMEOUT_SECONDS", 30.0),
            loki_debug=_get_bool("LOKI_DEBUG", False),
            app_time_zone=(os.getenv("APP_TIME_ZONE") or "Asia/Tokyo").strip() or "Asia/Tokyo",
            aggregation_start_hour_jst=_clamp_hour(_get_int("AGGREGATION_START_HOUR_JST", 10)),
            aggregation_end_hour_jst=_clamp_hour(_get_int("AGGREGATION_END_HOUR_JST", 10)),
            aggregation_backfill_hours=_get_int("AGGREGATION_BACKFILL_HOURS", 6, minimum=1),
            aggregation_buffer_minutes=_get_int("AGGREGATION_BUFFER_MINUTES", 15),
            aggregation_max_windows=_get_optional_int("AGGREGATION_MAX_WINDOWS"),
            roster_backfill_hours=_get_int("ROSTER_BACKFILL_HOURS", 6, minimum=1),
            roster_max_segments=_get_int("ROSTER_MAX_SEGMENTS", 20, minimum=1),
            roster_guild_ids=_get_csv("ROSTER_GUILD_IDS", ""),
            ability_definitions_dir=(os.getenv("ABILITY_DEFINITIONS_DIR") or "").strip(),
            alert_discord_webhook_url=(os.getenv("ALERT_DISCORD_WEBHOOK_URL") or "").strip(),
            post_delay_seconds=_get_float("POST_DELAY_SECONDS", 0.8),
            environment=(os.getenv("ENVIRONMENT") or os.getenv("ENV") or "stage").strip() or "stage",
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )

    @property
    def loki_page_limit(self) -> int:
        return min(self.loki_query_limit, self.loki_chunk_hard_limit)

    def require_database_url(self) -> str:
        if not self.database_url:
            raise ConfigError("Missing required environment variable: DATABASE_URL (or PGHOST/PGUSER/PGDATABASE)")
        return self.database_url
