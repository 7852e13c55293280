import os
from dataclasses import dataclass, field, replace


_TRUTHY = {"1", "true", "yes", "on"}


def env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str) -> str | None:
    value = (os.environ.get(name) or "").strip()
    return value or None


def default_db_path() -> str:
    here = os.path.dirname(os.path.abspath(__file__))
    return os.path.join(os.path.dirname(here), "data", "checkin.sqlite3")


@dataclass(frozen=True)
class CheckinSettings:
    database_url: str | None = None
    allow_sqlite: bool = True
    db_path: str = field(default_factory=default_db_path)

    cache_ttl_hours: float = 24.0
    refresh_age_hours: float = 168.0

    bulk_concurrency: int = 5
    bulk_rate_limit_ms: int = 1000
    bulk_request_delay_ms: int = 100
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000

    checkin_catalog_item_id: str | None = None
    checkin_variant_id: str | None = None

    queue_max_sync_attempts: int = 10
    history_lookback_days: int = 365

    square_api_url: str = "https://connect.squareup.com/v2"
    square_access_token: str | None = None
    square_api_version: str = "2024-10-17"
    commerce_timeout_seconds: float = 10.0
    demo_mode: bool = False

    admin_pin: str | None = None
    session_secret: str = "dev-secret-change-me"

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "CheckinSettings":
        return cls(
            database_url=_env_str("DATABASE_URL"),
            allow_sqlite=env_flag("CHECKIN_ALLOW_SQLITE", "1"),
            db_path=_env_str("CHECKIN_DB_PATH") or default_db_path(),
            cache_ttl_hours=_env_float("CHECKIN_CACHE_TTL_HOURS", 24.0),
            refresh_age_hours=_env_float("CHECKIN_REFRESH_AGE_HOURS", 168.0),
            bulk_concurrency=_env_int("CHECKIN_BULK_CONCURRENCY", 5),
            bulk_rate_limit_ms=_env_int("CHECKIN_BULK_RATE_LIMIT_MS", 1000),
            bulk_request_delay_ms=_env_int("CHECKIN_BULK_REQUEST_DELAY_MS", 100),
            retry_max_attempts=_env_int("CHECKIN_RETRY_MAX_ATTEMPTS", 3),
            retry_base_delay_ms=_env_int("CHECKIN_RETRY_BASE_DELAY_MS", 1000),
            checkin_catalog_item_id=_env_str("CHECKIN_CATALOG_ITEM_ID"),
            checkin_variant_id=_env_str("CHECKIN_VARIANT_ID"),
            queue_max_sync_attempts=_env_int("CHECKIN_QUEUE_MAX_SYNC_ATTEMPTS", 10),
            history_lookback_days=_env_int("CHECKIN_HISTORY_LOOKBACK_DAYS", 365),
            square_api_url=_env_str("SQUARE_API_URL") or "https://connect.squareup.com/v2",
            square_access_token=_env_str("SQUARE_ACCESS_TOKEN"),
            square_api_version=_env_str("SQUARE_API_VERSION") or "2024-10-17",
            commerce_timeout_seconds=_env_float("SQUARE_TIMEOUT_SECONDS", 10.0),
            demo_mode=env_flag("CHECKIN_DEMO_MODE"),
            admin_pin=_env_str("CHECKIN_ADMIN_PIN"),
            session_secret=os.environ.get("CHECKIN_SESSION_SECRET", "dev-secret-change-me"),
            log_level=(_env_str("CHECKIN_LOG_LEVEL") or "INFO").upper(),
            log_json=env_flag("CHECKIN_LOG_JSON"),
        )

    def with_overrides(self, **changes) -> "CheckinSettings":
        return replace(self, **changes)
