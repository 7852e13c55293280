from datetime import timedelta

import pytest

from checkin_config import CheckinSettings
from checkin_db import CheckinDatabase, parse_ts, to_iso
from checkin_errors import ConfigurationError


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CHECKIN_DB_PATH", str(tmp_path / "kiosk.sqlite3"))
    monkeypatch.setenv("CHECKIN_CACHE_TTL_HOURS", "6")
    monkeypatch.setenv("CHECKIN_BULK_CONCURRENCY", "not-a-number")
    monkeypatch.setenv("CHECKIN_DEMO_MODE", "Yes")
    monkeypatch.setenv("CHECKIN_LOG_LEVEL", "debug")
    monkeypatch.setenv("CHECKIN_CATALOG_ITEM_ID", "  ")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    settings = CheckinSettings.from_env()

    assert settings.db_path.endswith("kiosk.sqlite3")
    assert settings.cache_ttl_hours == 6.0
    assert settings.bulk_concurrency == 5
    assert settings.demo_mode is True
    assert settings.log_level == "DEBUG"
    assert settings.checkin_catalog_item_id is None
    assert settings.database_url is None


def test_with_overrides_returns_new_settings():
    base = CheckinSettings()
    changed = base.with_overrides(retry_max_attempts=5)

    assert changed.retry_max_attempts == 5
    assert base.retry_max_attempts == 3


def test_sqlite_can_be_disallowed(tmp_path):
    db = CheckinDatabase(CheckinSettings(db_path=str(tmp_path / "x.sqlite3"), allow_sqlite=False))

    with pytest.raises(ConfigurationError):
        db.init_db()


def test_postgres_placeholders():
    db = CheckinDatabase(CheckinSettings(database_url="postgresql://u:p@localhost/checkin"))

    assert db.sql("SELECT * FROM t WHERE a = ? AND b = ?") == "SELECT * FROM t WHERE a = %s AND b = %s"


def test_init_db_is_repeatable(db):
    db.init_db()

    tables = {r["name"] for r in db.fetchall("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"membership_cache", "customer_segments", "checkin_queue", "checkin_log"} <= tables


def test_timestamps_round_trip_and_sort_as_text(clock):
    early = clock()
    late = early + timedelta(microseconds=1)

    assert parse_ts(to_iso(early)) == early
    assert to_iso(early) < to_iso(late)
    assert parse_ts("2026-06-01 12:00:00").tzinfo is not None
    assert parse_ts("") is None

