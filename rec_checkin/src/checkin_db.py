import os
import socket
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from urllib.parse import urlparse, unquote

from loguru import logger

from checkin_config import CheckinSettings
from checkin_errors import ConfigurationError, StorageError


try:
    import psycopg
    from psycopg.rows import dict_row as _pg_dict_row
    _PG_AVAILABLE = True
except ImportError:
    psycopg = None
    _pg_dict_row = None
    _PG_AVAILABLE = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed width so stored timestamps compare correctly as text
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value))
        except ValueError:
            ts = datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class CheckinDatabase:
    """Connection factory and schema owner for the kiosk's local store.

    SQLite is the default embedded store; when ``DATABASE_URL`` is configured
    the same tables live in Postgres and are reached through psycopg. Every
    operation opens its own short-lived connection.
    """

    def __init__(self, settings: CheckinSettings):
        self.settings = settings
        self.database_url = settings.database_url
        self.db_path = settings.db_path

    def using_postgres(self) -> bool:
        if self.database_url:
            return True
        if self.settings.allow_sqlite:
            return False
        raise ConfigurationError(
            "DATABASE_URL is not configured. Set CHECKIN_ALLOW_SQLITE=1 to allow the SQLite fallback."
        )

    def sql(self, query: str) -> str:
        # Queries are written with qmark placeholders; psycopg wants %s.
        if self.using_postgres():
            return query.replace("?", "%s")
        return query

    def _connect_sqlite(self) -> sqlite3.Connection:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        con = sqlite3.connect(self.db_path, timeout=10)
        con.row_factory = sqlite3.Row
        return con

    def _connect_postgres(self):
        if not _PG_AVAILABLE:
            raise ConfigurationError("DATABASE_URL is set but psycopg is not installed.")
        dsn = self.database_url.strip()
        if not (dsn.startswith("postgres://") or dsn.startswith("postgresql://")):
            return psycopg.connect(dsn, row_factory=_pg_dict_row, connect_timeout=10)
        u = urlparse(dsn)
        host = u.hostname or ""
        kwargs = {
            "host": host,
            "port": u.port or 5432,
            "dbname": (u.path or "/postgres").lstrip("/") or "postgres",
            "sslmode": "require",
            "row_factory": _pg_dict_row,
            "connect_timeout": 10,
        }
        for kv in (u.query or "").split("&"):
            k, _, v = kv.partition("=")
            if k == "sslmode" and v:
                kwargs["sslmode"] = v
        # Prefer IPv4 while keeping the hostname for TLS/SNI
        try:
            infos = socket.getaddrinfo(host, None, socket.AF_INET, socket.SOCK_STREAM)
            if infos:
                kwargs["hostaddr"] = infos[0][4][0]
        except OSError:
            pass
        if u.username:
            kwargs["user"] = unquote(u.username)
        if u.password:
            kwargs["password"] = unquote(u.password)
        return psycopg.connect(**kwargs)

    def connect(self):
        try:
            return self._connect_postgres() if self.using_postgres() else self._connect_sqlite()
        except ConfigurationError:
            raise
        except Exception as exc:
            raise StorageError(f"Could not open database: {exc}") from exc

    @contextmanager
    def cursor(self, commit: bool = False):
        con = self.connect()
        try:
            cur = con.cursor()
            yield cur
            if commit:
                con.commit()
        except (sqlite3.Error, *self._pg_errors()) as exc:
            con.rollback()
            raise StorageError(str(exc)) from exc
        finally:
            con.close()

    @staticmethod
    def _pg_errors() -> tuple:
        return (psycopg.Error,) if _PG_AVAILABLE else ()

    def execute(self, query: str, params: tuple = ()) -> int:
        with self.cursor(commit=True) as cur:
            cur.execute(self.sql(query), params)
            return cur.rowcount

    def insert(self, query: str, params: tuple = ()) -> int:
        """Run an INSERT and return the new row id on either backend."""
        with self.cursor(commit=True) as cur:
            if self.using_postgres():
                cur.execute(self.sql(query) + " RETURNING id", params)
                return row_value(cur.fetchone(), "id")
            cur.execute(query, params)
            return cur.lastrowid

    def fetchone(self, query: str, params: tuple = ()) -> dict | None:
        with self.cursor() as cur:
            cur.execute(self.sql(query), params)
            row = cur.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self, query: str, params: tuple = ()) -> list[dict]:
        with self.cursor() as cur:
            cur.execute(self.sql(query), params)
            return [dict(r) for r in cur.fetchall()]

    def init_db(self):
        pk = "BIGSERIAL PRIMARY KEY" if self.using_postgres() else "INTEGER PRIMARY KEY AUTOINCREMENT"
        statements = [
            """
            CREATE TABLE IF NOT EXISTS membership_cache (
                customer_id TEXT PRIMARY KEY,
                has_membership INTEGER NOT NULL DEFAULT 0,
                segment_ids TEXT NOT NULL DEFAULT '[]',
                given_name TEXT NOT NULL DEFAULT '',
                family_name TEXT NOT NULL DEFAULT '',
                email TEXT NOT NULL DEFAULT '',
                phone TEXT NOT NULL DEFAULT '',
                reference_id TEXT NOT NULL DEFAULT '',
                address_line1 TEXT NOT NULL DEFAULT '',
                locality TEXT NOT NULL DEFAULT '',
                postal_code TEXT NOT NULL DEFAULT '',
                last_verified_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_membership_cache_last_verified ON membership_cache(last_verified_at)",
            f"""
            CREATE TABLE IF NOT EXISTS customer_segments (
                id {pk},
                segment_id TEXT NOT NULL UNIQUE,
                display_name TEXT NOT NULL,
                sort_order INTEGER NOT NULL DEFAULT 0
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS checkin_queue (
                id {pk},
                customer_id TEXT NOT NULL,
                order_id TEXT NOT NULL,
                guest_count INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','synced','failed')),
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at TEXT NOT NULL,
                synced_at TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_checkin_queue_status ON checkin_queue(status)",
            "CREATE INDEX IF NOT EXISTS idx_checkin_queue_created_at ON checkin_queue(created_at)",
            f"""
            CREATE TABLE IF NOT EXISTS checkin_log (
                id {pk},
                customer_id TEXT NOT NULL,
                order_id TEXT,
                guest_count INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                synced_to_external INTEGER NOT NULL DEFAULT 0
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_checkin_log_timestamp ON checkin_log(timestamp)",
            "CREATE INDEX IF NOT EXISTS idx_checkin_log_customer_id ON checkin_log(customer_id)",
            "CREATE INDEX IF NOT EXISTS idx_checkin_log_order_id ON checkin_log(order_id)",
        ]
        with self.cursor(commit=True) as cur:
            for statement in statements:
                cur.execute(statement)
        logger.debug("Check-in schema ready", postgres=self.using_postgres())


def row_value(row, key, index=0):
    if row is None:
        return None
    if isinstance(row, dict):
        return row.get(key)
    if hasattr(row, "keys") and key in row.keys():
        return row[key]
    if isinstance(row, (list, tuple)):
        try:
            return row[index]
        except IndexError:
            return None
    return None
