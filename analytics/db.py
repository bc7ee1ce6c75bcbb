import logging
import os
import sqlite3
import time
from contextlib import contextmanager

from .privacy import referrer_domain

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


# -----------------------------------------------------------------------------
# Schema
# -----------------------------------------------------------------------------
EVENTS_TABLE = """
CREATE TABLE IF NOT EXISTS analytics_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    visitor_key TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_name TEXT,
    path TEXT NOT NULL,
    referrer TEXT,
    user_agent TEXT,
    ip TEXT,
    country TEXT,
    browser TEXT,
    os TEXT,
    device_type TEXT,
    is_bot INTEGER,
    props TEXT,
    created_at INTEGER NOT NULL
);
"""

ROLLUP_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS analytics_monthly (
        year INTEGER NOT NULL,
        month INTEGER NOT NULL,
        path TEXT NOT NULL,
        page_views INTEGER NOT NULL,
        unique_visitors INTEGER NOT NULL,
        PRIMARY KEY (year, month, path)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS analytics_yearly (
        year INTEGER NOT NULL,
        path TEXT NOT NULL,
        page_views INTEGER NOT NULL,
        unique_visitors INTEGER NOT NULL,
        PRIMARY KEY (year, path)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS analytics_all_time (
        path TEXT PRIMARY KEY,
        page_views INTEGER NOT NULL,
        unique_visitors INTEGER NOT NULL,
        first_view INTEGER,
        last_view INTEGER
    );
    """,
]

# Columns missing from databases created by the first release. Fresh databases
# get them from EVENTS_TABLE; upgraded ones get them here and old rows keep NULL.
ADDED_COLUMNS = [
    "country TEXT",
    "browser TEXT",
    "os TEXT",
    "device_type TEXT",
    "is_bot INTEGER",
    "props TEXT",
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_events_created ON analytics_events (created_at);",
    "CREATE INDEX IF NOT EXISTS idx_events_type_created ON analytics_events (event_type, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_events_path_created ON analytics_events (path, created_at);",
]


class Storage:
    """
    Process-wide handle on the SQLite event store.

    Opened once at startup and shared by every request. The connection runs in
    autocommit mode with WAL journaling, so each statement is its own
    transaction and concurrent writers are serialized by SQLite itself.
    """

    def __init__(self, path: str, timeout: float = 5.0):
        self.path = path
        self.timeout = timeout
        if path != ":memory:":
            parent = os.path.dirname(os.path.abspath(path))
            os.makedirs(parent, exist_ok=True)

        self.conn = self._connect()
        self.conn.execute("PRAGMA journal_mode = WAL;")
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.create_function("referrer_domain", 1, referrer_domain, deterministic=True)
        return conn

    def ensure_schema(self):
        """
        Create tables if missing and add newer columns on upgrade.
        Idempotent; safe to call on every start.
        """
        self.conn.execute(EVENTS_TABLE)
        for coldef in ADDED_COLUMNS:
            colname = coldef.split()[0]
            try:
                self.conn.execute(f"SELECT {colname} FROM analytics_events LIMIT 1;")
            except sqlite3.OperationalError:
                logger.info("adding column analytics_events.%s", colname)
                self.conn.execute(f"ALTER TABLE analytics_events ADD COLUMN {coldef};")

        for ddl in INDEXES + ROLLUP_TABLES:
            self.conn.execute(ddl)

    def execute(self, sql: str, params=()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def fetch_all(self, sql: str, params=()) -> list[dict]:
        return [dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def fetch_value(self, sql: str, params=(), default=0):
        row = self.conn.execute(sql, params).fetchone()
        if row is None or row[0] is None:
            return default
        return row[0]

    def close(self):
        self.conn.close()

    @contextmanager
    def transaction(self):
        """
        All-or-nothing batch of writes on a connection of its own, so statements
        from request threads on the shared connection never join or get rolled
        back with it. An in-memory database has no second connection and uses
        the shared one.
        """
        own = self.path != ":memory:"
        conn = self._connect() if own else self.conn
        try:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")
        finally:
            if own:
                conn.close()
