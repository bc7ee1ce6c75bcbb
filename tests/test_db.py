import logging
import sqlite3

import pytest

from analytics.db import ADDED_COLUMNS, Storage

FIRST_RELEASE_SCHEMA = """
CREATE TABLE analytics_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    visitor_key TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_name TEXT,
    path TEXT NOT NULL,
    referrer TEXT,
    user_agent TEXT,
    ip TEXT,
    created_at INTEGER NOT NULL
);
"""


def columns(storage):
    return [r["name"] for r in storage.fetch_all("PRAGMA table_info(analytics_events)")]


def test_fresh_database_has_full_schema(tmp_path, caplog):
    with caplog.at_level(logging.INFO, logger="analytics.db"):
        store = Storage(str(tmp_path / "fresh.sqlite3"))
    try:
        assert "adding column" not in caplog.text
        for coldef in ADDED_COLUMNS:
            assert coldef.split()[0] in columns(store)
    finally:
        store.close()


def test_first_release_database_is_upgraded(tmp_path, caplog):
    path = str(tmp_path / "old.sqlite3")
    conn = sqlite3.connect(path)
    conn.execute(FIRST_RELEASE_SCHEMA)
    conn.execute(
        "INSERT INTO analytics_events (visitor_key, event_type, path, created_at) "
        "VALUES ('old-key', 'page_view', '/old', 1)"
    )
    conn.commit()
    conn.close()

    with caplog.at_level(logging.INFO, logger="analytics.db"):
        store = Storage(path)
    try:
        assert caplog.text.count("adding column") == len(ADDED_COLUMNS)

        [row] = store.fetch_all("SELECT * FROM analytics_events")
        assert row["visitor_key"] == "old-key"
        assert row["path"] == "/old"
        for coldef in ADDED_COLUMNS:
            assert row[coldef.split()[0]] is None

        caplog.clear()
        store.ensure_schema()
        assert "adding column" not in caplog.text
    finally:
        store.close()


def test_transaction_commits(storage):
    with storage.transaction() as conn:
        conn.execute("INSERT INTO analytics_all_time (path, page_views, unique_visitors) VALUES ('/', 1, 1)")
    assert storage.fetch_value("SELECT COUNT(*) FROM analytics_all_time") == 1


def test_transaction_rolls_back_on_error(storage):
    with pytest.raises(RuntimeError):
        with storage.transaction() as conn:
            conn.execute("INSERT INTO analytics_all_time (path, page_views, unique_visitors) VALUES ('/', 1, 1)")
            raise RuntimeError("boom")
    assert storage.fetch_value("SELECT COUNT(*) FROM analytics_all_time") == 0

    # the write lock is released again
    storage.execute("INSERT INTO analytics_all_time (path, page_views, unique_visitors) VALUES ('/', 2, 2)")
    assert storage.fetch_value("SELECT page_views FROM analytics_all_time") == 2


def test_in_memory_transaction_uses_shared_connection():
    store = Storage(":memory:")
    try:
        with store.transaction() as conn:
            assert conn is store.conn
            conn.execute("INSERT INTO analytics_yearly (year, path, page_views, unique_visitors) VALUES (2024, '/', 1, 1)")
        assert store.fetch_value("SELECT COUNT(*) FROM analytics_yearly") == 1
    finally:
        store.close()
