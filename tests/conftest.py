import pytest

from analytics.app import create_app
from analytics.db import Storage
from analytics.identity import HashIdentity
from analytics.recorder import EventRecorder, RequestMetadata

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def storage(tmp_path):
    store = Storage(str(tmp_path / "events.sqlite3"))
    yield store
    store.close()


@pytest.fixture
def add_event(storage):
    """Write a raw row with full control over key, bot flag and timestamp."""
    def _add(path="/", created_at=0, visitor_key="v1", event_type="page_view",
             event_name=None, referrer=None, is_bot=0, country=None,
             browser=None, os=None, device_type=None):
        storage.execute(
            """
            INSERT INTO analytics_events (
                visitor_key, event_type, event_name, path, referrer,
                country, browser, os, device_type, is_bot, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (visitor_key, event_type, event_name, path, referrer,
             country, browser, os, device_type, is_bot, created_at),
        )
    return _add


@pytest.fixture
def recorder(storage):
    return EventRecorder(storage, HashIdentity("test-salt"), clock=lambda: 1_700_000_000_000)


@pytest.fixture
def meta():
    return RequestMetadata(ip="203.0.113.77", user_agent=CHROME_UA,
                           referrer="https://news.example.com/story", country="DE")


@pytest.fixture
def make_app(tmp_path):
    def _make(**overrides):
        config = {
            "TESTING": True,
            "DB_PATH": str(tmp_path / "app.sqlite3"),
            "SALT": "test-salt",
            "IDENTITY": "hash",
            "DASH_TOKEN": "dash-secret",
            "ROLLUP_TOKEN": "",
            "GEOIP_DB_PATH": str(tmp_path / "missing.mmdb"),
            "CORS_ALLOW_ORIGINS": ["https://site.example"],
            "TRACK_PAGE_VIEWS": True,
        }
        config.update(overrides)
        app = create_app(config)

        @app.route("/blog")
        def blog():
            return "<h1>blog</h1>"

        @app.route("/blog", methods=["POST"], endpoint="blog_post")
        def blog_post():
            return "ok"

        return app
    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def event_rows(app):
    def _rows():
        storage = app.extensions["analytics"].storage
        return storage.fetch_all("SELECT * FROM analytics_events ORDER BY id")
    return _rows
