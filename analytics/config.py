import os

DEFAULT_SALT = "please-change-me-and-keep-secret"
DEFAULT_DASH_TOKEN = "changeme"


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_config() -> dict:
    """
    Read deployment settings from the environment.
    Keys match what create_app() expects in app.config.
    """
    origins = os.environ.get("CORS_ALLOW_ORIGINS", "").split(",")

    return {
        "DB_PATH": os.environ.get("ANALYTICS_DB", os.path.join("data", "analytics.sqlite3")),
        "SALT": os.environ.get("ANALYTICS_SALT", DEFAULT_SALT),
        "IDENTITY": os.environ.get("ANALYTICS_IDENTITY", "hash").strip().lower(),
        "SESSION_COOKIE_NAME": os.environ.get("ANALYTICS_SESSION_COOKIE", "analytics_sid"),
        "SECURE_COOKIES": _env_flag("ANALYTICS_SECURE_COOKIES", "false"),
        "ROLLUP_TOKEN": os.environ.get("ANALYTICS_ROLLUP_TOKEN", ""),
        "DASH_TOKEN": os.environ.get("ANALYTICS_DASH_TOKEN", DEFAULT_DASH_TOKEN),
        "GEOIP_DB_PATH": os.environ.get("GEOIP_DB_PATH", "/geoip/GeoLite2-Country.mmdb"),
        "CORS_ALLOW_ORIGINS": [o.strip() for o in origins if o.strip()],
        "TRACK_PAGE_VIEWS": _env_flag("ANALYTICS_TRACK_PAGE_VIEWS", "true"),
    }
