"""
Read-only aggregates over analytics_events for the dashboard.

Every query filters on created_at strictly greater than the range start, and
human metrics skip rows flagged as bots (NULL is_bot counts as human, which
covers rows written before the column existed).
"""
import logging
import sqlite3

from .db import now_ms

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

ACTIVE_WINDOW_MS = 5 * MINUTE_MS

RANGES = {
    "today": DAY_MS,
    "7d": 7 * DAY_MS,
    "30d": 30 * DAY_MS,
    "all": None,
}

MAX_LIMIT = 100

HUMAN = "(is_bot = 0 OR is_bot IS NULL)"
BOT = "is_bot = 1"

# dimension name -> column
DIMENSIONS = {
    "browser": "browser",
    "os": "os",
    "device": "device_type",
    "country": "country",
}


class InvalidQuery(ValueError):
    pass


def range_start(range_name: str, now: int | None = None) -> int:
    """Lower bound (exclusive, epoch ms) for a named range."""
    if range_name not in RANGES:
        raise InvalidQuery(f"unknown range {range_name!r}, expected one of {', '.join(RANGES)}")
    span = RANGES[range_name]
    if span is None:
        return 0
    if now is None:
        now = now_ms()
    return now - span


def check_limit(limit) -> int:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise InvalidQuery("limit must be an integer")
    if not 1 <= limit <= MAX_LIMIT:
        raise InvalidQuery(f"limit must be between 1 and {MAX_LIMIT}")
    return limit


def empty_active_visitors() -> dict:
    return {
        "pages": [],
        "total": 0,
        "bots": 0,
        "countries": [],
        "browsers": [],
        "devices": [],
        "referrers": [],
    }


def empty_active_on_path() -> dict:
    return {"count": 0, "bots": 0, "countries": []}


class StatsQueries:
    def __init__(self, storage, report_bots: bool = True, clock=now_ms):
        self.storage = storage
        self.report_bots = report_bots
        self.clock = clock

    def _now(self, now):
        return self.clock() if now is None else now

    # -------------------------------------------------------------------------
    # Range queries
    # -------------------------------------------------------------------------
    def overview(self, range_name: str, now: int | None = None) -> dict:
        now = self._now(now)
        since = range_start(range_name, now)
        active_since = now - ACTIVE_WINDOW_MS

        totals = self.storage.execute(
            f"""
            SELECT COUNT(*) AS total_views, COUNT(DISTINCT visitor_key) AS unique_visitors
            FROM analytics_events
            WHERE event_type = 'page_view' AND created_at > ? AND {HUMAN}
            """,
            (since,),
        ).fetchone()

        active_now = self.storage.fetch_value(
            f"""
            SELECT COUNT(DISTINCT visitor_key) FROM analytics_events
            WHERE created_at > ? AND {HUMAN}
            """,
            (active_since,),
        )

        result = {
            "total_views": totals["total_views"],
            "unique_visitors": totals["unique_visitors"],
            "active_now": active_now,
        }
        if self.report_bots:
            result["bots"] = self.storage.fetch_value(
                f"""
                SELECT COUNT(DISTINCT visitor_key) FROM analytics_events
                WHERE created_at > ? AND {BOT}
                """,
                (active_since,),
            )
        return result

    def top_pages(self, range_name: str, limit: int = 10, now: int | None = None) -> list[dict]:
        since = range_start(range_name, self._now(now))
        return self.storage.fetch_all(
            f"""
            SELECT path, COUNT(*) AS views, COUNT(DISTINCT visitor_key) AS unique_visitors
            FROM analytics_events
            WHERE event_type = 'page_view' AND created_at > ? AND {HUMAN}
            GROUP BY path
            ORDER BY views DESC, path ASC
            LIMIT ?
            """,
            (since, check_limit(limit)),
        )

    def referrers(self, range_name: str, limit: int = 10, now: int | None = None) -> list[dict]:
        since = range_start(range_name, self._now(now))
        return self.storage.fetch_all(
            f"""
            SELECT referrer_domain(referrer) AS source, COUNT(*) AS visits
            FROM analytics_events
            WHERE event_type = 'page_view' AND created_at > ? AND {HUMAN}
            GROUP BY source
            ORDER BY visits DESC, source ASC
            LIMIT ?
            """,
            (since, check_limit(limit)),
        )

    def custom_events(self, range_name: str, limit: int = 10, now: int | None = None) -> list[dict]:
        since = range_start(range_name, self._now(now))
        return self.storage.fetch_all(
            f"""
            SELECT event_name, COUNT(*) AS count
            FROM analytics_events
            WHERE event_type = 'custom' AND created_at > ? AND {HUMAN}
            GROUP BY event_name
            ORDER BY count DESC, event_name ASC
            LIMIT ?
            """,
            (since, check_limit(limit)),
        )

    def visitor_timeline(self, range_name: str, now: int | None = None) -> list[dict]:
        """Hourly buckets for today, daily otherwise. Buckets are UTC."""
        since = range_start(range_name, self._now(now))
        bucket = "%Y-%m-%d %H:00" if range_name == "today" else "%Y-%m-%d"
        return self.storage.fetch_all(
            f"""
            SELECT strftime(?, created_at / 1000, 'unixepoch') AS period,
                   COUNT(DISTINCT visitor_key) AS visitors,
                   COUNT(*) AS page_views
            FROM analytics_events
            WHERE event_type = 'page_view' AND created_at > ? AND {HUMAN}
            GROUP BY period
            ORDER BY period ASC
            """,
            (bucket, since),
        )

    def recent_events(self, limit: int = 20) -> list[dict]:
        rows = self.storage.fetch_all(
            """
            SELECT path, event_type, event_name, browser, os, device_type, country, is_bot, created_at
            FROM analytics_events
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (check_limit(limit),),
        )
        for row in rows:
            row["is_bot"] = bool(row["is_bot"])
        return rows

    def breakdown(self, dimension: str, range_name: str, limit: int | None = None,
                  now: int | None = None) -> list[dict]:
        """Distinct human visitors per browser / os / device / country."""
        if dimension not in DIMENSIONS:
            raise InvalidQuery(f"unknown dimension {dimension!r}")
        column = DIMENSIONS[dimension]
        since = range_start(range_name, self._now(now))

        sql = f"""
            SELECT {column} AS name, COUNT(DISTINCT visitor_key) AS count
            FROM analytics_events
            WHERE created_at > ? AND {HUMAN} AND {column} IS NOT NULL
            GROUP BY {column}
            ORDER BY count DESC, name ASC
        """
        params = [since]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(check_limit(limit))
        return self.storage.fetch_all(sql, params)

    def browsers(self, range_name: str, limit: int = 10, now: int | None = None) -> list[dict]:
        return self.breakdown("browser", range_name, limit, now)

    def operating_systems(self, range_name: str, limit: int = 10, now: int | None = None) -> list[dict]:
        return self.breakdown("os", range_name, limit, now)

    def devices(self, range_name: str, now: int | None = None) -> list[dict]:
        return self.breakdown("device", range_name, None, now)

    def countries(self, range_name: str, limit: int = 10, now: int | None = None) -> list[dict]:
        rows = self.breakdown("country", range_name, limit, now)
        return [{"country": row["name"], "count": row["count"]} for row in rows]

    # -------------------------------------------------------------------------
    # Live widgets (never raise on storage errors)
    # -------------------------------------------------------------------------
    def active_visitors(self, limit: int = 10, window_ms: int = ACTIVE_WINDOW_MS,
                        now: int | None = None) -> dict:
        limit = check_limit(limit)
        cutoff = self._now(now) - window_ms
        try:
            return self._active_visitors(cutoff, limit)
        except sqlite3.Error:
            logger.exception("active visitors query failed")
            return empty_active_visitors()

    def _active_visitors(self, cutoff: int, limit: int) -> dict:
        def top(column, top_n, alias="name"):
            return self.storage.fetch_all(
                f"""
                SELECT {column} AS {alias}, COUNT(DISTINCT visitor_key) AS count
                FROM analytics_events
                WHERE created_at > ? AND {HUMAN} AND {column} IS NOT NULL
                GROUP BY {column}
                ORDER BY count DESC, {alias} ASC
                LIMIT ?
                """,
                (cutoff, top_n),
            )

        return {
            "pages": top("path", limit, alias="path"),
            "total": self.storage.fetch_value(
                f"SELECT COUNT(DISTINCT visitor_key) FROM analytics_events WHERE created_at > ? AND {HUMAN}",
                (cutoff,),
            ),
            "bots": self.storage.fetch_value(
                f"SELECT COUNT(DISTINCT visitor_key) FROM analytics_events WHERE created_at > ? AND {BOT}",
                (cutoff,),
            ),
            "countries": top("country", 5, alias="country"),
            "browsers": top("browser", 5),
            "devices": top("device_type", 5),
            "referrers": self.storage.fetch_all(
                f"""
                SELECT referrer_domain(referrer) AS name, COUNT(DISTINCT visitor_key) AS count
                FROM analytics_events
                WHERE created_at > ? AND {HUMAN}
                GROUP BY name
                ORDER BY count DESC, name ASC
                LIMIT 5
                """,
                (cutoff,),
            ),
        }

    def active_on_path(self, path: str, window_ms: int = ACTIVE_WINDOW_MS,
                       now: int | None = None) -> dict:
        cutoff = self._now(now) - window_ms
        try:
            count = self.storage.fetch_value(
                f"""
                SELECT COUNT(DISTINCT visitor_key) FROM analytics_events
                WHERE path = ? AND created_at > ? AND {HUMAN}
                """,
                (path, cutoff),
            )
            bots = self.storage.fetch_value(
                f"""
                SELECT COUNT(DISTINCT visitor_key) FROM analytics_events
                WHERE path = ? AND created_at > ? AND {BOT}
                """,
                (path, cutoff),
            )
            countries = self.storage.fetch_all(
                f"""
                SELECT country, COUNT(DISTINCT visitor_key) AS count
                FROM analytics_events
                WHERE path = ? AND created_at > ? AND {HUMAN} AND country IS NOT NULL
                GROUP BY country
                ORDER BY count DESC, country ASC
                LIMIT 5
                """,
                (path, cutoff),
            )
        except sqlite3.Error:
            logger.exception("active-on-path query failed for %s", path)
            return empty_active_on_path()
        return {"count": count, "bots": bots, "countries": countries}
