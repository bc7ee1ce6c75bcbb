"""
Compact analytics_events into monthly, yearly and all-time page summaries.

Each summary is recomputed from the whole event log and upserted, so a run
never depends on earlier runs and can be repeated at any time. Bots are left
out, same as the dashboard's human metrics.
"""
import hmac
import logging

logger = logging.getLogger(__name__)


class RollupUnauthorized(Exception):
    pass


MONTHLY = """
INSERT OR REPLACE INTO analytics_monthly (year, month, path, page_views, unique_visitors)
SELECT
    CAST(strftime('%Y', created_at / 1000, 'unixepoch') AS INTEGER) AS year,
    CAST(strftime('%m', created_at / 1000, 'unixepoch') AS INTEGER) AS month,
    path,
    COUNT(*) AS page_views,
    COUNT(DISTINCT visitor_key) AS unique_visitors
FROM analytics_events
WHERE event_type = 'page_view' AND (is_bot = 0 OR is_bot IS NULL)
GROUP BY year, month, path
"""

YEARLY = """
INSERT OR REPLACE INTO analytics_yearly (year, path, page_views, unique_visitors)
SELECT
    CAST(strftime('%Y', created_at / 1000, 'unixepoch') AS INTEGER) AS year,
    path,
    COUNT(*) AS page_views,
    COUNT(DISTINCT visitor_key) AS unique_visitors
FROM analytics_events
WHERE event_type = 'page_view' AND (is_bot = 0 OR is_bot IS NULL)
GROUP BY year, path
"""

ALL_TIME = """
INSERT OR REPLACE INTO analytics_all_time (path, page_views, unique_visitors, first_view, last_view)
SELECT
    path,
    COUNT(*) AS page_views,
    COUNT(DISTINCT visitor_key) AS unique_visitors,
    MIN(created_at) AS first_view,
    MAX(created_at) AS last_view
FROM analytics_events
WHERE event_type = 'page_view' AND (is_bot = 0 OR is_bot IS NULL)
GROUP BY path
"""


def check_token(configured: str | None, supplied) -> None:
    """No configured token means the job is open (local/dev use)."""
    if not configured:
        return
    if not isinstance(supplied, str) or not hmac.compare_digest(supplied.encode("utf-8"), configured.encode("utf-8")):
        raise RollupUnauthorized()


def run_rollup(storage, configured_token: str | None = None, token=None) -> dict:
    """
    Returns the number of rows written per summary table.
    Raises RollupUnauthorized before any write when the token doesn't match.
    The three summaries are written in one transaction; a failure leaves all
    of them as they were.
    """
    check_token(configured_token, token)

    results = {}
    with storage.transaction() as conn:
        for name, sql in (("monthly", MONTHLY), ("yearly", YEARLY), ("all_time", ALL_TIME)):
            results[name] = conn.execute(sql).rowcount

    logger.info(
        "rollup done: monthly=%d yearly=%d all_time=%d",
        results["monthly"], results["yearly"], results["all_time"],
    )
    return results
