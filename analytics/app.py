import logging
import sqlite3
from datetime import datetime, timezone

import click
from flask import Blueprint, Flask, Response, abort, current_app, g, jsonify, request

from .config import DEFAULT_DASH_TOKEN, DEFAULT_SALT, load_config
from .db import Storage
from .identity import identity_from_config
from .privacy import CountryResolver, format_countries, get_client_ip, referrer_path
from .queries import InvalidQuery, StatsQueries
from .recorder import EventRecorder, EventValidationError, RequestMetadata, should_track_page_view
from .rollup import RollupUnauthorized, run_rollup

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)

# 1x1 transparent gif bytes (tracking pixel)
PIXEL_BYTES = (
    b"GIF89a"
    b"\x01\x00\x01\x00"
    b"\x80"
    b"\x00"
    b"\x00"
    b"\x00\x00\x00"
    b"\xff\xff\xff"
    b"\x21\xf9\x04\x01\x00\x00\x00\x00"
    b"\x2c\x00\x00\x00\x00\x01\x00\x01\x00\x00"
    b"\x02\x02\x44\x01\x00"
    b"\x3b"
)

# Paths of this service that a browser may navigate to but that aren't pages.
NON_PAGE_PREFIXES = ("/_", "/api/", "/healthz")

bp = Blueprint("analytics", __name__, cli_group=None)


class Analytics:
    """Process-wide collaborators, built once per app."""

    def __init__(self, config):
        self.storage = Storage(config["DB_PATH"])
        self.identity = identity_from_config(config)
        self.countries = CountryResolver(config.get("GEOIP_DB_PATH"))
        self.recorder = EventRecorder(self.storage, self.identity)
        self.queries = StatsQueries(self.storage, report_bots=self.identity.counts_bots)


def get_analytics() -> Analytics:
    return current_app.extensions["analytics"]


def init_analytics(app: Flask) -> Analytics:
    """
    Attach the collector to a Flask app. A host site can call this on its own
    app to get automatic page-view tracking on every routed HTML request.
    """
    for key, value in load_config().items():
        app.config.setdefault(key, value)

    if app.config["IDENTITY"] == "hash" and app.config["SALT"] == DEFAULT_SALT:
        logger.warning("ANALYTICS_SALT is the built-in default; set a secret salt")
    if app.config["DASH_TOKEN"] == DEFAULT_DASH_TOKEN:
        logger.warning("ANALYTICS_DASH_TOKEN is the built-in default")

    state = Analytics(app.config)
    app.extensions["analytics"] = state
    app.register_blueprint(bp)
    logger.info("analytics ready: identity=%s db=%s", state.identity.name, app.config["DB_PATH"])
    return state


def create_app(test_config=None) -> Flask:
    """Standalone collector service. Host sites call init_analytics instead."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if test_config:
        app.config.from_mapping(test_config)
    init_analytics(app)
    return app


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------
def request_fingerprint(req) -> RequestMetadata:
    """
    Collect what the recorder needs from a request. The raw IP only lives here;
    storage gets the anonymised form.
    """
    src_ip = get_client_ip(req.headers, req.remote_addr)
    return RequestMetadata(
        ip=src_ip,
        user_agent=req.headers.get("User-Agent") or None,
        referrer=req.headers.get("Referer") or None,
        country=get_analytics().countries.resolve(req.headers, src_ip),
        cookies=dict(req.cookies),
    )


def current_visitor(meta: RequestMetadata):
    if "analytics_visitor" not in g:
        g.analytics_visitor = get_analytics().identity.resolve(meta)
    return g.analytics_visitor


def pick_cors_origin(request_origin: str | None) -> str | None:
    """
    Return allowed origin if it matches our allowlist.
    """
    if not request_origin:
        return None
    for allowed in current_app.config["CORS_ALLOW_ORIGINS"]:
        if request_origin == allowed:
            return allowed
    return None


def require_dash_token():
    token = request.args.get("token", "")
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth.split(" ", 1)[1].strip()
    if token != current_app.config["DASH_TOKEN"]:
        abort(403)


def range_arg() -> str:
    return request.args.get("range", "today")


def limit_arg(default: int = 10):
    return request.args.get("limit", default)


# -----------------------------------------------------------------------------
# Hooks
# -----------------------------------------------------------------------------
@bp.before_app_request
def track_page_view():
    if not current_app.config.get("TRACK_PAGE_VIEWS", True):
        return
    # unrouted requests (404s) and the collector's own endpoints are not pages
    if request.endpoint is None or request.blueprint == bp.name:
        return
    if not should_track_page_view(
        request.method, request.path, request.headers.get("Accept"), NON_PAGE_PREFIXES
    ):
        return

    meta = request_fingerprint(request)
    try:
        get_analytics().recorder.page_view(request.path, meta, visitor=current_visitor(meta))
    except sqlite3.Error:
        logger.exception("page view not recorded for %s", request.path)


@bp.after_app_request
def finish_response(resp):
    visitor = g.pop("analytics_visitor", None)
    if visitor is not None:
        get_analytics().identity.persist(resp, visitor)

    # CORS for cross-origin ingest from allowed sites
    origin = pick_cors_origin(request.headers.get("Origin"))
    if origin:
        req_method = request.headers.get("Access-Control-Request-Method", "GET,POST,OPTIONS")
        req_headers = request.headers.get("Access-Control-Request-Headers", "Content-Type")

        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Credentials"] = "true"
        resp.headers["Access-Control-Allow-Methods"] = req_method
        resp.headers["Access-Control-Allow-Headers"] = req_headers
        resp.headers["Access-Control-Max-Age"] = "600"
    return resp


@bp.app_errorhandler(EventValidationError)
def invalid_event(exc):
    return jsonify({"error": "invalid event", "details": exc.to_dict()}), 400


@bp.app_errorhandler(InvalidQuery)
def invalid_query(exc):
    return jsonify({"error": "invalid query", "details": str(exc)}), 400


@bp.app_errorhandler(sqlite3.Error)
def storage_error(exc):
    logger.error("storage error on %s: %s", request.path, exc)
    return jsonify({"error": "storage unavailable"}), 500


# -----------------------------------------------------------------------------
# Ingest routes
# -----------------------------------------------------------------------------
@bp.route("/pixel.gif")
def pixel():
    """
    Tracking pixel for pages that can't run the hook:
      <img src="/pixel.gif?p=/path&r=<document.referrer>">
    Always answers with the image, even if the hit was rejected.
    """
    meta = request_fingerprint(request)
    path = request.args.get("p", "/")
    ref = request.args.get("r") or None

    try:
        get_analytics().recorder.record(
            "page_view", path, meta, referrer=ref, visitor=current_visitor(meta)
        )
    except EventValidationError as exc:
        logger.info("pixel hit dropped: %s", exc)
    except sqlite3.Error:
        logger.exception("pixel hit not recorded for %s", path)

    resp = Response(PIXEL_BYTES, mimetype="image/gif")
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    resp.headers["Pragma"] = "no-cache"
    resp.headers["Expires"] = "0"
    return resp


@bp.route("/event", methods=["POST", "OPTIONS"])
def event():
    """
    Custom event endpoint.
    Body example:
      { "name": "signup",
        "props": {"plan": "pro"},
        "path": "/pricing" }
    path falls back to the Referer's path.
    """
    if request.method == "OPTIONS":
        return ("", 200)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise EventValidationError("body", "expected a JSON object")

    meta = request_fingerprint(request)
    path = data.get("path") or referrer_path(meta.referrer) or "/"
    get_analytics().recorder.custom(
        data.get("name"), path, meta, props=data.get("props"), visitor=current_visitor(meta)
    )
    return jsonify({"success": True})


# -----------------------------------------------------------------------------
# Stats API (dashboard)
# -----------------------------------------------------------------------------
@bp.route("/api/stats/overview")
def stats_overview():
    require_dash_token()
    return jsonify(get_analytics().queries.overview(range_arg()))


@bp.route("/api/stats/pages")
def stats_pages():
    require_dash_token()
    return jsonify(get_analytics().queries.top_pages(range_arg(), limit_arg()))


@bp.route("/api/stats/referrers")
def stats_referrers():
    require_dash_token()
    return jsonify(get_analytics().queries.referrers(range_arg(), limit_arg()))


@bp.route("/api/stats/events")
def stats_events():
    require_dash_token()
    return jsonify(get_analytics().queries.custom_events(range_arg(), limit_arg()))


@bp.route("/api/stats/timeline")
def stats_timeline():
    require_dash_token()
    return jsonify(get_analytics().queries.visitor_timeline(range_arg()))


@bp.route("/api/stats/recent")
def stats_recent():
    require_dash_token()
    return jsonify(get_analytics().queries.recent_events(limit_arg(20)))


@bp.route("/api/stats/browsers")
def stats_browsers():
    require_dash_token()
    return jsonify(get_analytics().queries.browsers(range_arg(), limit_arg()))


@bp.route("/api/stats/os")
def stats_os():
    require_dash_token()
    return jsonify(get_analytics().queries.operating_systems(range_arg(), limit_arg()))


@bp.route("/api/stats/devices")
def stats_devices():
    require_dash_token()
    return jsonify(get_analytics().queries.devices(range_arg()))


@bp.route("/api/stats/countries")
def stats_countries():
    require_dash_token()
    return jsonify(get_analytics().queries.countries(range_arg(), limit_arg()))


# Live widgets are public; they only expose counts.
@bp.route("/api/live")
def live_visitors():
    return jsonify(get_analytics().queries.active_visitors(limit_arg()))


@bp.route("/api/live/path")
def live_on_path():
    path = request.args.get("path")
    if not path:
        raise InvalidQuery("path is required")
    viewing = get_analytics().queries.active_on_path(path)
    viewing["summary"] = format_countries(viewing["countries"])
    return jsonify(viewing)


# -----------------------------------------------------------------------------
# Rollup
# -----------------------------------------------------------------------------
@bp.route("/api/rollup", methods=["POST"])
def rollup():
    """
    Cron entrypoint:
      curl -X POST https://example.com/api/rollup \
        -H "Content-Type: application/json" -d '{"token": "..."}'
    """
    body = request.get_json(silent=True)
    token = body.get("token") if isinstance(body, dict) else None

    try:
        results = run_rollup(
            get_analytics().storage, current_app.config.get("ROLLUP_TOKEN"), token
        )
    except RollupUnauthorized:
        logger.warning("rollup rejected: bad token")
        return jsonify({"error": "Unauthorised"}), 401
    except Exception as exc:
        logger.exception("rollup failed")
        return jsonify({"error": "Rollup failed", "details": str(exc)}), 500

    return jsonify({
        "success": True,
        "results": results,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


@bp.cli.command("rollup")
def rollup_command():
    """Rebuild the monthly/yearly/all-time summary tables."""
    results = run_rollup(get_analytics().storage)
    click.echo(
        f"monthly={results['monthly']} yearly={results['yearly']} all_time={results['all_time']}"
    )


# -----------------------------------------------------------------------------
# health
# -----------------------------------------------------------------------------
@bp.route("/healthz")
def healthz():
    return "ok", 200


if __name__ == "__main__":
    # Dev mode, container uses gunicorn "analytics.app:create_app()"
    create_app().run(host="0.0.0.0", port=8000)
