import json
from dataclasses import dataclass, field

from .db import now_ms
from .privacy import anonymize_ip
from .useragent import parse_user_agent


PAGE_VIEW = "page_view"
CUSTOM = "custom"
EVENT_TYPES = (PAGE_VIEW, CUSTOM)

MAX_NAME_LENGTH = 100
MAX_PATH_LENGTH = 500
MAX_REFERRER_LENGTH = 500
MAX_USER_AGENT_LENGTH = 500
MAX_PROPS_LENGTH = 2000

INTERNAL_PREFIXES = ("/_",)


class EventValidationError(ValueError):
    def __init__(self, field_name: str, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field = field_name
        self.message = message

    def to_dict(self) -> dict:
        return {self.field: self.message}


@dataclass
class RequestMetadata:
    """What the recorder may know about the request behind an event."""
    ip: str | None = None
    user_agent: str | None = None
    referrer: str | None = None
    country: str | None = None
    cookies: dict = field(default_factory=dict)


def should_track_page_view(method: str, path: str, accept: str | None,
                           ignore_prefixes=INTERNAL_PREFIXES) -> bool:
    """
    Gate for the automatic page-view hook: only document navigations on
    non-internal, non-asset paths count.
    """
    if method not in ("GET", "HEAD"):
        return False
    if "text/html" not in (accept or ""):
        return False
    if any(path.startswith(prefix) for prefix in ignore_prefixes):
        return False
    last_segment = path.rsplit("/", 1)[-1]
    return "." not in last_segment


def clean_event_name(event_type: str, event_name) -> str | None:
    if event_type == PAGE_VIEW:
        if event_name is not None:
            raise EventValidationError("name", "page views carry no event name")
        return None

    if not isinstance(event_name, str):
        raise EventValidationError("name", "Event name is required")
    name = event_name.strip()
    if not name:
        raise EventValidationError("name", "Event name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise EventValidationError("name", "Event name too long")
    return name


def clean_path(path) -> str:
    if not isinstance(path, str) or not path.startswith("/"):
        raise EventValidationError("path", "path must start with '/'")
    return path[:MAX_PATH_LENGTH]


def serialize_props(props) -> str | None:
    if props is None:
        return None
    if not isinstance(props, dict) or not all(isinstance(k, str) for k in props):
        raise EventValidationError("props", "props must be an object with string keys")
    try:
        payload = json.dumps(props, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise EventValidationError("props", f"props are not serializable: {exc}") from exc
    if len(payload) > MAX_PROPS_LENGTH:
        raise EventValidationError("props", "props too large")
    return payload


def _clip(value: str | None, limit: int) -> str | None:
    if not value:
        return None
    return value[:limit]


class EventRecorder:
    """
    Appends tracked events to analytics_events.

    Identity and classification are always derived here from the request
    metadata; callers cannot hand them in.
    """

    def __init__(self, storage, identity, clock=now_ms):
        self.storage = storage
        self.identity = identity
        self.clock = clock

    def record(self, event_type: str, path: str, meta: RequestMetadata, *,
               event_name: str | None = None, referrer: str | None = None,
               props: dict | None = None, visitor=None) -> int:
        """
        Validate and store one event. Returns the new row id.
        Raises EventValidationError before touching storage; storage errors
        propagate to the caller.
        """
        if event_type not in EVENT_TYPES:
            raise EventValidationError("type", f"unknown event type {event_type!r}")
        name = clean_event_name(event_type, event_name)
        path = clean_path(path)
        props_payload = serialize_props(props)

        if visitor is None:
            visitor = self.identity.resolve(meta)
        ua = parse_user_agent(meta.user_agent)
        if referrer is None:
            referrer = meta.referrer

        cur = self.storage.execute(
            """
            INSERT INTO analytics_events (
                visitor_key, event_type, event_name, path, referrer, user_agent, ip,
                country, browser, os, device_type, is_bot, props, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                visitor.key,
                event_type,
                name,
                path,
                _clip(referrer, MAX_REFERRER_LENGTH),
                _clip(meta.user_agent, MAX_USER_AGENT_LENGTH),
                anonymize_ip(meta.ip),
                meta.country,
                ua.browser,
                ua.os,
                ua.device_type,
                1 if ua.is_bot else 0,
                props_payload,
                self.clock(),
            ),
        )
        return cur.fetchone()[0]

    def page_view(self, path: str, meta: RequestMetadata, visitor=None) -> int:
        return self.record(PAGE_VIEW, path, meta, visitor=visitor)

    def custom(self, name: str, path: str, meta: RequestMetadata,
               props: dict | None = None, visitor=None) -> int:
        return self.record(CUSTOM, path, meta, event_name=name, props=props, visitor=visitor)
