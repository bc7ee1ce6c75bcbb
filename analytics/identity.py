"""
Visitor identity.

A deployment picks exactly one strategy; everything downstream only sees the
resulting visitor key string.

- HashIdentity: sha256(anonymised ip + user agent + UTC date + salt), 16 hex
  chars. Rotates at UTC midnight and needs no client state.
- SessionIdentity: random 128-bit token kept in a first-party cookie for a
  year.
"""
import hashlib
import re
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone

from .privacy import anonymize_ip

ONE_YEAR_SECONDS = 60 * 60 * 24 * 365

_TOKEN_RE = re.compile(r"^[0-9a-f]{32}$")


@dataclass(frozen=True)
class ResolvedVisitor:
    key: str
    minted: bool = False


class VisitorIdentity:
    name = ""
    # Whether distinct bot keys mean anything under this scheme.
    counts_bots = False

    def resolve(self, meta) -> ResolvedVisitor:
        raise NotImplementedError

    def persist(self, response, visitor: ResolvedVisitor):
        """Attach whatever client state the scheme needs to the response."""


class HashIdentity(VisitorIdentity):
    name = "hash"
    counts_bots = True

    def __init__(self, salt: str):
        if not salt:
            raise ValueError("hash identity needs a salt")
        self._salt = salt

    def __repr__(self):
        return "HashIdentity(salt=<hidden>)"

    def visitor_key(self, ip: str | None, user_agent: str | None, day: date | None = None) -> str:
        if day is None:
            day = datetime.now(timezone.utc).date()
        data = f"{anonymize_ip(ip) or ''}{user_agent or ''}{day.isoformat()}{self._salt}"
        return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]

    def resolve(self, meta) -> ResolvedVisitor:
        return ResolvedVisitor(self.visitor_key(meta.ip, meta.user_agent))


class SessionIdentity(VisitorIdentity):
    name = "session"

    def __init__(self, cookie_name: str = "analytics_sid", secure: bool = False):
        self.cookie_name = cookie_name
        self.secure = secure

    def resolve(self, meta) -> ResolvedVisitor:
        existing = meta.cookies.get(self.cookie_name)
        if existing and _TOKEN_RE.match(existing):
            return ResolvedVisitor(existing)
        return ResolvedVisitor(secrets.token_hex(16), minted=True)

    def persist(self, response, visitor: ResolvedVisitor):
        if not visitor.minted:
            return
        response.set_cookie(
            self.cookie_name,
            visitor.key,
            max_age=ONE_YEAR_SECONDS,
            path="/",
            httponly=True,
            samesite="Lax",
            secure=self.secure,
        )


def identity_from_config(config) -> VisitorIdentity:
    scheme = config.get("IDENTITY", "hash")
    if scheme == "hash":
        return HashIdentity(config["SALT"])
    if scheme == "session":
        return SessionIdentity(
            cookie_name=config.get("SESSION_COOKIE_NAME", "analytics_sid"),
            secure=config.get("SECURE_COOKIES", False),
        )
    raise ValueError(f"unknown identity scheme: {scheme!r}")
