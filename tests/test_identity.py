import re
from datetime import date

import pytest
from flask import Response

from analytics.identity import (
    HashIdentity,
    ResolvedVisitor,
    SessionIdentity,
    identity_from_config,
)
from analytics.recorder import RequestMetadata

UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
DAY = date(2024, 3, 10)


def test_hash_key_is_deterministic_16_hex():
    ident = HashIdentity("salt-a")
    key = ident.visitor_key("203.0.113.7", UA, DAY)
    assert re.fullmatch(r"[0-9a-f]{16}", key)
    assert ident.visitor_key("203.0.113.7", UA, DAY) == key


def test_hash_key_rotates_with_day():
    ident = HashIdentity("salt-a")
    assert ident.visitor_key("203.0.113.7", UA, DAY) != ident.visitor_key("203.0.113.7", UA, date(2024, 3, 11))


def test_hash_key_depends_on_salt_and_user_agent():
    a = HashIdentity("salt-a").visitor_key("203.0.113.7", UA, DAY)
    assert HashIdentity("salt-b").visitor_key("203.0.113.7", UA, DAY) != a
    assert HashIdentity("salt-a").visitor_key("203.0.113.7", UA + " extra", DAY) != a


def test_hash_key_uses_anonymised_address():
    ident = HashIdentity("salt-a")
    assert ident.visitor_key("203.0.113.7", UA, DAY) == ident.visitor_key("203.0.113.200", UA, DAY)
    assert ident.visitor_key("203.0.113.7", UA, DAY) != ident.visitor_key("203.0.114.7", UA, DAY)


def test_hash_key_without_ip_or_agent():
    key = HashIdentity("salt-a").visitor_key(None, None, DAY)
    assert len(key) == 16


def test_hash_identity_needs_salt_and_hides_it():
    with pytest.raises(ValueError):
        HashIdentity("")
    assert "salt-a" not in repr(HashIdentity("salt-a"))


def test_hash_identity_never_sets_cookie():
    ident = HashIdentity("salt-a")
    visitor = ident.resolve(RequestMetadata(ip="203.0.113.7", user_agent=UA))
    resp = Response("ok")
    ident.persist(resp, visitor)
    assert "Set-Cookie" not in resp.headers
    assert not visitor.minted


def test_session_mints_token_when_cookie_missing():
    visitor = SessionIdentity().resolve(RequestMetadata())
    assert visitor.minted
    assert re.fullmatch(r"[0-9a-f]{32}", visitor.key)


def test_session_reuses_valid_cookie():
    token = "0123456789abcdef0123456789abcdef"
    visitor = SessionIdentity().resolve(RequestMetadata(cookies={"analytics_sid": token}))
    assert visitor == ResolvedVisitor(token, minted=False)


def test_session_replaces_malformed_cookie():
    visitor = SessionIdentity().resolve(RequestMetadata(cookies={"analytics_sid": "<script>"}))
    assert visitor.minted
    assert visitor.key != "<script>"


def test_session_cookie_attributes():
    ident = SessionIdentity(cookie_name="sid")
    visitor = ident.resolve(RequestMetadata())
    resp = Response("ok")
    ident.persist(resp, visitor)

    cookie = resp.headers["Set-Cookie"]
    assert cookie.startswith(f"sid={visitor.key}")
    assert "HttpOnly" in cookie
    assert "SameSite=Lax" in cookie
    assert "Path=/" in cookie
    assert "Max-Age=31536000" in cookie


def test_session_does_not_reset_existing_cookie():
    ident = SessionIdentity()
    resp = Response("ok")
    ident.persist(resp, ResolvedVisitor("0123456789abcdef0123456789abcdef"))
    assert "Set-Cookie" not in resp.headers


def test_identity_from_config():
    assert isinstance(identity_from_config({"IDENTITY": "hash", "SALT": "s"}), HashIdentity)
    session = identity_from_config({"IDENTITY": "session", "SESSION_COOKIE_NAME": "x", "SECURE_COOKIES": True})
    assert isinstance(session, SessionIdentity)
    assert session.cookie_name == "x" and session.secure
    with pytest.raises(ValueError):
        identity_from_config({"IDENTITY": "fingerprint", "SALT": "s"})
