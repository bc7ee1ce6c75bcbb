import ipaddress
import logging
import os
from urllib.parse import urlparse

import geoip2.database
import geoip2.errors

logger = logging.getLogger(__name__)

DIRECT = "(direct)"
UNKNOWN_SOURCE = "(unknown)"

# Cloudflare sends these when it has no real country for the client.
_NON_COUNTRIES = {"XX", "T1"}


def strip_port(value: str | None) -> str | None:
    """
    Drop a trailing :port and IPv6 brackets from an address.
    "203.0.113.7:51234" -> "203.0.113.7", "[2001:db8::7]:443" -> "2001:db8::7".
    A bare IPv6 address has several colons and is left alone.
    """
    if not value:
        return value
    value = value.strip()
    if value.startswith("["):
        end = value.find("]")
        if end != -1:
            return value[1:end]
        return value
    if value.count(":") == 1:
        return value.split(":", 1)[0]
    return value


def anonymize_ip(raw_ip: str | None) -> str | None:
    """
    Drop the host part of an address.

    IPv4 keeps the first three octets (1.2.3.4 -> 1.2.3.0), IPv6 zeroes the
    last two 16-bit groups. A port or brackets around the address are dropped
    first. Anything that isn't an address comes back as-is.
    """
    if not raw_ip:
        return None
    candidate = strip_port(raw_ip)

    try:
        ip_obj = ipaddress.ip_address(candidate)
    except ValueError:
        return raw_ip

    if isinstance(ip_obj, ipaddress.IPv4Address):
        octets = str(ip_obj).split(".")
        octets[3] = "0"
        return ".".join(octets)

    truncated = int(ip_obj) & ~0xFFFFFFFF
    return str(ipaddress.IPv6Address(truncated))


def get_client_ip(headers, remote_addr: str | None = None) -> str | None:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded_for = headers.get("X-Forwarded-For")
    if forwarded_for:
        first = strip_port(forwarded_for.split(",")[0])
        if first:
            return first
    real_ip = strip_port(headers.get("X-Real-IP"))
    if real_ip:
        return real_ip
    return remote_addr or None


def referrer_domain(raw_ref: str | None) -> str:
    """
    Reduce a Referer value to its host name.
    "https://example.com/page?x=1" -> "example.com"; empty -> "(direct)".
    """
    if not raw_ref or not raw_ref.strip():
        return DIRECT
    ref = raw_ref.strip()
    if "://" not in ref:
        ref = "//" + ref
    try:
        host = urlparse(ref).hostname
    except ValueError:
        return UNKNOWN_SOURCE
    return host or UNKNOWN_SOURCE


def referrer_path(raw_ref: str | None) -> str | None:
    if not raw_ref:
        return None
    try:
        path = urlparse(raw_ref).path
    except ValueError:
        return None
    return path or None


# -----------------------------------------------------------------------------
# Country lookup
# -----------------------------------------------------------------------------
class CountryResolver:
    """
    ISO country code for a request.
    Trusts a CF-IPCountry header when present, otherwise asks the local MaxMind
    database. Only the 2-letter code leaves this class.
    """

    def __init__(self, geoip_db_path: str | None = None):
        self.geoip_db_path = geoip_db_path
        self._reader = None
        self._checked = False

    def get_reader(self):
        if not self._checked:
            self._checked = True
            if self.geoip_db_path and os.path.exists(self.geoip_db_path):
                self._reader = geoip2.database.Reader(self.geoip_db_path)
                logger.info("GeoIP database loaded")
            else:
                logger.info("no GeoIP database at %s, country from headers only", self.geoip_db_path)
        return self._reader

    def resolve(self, headers, raw_ip: str | None) -> str | None:
        header_code = (headers.get("CF-IPCountry") or "").strip().upper()
        if len(header_code) == 2 and header_code.isalpha() and header_code not in _NON_COUNTRIES:
            return header_code

        reader = self.get_reader()
        if reader is None or not raw_ip:
            return None
        try:
            resp = reader.country(raw_ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        code = resp.country.iso_code or resp.registered_country.iso_code
        return code.upper() if code else None

    def close(self):
        if self._reader is not None:
            self._reader.close()
            self._reader = None


UNKNOWN_FLAG = "\U0001F30D"
_REGIONAL_INDICATOR_OFFSET = 0x1F1E6 - ord("A")


def country_to_flag(code: str | None) -> str:
    """ISO-2 country code to its flag emoji ("GB" -> 🇬🇧). Anything else gets a globe."""
    if not code or len(code) != 2 or not code.isascii() or not code.isalpha():
        return UNKNOWN_FLAG
    return "".join(chr(ord(ch) + _REGIONAL_INDICATOR_OFFSET) for ch in code.upper())


def format_countries(countries) -> str:
    """[{"country": "GB", "count": 3}, ...] -> "3 🇬🇧 2 🇺🇸"."""
    return " ".join(f"{c['count']} {country_to_flag(c['country'])}" for c in countries)
