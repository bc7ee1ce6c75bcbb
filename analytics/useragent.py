"""
Coarse user-agent classification.

Every table below is evaluated top to bottom and the first matching rule
wins. Engines embed each other's tokens (Edge and Opera say "Chrome", Chrome
says "Safari", iPhones say "like Mac OS X"), so order is part of the data.
"""
import re
from typing import NamedTuple, Optional


class Rule(NamedTuple):
    label: str
    pattern: re.Pattern
    unless: Optional[re.Pattern] = None

    def matches(self, ua: str) -> bool:
        if not self.pattern.search(ua):
            return False
        return self.unless is None or not self.unless.search(ua)


class UserAgentInfo(NamedTuple):
    browser: Optional[str]
    os: Optional[str]
    device_type: Optional[str]
    is_bot: bool


def _rx(expr: str) -> re.Pattern:
    return re.compile(expr, re.IGNORECASE)


# -----------------------------------------------------------------------------
# Rule tables
# -----------------------------------------------------------------------------
BOT_PATTERNS = [
    _rx(p)
    for p in (
        # generic
        r"bot", r"crawl", r"spider", r"slurp", r"mediapartners",
        # search engines
        r"googlebot", r"bingbot", r"yandex", r"baidu", r"duckduckbot", r"applebot", r"petalbot",
        # link unfurlers
        r"facebookexternalhit", r"twitterbot", r"linkedinbot", r"whatsapp", r"telegram",
        r"discord", r"slack",
        # monitoring
        r"pingdom", r"uptimerobot", r"gtmetrix", r"lighthouse",
        # headless browsers
        r"headlesschrome", r"phantomjs", r"selenium", r"puppeteer",
        # http clients
        r"python-requests", r"curl", r"wget", r"httpx", r"axios", r"go-http-client",
        r"java", r"ruby", r"perl",
        # seo / ai crawlers
        r"semrush", r"ahrefs", r"mj12bot", r"dotbot", r"bytespider", r"gptbot",
    )
]

BROWSER_RULES = [
    Rule("Edge", _rx(r"edg")),
    Rule("Opera", _rx(r"opr/|opera")),
    Rule("Samsung", _rx(r"samsungbrowser")),
    Rule("UC Browser", _rx(r"ucbrowser")),
    Rule("Chrome", _rx(r"chrome|chromium|crios")),
    Rule("Firefox", _rx(r"firefox|fxios")),
    Rule("Safari", _rx(r"safari"), unless=_rx(r"chrome")),
    Rule("IE", _rx(r"msie|trident")),
]

OS_RULES = [
    Rule("Windows", _rx(r"windows")),
    Rule("macOS", _rx(r"macintosh|mac os x"), unless=_rx(r"iphone|ipad|ipod")),
    Rule("Android", _rx(r"android")),
    Rule("iOS", _rx(r"iphone|ipad|ipod")),
    Rule("Linux", _rx(r"linux")),
    Rule("ChromeOS", _rx(r"\bcros\b|chromeos")),
]

# Tablet wins over mobile; Android without "Mobile" is a tablet.
TABLET_PATTERN = _rx(r"ipad|tablet|playbook|silk|android(?!.*mobile)")
MOBILE_PATTERN = _rx(r"mobile|iphone|ipod|android.*mobile|windows phone")


def first_match(rules, ua: str) -> Optional[str]:
    for rule in rules:
        if rule.matches(ua):
            return rule.label
    return None


def is_bot(ua: str | None) -> bool:
    if not ua:
        return False
    return any(p.search(ua) for p in BOT_PATTERNS)


def device_type(ua: str, os_name: Optional[str]) -> Optional[str]:
    if TABLET_PATTERN.search(ua):
        return "tablet"
    if MOBILE_PATTERN.search(ua):
        return "mobile"
    if os_name:
        return "desktop"
    return None


def parse_user_agent(ua: str | None) -> UserAgentInfo:
    if not ua:
        return UserAgentInfo(None, None, None, False)

    os_name = first_match(OS_RULES, ua)
    return UserAgentInfo(
        browser=first_match(BROWSER_RULES, ua),
        os=os_name,
        device_type=device_type(ua, os_name),
        is_bot=is_bot(ua),
    )
