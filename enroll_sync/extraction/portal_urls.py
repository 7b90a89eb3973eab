from __future__ import annotations

"""URL helpers for the SCE enrollment portal and the Trade Ally login site."""

import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from . import config

TRADE_ALLY_HOSTNAME = "sce-trade-ally-community.my.site.com"
TRADE_ALLY_LOGIN_PATH = "/tradeally/s/login"
LOGIN_FLOW_MARKER = "/tradeally/loginflow/"
SSO_BRIDGE_PATH = "/traksmart4/public/saml2/saml/login"
SSO_REDIRECT_PATH = "/onsite"

_LOGIN_DEFAULT_PARAMS = (
    ("ec", "302"),
    ("inst", "Vt"),
    ("startURL", "/tradeally/site/SiteLogin.apexp"),
)


def normalize_path(pathname: str) -> str:
    """Lower-case ``pathname`` and drop trailing slashes."""

    return re.sub(r"/+$", "", pathname or "").lower()


def path_of(url_or_path: str) -> str:
    if "://" in url_or_path:
        return urlsplit(url_or_path).path
    return url_or_path


def is_on_onsite_path(url_or_path: str) -> bool:
    normalized = normalize_path(path_of(url_or_path))
    return normalized == "/onsite" or normalized.startswith("/onsite/")


def is_on_trade_ally_host(url: str) -> bool:
    try:
        return (urlsplit(url or "").hostname or "") == TRADE_ALLY_HOSTNAME
    except ValueError:
        return False


def is_in_login_flow(url: str) -> bool:
    return LOGIN_FLOW_MARKER in (url or "").lower()


def same_page(current_url: str, expected_url: str) -> bool:
    """True when both URLs share scheme, host and normalized path."""

    try:
        current = urlsplit(current_url)
        expected = urlsplit(expected_url)
    except ValueError:
        return False
    return (
        current.scheme == expected.scheme
        and current.hostname == expected.hostname
        and normalize_path(current.path) == normalize_path(expected.path)
    )


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def resolve_customer_search_url(
    base_url: Optional[str] = None, form_path: Optional[str] = None
) -> str:
    """Absolute customer-search URL from the configured base URL and form path.

    An absolute ``form_path`` is returned as-is.
    """

    raw_path = (config.SCE_FORM_PATH if form_path is None else form_path).strip()
    if re.match(r"^https?://", raw_path, re.IGNORECASE):
        return raw_path
    base = (config.SCE_BASE_URL if base_url is None else base_url).strip()
    normalized = raw_path if raw_path.startswith("/") else f"/{raw_path}"
    return urljoin(base, normalized)


def resolve_login_url(raw_url: Optional[str] = None) -> str:
    """Canonical Trade Ally login URL.

    Missing ``ec``/``inst``/``startURL`` parameters are filled in on the Trade
    Ally login path; any other URL is returned unchanged, and an empty or
    unparseable value falls back to the default login URL.
    """

    candidate = (config.SCE_LOGIN_URL if raw_url is None else raw_url).strip()
    if not candidate:
        return config.DEFAULT_SCE_LOGIN_URL

    try:
        parts = urlsplit(candidate)
    except ValueError:
        return config.DEFAULT_SCE_LOGIN_URL
    if not parts.scheme or not parts.netloc:
        return config.DEFAULT_SCE_LOGIN_URL

    if parts.hostname != TRADE_ALLY_HOSTNAME:
        return candidate
    if normalize_path(parts.path) != TRADE_ALLY_LOGIN_PATH:
        return candidate

    params = parse_qsl(parts.query, keep_blank_values=True)
    present = {key for key, value in params if value}
    params = [(key, value) for key, value in params if value or key not in dict(_LOGIN_DEFAULT_PARAMS)]
    for key, value in _LOGIN_DEFAULT_PARAMS:
        if key not in present:
            params.append((key, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))


def resolve_sso_bridge_url(target_url: str) -> str:
    """SAML bridge entry on the target's origin that redirects into ``/onsite``."""

    query = urlencode({"sso-redirect-path": SSO_REDIRECT_PATH})
    return f"{origin_of(target_url)}{SSO_BRIDGE_PATH}?{query}"


def customer_search_recovery_urls(target_url: str) -> list[str]:
    origin = origin_of(target_url)
    return [
        target_url,
        f"{origin}/onsite/customer-search",
        f"{origin}/onsite/#/customer-search",
    ]


__all__ = [
    "TRADE_ALLY_HOSTNAME",
    "LOGIN_FLOW_MARKER",
    "normalize_path",
    "path_of",
    "is_on_onsite_path",
    "is_on_trade_ally_host",
    "is_in_login_flow",
    "same_page",
    "origin_of",
    "resolve_customer_search_url",
    "resolve_login_url",
    "resolve_sso_bridge_url",
    "customer_search_recovery_urls",
]
