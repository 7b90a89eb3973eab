from __future__ import annotations

import pytest

from enroll_sync.extraction import config, portal_urls


@pytest.mark.parametrize(
    "base, path, expected",
    [
        ("https://sce.dsmcentral.com", "/onsite/customer-search", "https://sce.dsmcentral.com/onsite/customer-search"),
        ("https://sce.dsmcentral.com/", "onsite/customer-search", "https://sce.dsmcentral.com/onsite/customer-search"),
        ("https://sce.dsmcentral.com", "https://other.test/form", "https://other.test/form"),
    ],
)
def test_resolve_customer_search_url(base: str, path: str, expected: str) -> None:
    assert portal_urls.resolve_customer_search_url(base, path) == expected


def test_resolve_customer_search_url_uses_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "SCE_BASE_URL", "https://staging.dsmcentral.test")
    monkeypatch.setattr(config, "SCE_FORM_PATH", "/onsite/customer-search")

    assert portal_urls.resolve_customer_search_url() == "https://staging.dsmcentral.test/onsite/customer-search"


def test_resolve_login_url_fills_missing_trade_ally_params() -> None:
    resolved = portal_urls.resolve_login_url(
        "https://sce-trade-ally-community.my.site.com/tradeally/s/login/"
    )

    assert resolved == config.DEFAULT_SCE_LOGIN_URL


def test_resolve_login_url_keeps_explicit_params() -> None:
    resolved = portal_urls.resolve_login_url(
        "https://sce-trade-ally-community.my.site.com/tradeally/s/login/?ec=401&inst=Zz"
    )

    assert "ec=401" in resolved
    assert "inst=Zz" in resolved
    assert "startURL=%2Ftradeally%2Fsite%2FSiteLogin.apexp" in resolved


@pytest.mark.parametrize("raw", ["", "   ", "not a url", "/relative/login"])
def test_resolve_login_url_falls_back_to_default(raw: str) -> None:
    assert portal_urls.resolve_login_url(raw) == config.DEFAULT_SCE_LOGIN_URL


def test_resolve_login_url_leaves_other_hosts_alone() -> None:
    url = "https://login.example.test/sso?next=/onsite"
    assert portal_urls.resolve_login_url(url) == url


def test_sso_bridge_url_targets_onsite_on_same_origin() -> None:
    bridge = portal_urls.resolve_sso_bridge_url("https://sce.dsmcentral.com/onsite/customer-search")

    assert bridge == (
        "https://sce.dsmcentral.com/traksmart4/public/saml2/saml/login"
        "?sso-redirect-path=%2Fonsite"
    )


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://sce.dsmcentral.com/onsite", True),
        ("https://sce.dsmcentral.com/onsite/", True),
        ("https://sce.dsmcentral.com/ONSITE/customer-search", True),
        ("https://sce.dsmcentral.com/onsitex", False),
        ("https://sce.dsmcentral.com/", False),
        ("/onsite/customer-search", True),
    ],
)
def test_is_on_onsite_path(url: str, expected: bool) -> None:
    assert portal_urls.is_on_onsite_path(url) is expected


def test_host_and_login_flow_checks() -> None:
    assert portal_urls.is_on_trade_ally_host("https://sce-trade-ally-community.my.site.com/tradeally/s/")
    assert not portal_urls.is_on_trade_ally_host("https://sce.dsmcentral.com/onsite")
    assert portal_urls.is_in_login_flow(
        "https://sce-trade-ally-community.my.site.com/tradeally/loginflow/lightningLoginFlow.apexp"
    )
    assert not portal_urls.is_in_login_flow("https://sce.dsmcentral.com/onsite")


def test_same_page_ignores_trailing_slash_case_and_query() -> None:
    expected = "https://sce.dsmcentral.com/onsite/customer-search"

    assert portal_urls.same_page("https://sce.dsmcentral.com/onsite/Customer-Search/?x=1", expected)
    assert not portal_urls.same_page("https://sce.dsmcentral.com/onsite", expected)
    assert not portal_urls.same_page("http://sce.dsmcentral.com/onsite/customer-search", expected)


def test_recovery_urls_start_with_target() -> None:
    target = "https://sce.dsmcentral.com/onsite/customer-search"

    assert portal_urls.customer_search_recovery_urls(target) == [
        target,
        "https://sce.dsmcentral.com/onsite/customer-search",
        "https://sce.dsmcentral.com/onsite/#/customer-search",
    ]
