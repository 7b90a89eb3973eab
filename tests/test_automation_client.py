from __future__ import annotations

import json

import pytest
from playwright.sync_api import Error as PWError

from enroll_sync.extraction import automation_client, config, portal_urls, selector_resolver
from enroll_sync.extraction.automation_client import (
    LoginBridge,
    LoginState,
    PlaywrightAutomationClient,
    parse_storage_state,
)
from enroll_sync.extraction.errors import (
    AccessDeniedError,
    FieldNotFoundError,
    LoginRequiredError,
    NavigationError,
    NoDataExtractedError,
    SessionExpiredError,
    ValidationError,
    is_shared_session_failure,
)
from enroll_sync.extraction.models import AddressInput
from enroll_sync.extraction.selectors import (
    CUSTOMER_FIELD_SELECTORS,
    CUSTOMER_SEARCH_SELECTORS,
    LOGIN_FORM_SELECTORS,
)
from tests.fake_browser import (
    FakeBrowser,
    FakePage,
    add_material_field,
    install_browser,
    install_customer_search_form,
    install_login_form,
)

ORIGIN = "https://sce.dsmcentral.com"
TARGET = f"{ORIGIN}/onsite/customer-search"
LOGIN = config.DEFAULT_SCE_LOGIN_URL
SNAPSHOT = '{"cookies": [{"name": "sid", "value": "abc", "domain": "sce.dsmcentral.com"}], "origins": []}'
ADDRESS = AddressInput(street_number="123", street_name="Main St", zip_code="91770")


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(event: str = "", **fields: object) -> None:
        events.append((event, fields))

    monkeypatch.setattr(automation_client, "_extraction_event", _record)
    return events


@pytest.fixture
def resolve_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, str]]:
    """``(strategy, target)`` for every locator the resolver hands back."""

    resolved: list[tuple[str, str]] = []

    def _record(event: str = "", **fields: object) -> None:
        if fields.get("phase") == "resolve":
            resolved.append((str(fields["strategy"]), str(fields["target"])))

    monkeypatch.setattr(selector_resolver, "_extraction_event", _record)
    return resolved


NATIVE_WRITE_EVENTS = ["input", "change", "blur"] * 2


def _client(page: FakePage, *pages: FakePage) -> tuple[PlaywrightAutomationClient, FakeBrowser]:
    client = PlaywrightAutomationClient(
        target_url=TARGET, login_url=LOGIN, timeout_ms=1000, headless=True, clock=page.clock
    )
    browser = FakeBrowser(page, *pages)
    install_browser(client, browser)
    return client, browser


def _add_login_prompt(page: FakePage) -> None:
    page.add(LOGIN_FORM_SELECTORS.prompt_login, value="")
    page.add(LOGIN_FORM_SELECTORS.prompt_password, value="")


# --- extraction -------------------------------------------------------------


def test_extract_customer_data_fills_search_and_reads_fields(
    resolve_recorder: list[tuple[str, str]]
) -> None:
    page = FakePage()
    form = install_customer_search_form(page, results={"name": " Jane Doe ", "phone": "555-0100"})
    client, browser = _client(page)

    data = client.extract_customer_data(ADDRESS, SNAPSHOT)

    assert data.customer_name == "Jane Doe"
    assert data.customer_phone == "555-0100"
    assert data.customer_email is None
    assert form["address"].value == "123 Main St"
    assert form["zip"].value == "91770"
    # Cleared then set through the native setter, never through locator.fill.
    assert form["address"].events == NATIVE_WRITE_EVENTS
    assert form["zip"].events == NATIVE_WRITE_EVENTS
    assert resolve_recorder == [
        ("css", CUSTOMER_SEARCH_SELECTORS.address_full[0]),
        ("css", CUSTOMER_SEARCH_SELECTORS.zip_code[0]),
    ]
    assert form["search"].clicks == 1
    assert page.visits == [TARGET]
    assert page.default_timeout == 1000
    assert browser.contexts[0].storage_state_arg == json.loads(SNAPSHOT)


def test_extract_customer_data_fills_split_street_fields() -> None:
    page = FakePage()
    form = install_customer_search_form(
        page, split_street=True, results={"email": "jane@example.com"}
    )
    client, _ = _client(page)

    data = client.extract_customer_data(ADDRESS, SNAPSHOT)

    assert data.customer_email == "jane@example.com"
    assert form["street_number"].value == "123"
    assert form["street_name"].value == "Main St"
    assert form["street_number"].events == NATIVE_WRITE_EVENTS
    assert form["street_name"].events == NATIVE_WRITE_EVENTS
    assert form["zip"].events == NATIVE_WRITE_EVENTS


def test_extract_customer_data_resolves_material_labels(
    resolve_recorder: list[tuple[str, str]]
) -> None:
    page = FakePage()
    address = add_material_field(page, "* Address")
    zip_code = add_material_field(page, "Zip Code")

    def _search(p: FakePage) -> None:
        p.add(CUSTOMER_FIELD_SELECTORS.name[3], text="Jane Doe")

    page.add(CUSTOMER_SEARCH_SELECTORS.search_button[0], on_click=_search)
    client, _ = _client(page)

    data = client.extract_customer_data(ADDRESS, SNAPSHOT)

    assert data.customer_name == "Jane Doe"
    assert address["control"].value == "123 Main St"
    assert zip_code["control"].value == "91770"
    assert address["control"].events == NATIVE_WRITE_EVENTS
    assert zip_code["control"].events == NATIVE_WRITE_EVENTS
    assert resolve_recorder == [("label_exact", "Address"), ("label_exact", "Zip Code")]


def test_missing_zip_field_is_reported_by_name() -> None:
    page = FakePage()
    form = install_customer_search_form(page, results={"name": "Jane Doe"})
    client, _ = _client(page)
    # The form mounts, then the zip input is torn down before the write.
    original = client.ensure_customer_search_ready

    def _ready_then_drop_zip(p: FakePage) -> None:
        original(p)
        p.remove(CUSTOMER_SEARCH_SELECTORS.zip_code[0])

    client.ensure_customer_search_ready = _ready_then_drop_zip

    with pytest.raises(FieldNotFoundError, match="Could not find SCE zip field"):
        client.extract_customer_data(ADDRESS, SNAPSHOT)
    assert form["address"].value == "123 Main St"
    assert form["search"].clicks == 0


def test_unreachable_portal_requires_login(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "NAVIGATION_MAX_ATTEMPTS", 3)
    page = FakePage()

    def _down(_p: FakePage, _url: str) -> None:
        raise PWError("net::ERR_NAME_NOT_RESOLVED")

    page.route(TARGET, _down)
    client, _ = _client(page)

    with pytest.raises(LoginRequiredError, match="unable to reach") as excinfo:
        client.extract_customer_data(ADDRESS, SNAPSHOT)
    assert isinstance(excinfo.value.__cause__, NavigationError)
    assert is_shared_session_failure(excinfo.value)


def test_session_is_reused_for_same_snapshot_and_replaced_for_another() -> None:
    first_page = FakePage()
    second_page = FakePage()
    install_customer_search_form(first_page, results={"name": "Jane Doe"})
    install_customer_search_form(second_page, results={"name": "John Roe"})
    client, browser = _client(first_page, second_page)

    client.extract_customer_data(ADDRESS, SNAPSHOT)
    client.extract_customer_data(ADDRESS, f"  {SNAPSHOT}  ")
    assert len(browser.contexts) == 1

    other_snapshot = '{"cookies": [], "origins": []}'
    data = client.extract_customer_data(ADDRESS, other_snapshot)

    assert data.customer_name == "John Roe"
    assert len(browser.contexts) == 2
    assert browser.contexts[0].closed is True
    assert browser.contexts[1].closed is False

    client.dispose()
    assert browser.contexts[1].closed is True
    assert browser.closed is True


def test_context_manager_disposes_session() -> None:
    page = FakePage()
    install_customer_search_form(page, results={"name": "Jane Doe"})
    client, browser = _client(page)

    with client:
        client.extract_customer_data(ADDRESS, SNAPSHOT)
        assert browser.contexts[0].closed is False

    assert browser.contexts[0].closed is True


def test_login_prompt_after_search_means_session_expired() -> None:
    page = FakePage()
    install_customer_search_form(page, on_search=_add_login_prompt)
    client, _ = _client(page)

    with pytest.raises(SessionExpiredError) as excinfo:
        client.extract_customer_data(ADDRESS, SNAPSHOT)
    assert is_shared_session_failure(excinfo.value)


def test_empty_search_result_raises_no_data() -> None:
    page = FakePage()
    install_customer_search_form(page, results={})
    client, _ = _client(page)

    with pytest.raises(NoDataExtractedError) as excinfo:
        client.extract_customer_data(ADDRESS, SNAPSHOT)
    assert not is_shared_session_failure(excinfo.value)


def test_redirect_to_auth_login_requires_login() -> None:
    page = FakePage()
    page.route(TARGET, lambda p, _url: setattr(p, "url", f"{ORIGIN}/auth/login?redirect=onsite"))
    client, _ = _client(page)

    with pytest.raises(LoginRequiredError, match="SCE login required for"):
        client.extract_customer_data(ADDRESS, SNAPSHOT)


def test_landing_elsewhere_on_onsite_is_access_denied() -> None:
    page = FakePage()
    page.route(TARGET, lambda p, _url: setattr(p, "url", f"{ORIGIN}/onsite/home"))
    client, _ = _client(page)

    with pytest.raises(AccessDeniedError) as excinfo:
        client.extract_customer_data(ADDRESS, SNAPSHOT)

    assert "does not have access to customer-search" in str(excinfo.value)
    assert is_shared_session_failure(excinfo.value)
    # Every recovery URL was tried before giving up.
    assert f"{ORIGIN}/onsite/#/customer-search" in page.visits


def test_unexpected_host_is_access_denied() -> None:
    page = FakePage()
    page.route(TARGET, lambda p, _url: setattr(p, "url", "https://maintenance.example.test/"))
    client, _ = _client(page)

    with pytest.raises(AccessDeniedError, match="Unexpected SCE page"):
        client.extract_customer_data(ADDRESS, SNAPSHOT)


def test_invalid_snapshot_json_requires_login_before_launching() -> None:
    client = PlaywrightAutomationClient(target_url=TARGET, login_url=LOGIN)
    install_browser(client, FakeBrowser())

    with pytest.raises(LoginRequiredError, match="Session state JSON is invalid"):
        client.extract_customer_data(ADDRESS, "{not json")


@pytest.mark.parametrize("snapshot", [None, "", "   "])
def test_parse_storage_state_without_snapshot(snapshot: str | None) -> None:
    assert parse_storage_state(snapshot) is None


def test_parse_storage_state_rejects_non_objects() -> None:
    with pytest.raises(LoginRequiredError):
        parse_storage_state("[1, 2]")


# --- readiness --------------------------------------------------------------


class _SlowMountPage(FakePage):
    """Mounts the customer-search form once ``mount_after_ms`` has elapsed."""

    def __init__(self, mount_after_ms: float | None) -> None:
        super().__init__()
        self.mount_after_ms = mount_after_ms
        self.mounted = False

    def wait_for_timeout(self, timeout: float) -> None:
        super().wait_for_timeout(timeout)
        if self.mount_after_ms is not None and not self.mounted and self.elapsed_ms >= self.mount_after_ms:
            install_customer_search_form(self)
            self.mounted = True


def test_validate_session_access_waits_for_late_form() -> None:
    page = _SlowMountPage(mount_after_ms=3000)
    client, browser = _client(page)

    assert client.validate_session_access(SNAPSHOT) == TARGET
    assert page.mounted is True
    assert browser.contexts[0].closed is True
    assert browser.closed is True


def test_form_that_never_mounts_requires_login() -> None:
    page = _SlowMountPage(mount_after_ms=None)
    client, browser = _client(page)

    with pytest.raises(LoginRequiredError, match="customer-search form was not available"):
        client.validate_session_access(SNAPSHOT)
    assert browser.contexts[0].closed is True


def test_login_prompt_recovered_through_sso_bridge() -> None:
    page = FakePage()
    page.cookies = [{"name": "sid", "value": "trade-ally"}]
    visits = {"target": 0}

    def _target(p: FakePage, url: str) -> None:
        visits["target"] += 1
        if visits["target"] == 1:
            p.url = f"{ORIGIN}/auth/login"
            return
        p.url = url
        install_customer_search_form(p)

    page.route(TARGET, _target)
    page.route(portal_urls.resolve_sso_bridge_url(TARGET), lambda p, _url: setattr(p, "url", f"{ORIGIN}/onsite"))
    client, _ = _client(page)

    assert client.validate_session_access(SNAPSHOT) == TARGET
    assert portal_urls.resolve_sso_bridge_url(TARGET) in page.visits


# --- navigation -------------------------------------------------------------


def test_navigate_with_retry_retries_aborted_navigation(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "NAVIGATION_MAX_ATTEMPTS", 3)
    page = FakePage()
    calls = {"count": 0}

    def _flaky(p: FakePage, url: str) -> None:
        calls["count"] += 1
        if calls["count"] < 3:
            raise PWError("net::ERR_ABORTED; maybe frame was detached?")
        p.url = url

    page.route(TARGET, _flaky)
    client, _ = _client(page)

    client.navigate_with_retry(page, TARGET)

    assert calls["count"] == 3
    assert page.url == TARGET
    assert page.elapsed_ms == 750 + 1500


def test_navigate_with_retry_fails_fast_on_other_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "NAVIGATION_MAX_ATTEMPTS", 3)
    page = FakePage()

    def _down(_p: FakePage, _url: str) -> None:
        raise PWError("net::ERR_NAME_NOT_RESOLVED")

    page.route(TARGET, _down)
    client, _ = _client(page)

    with pytest.raises(NavigationError):
        client.navigate_with_retry(page, TARGET)
    assert page.visits == [TARGET]


def test_navigate_with_retry_accepts_page_already_on_target(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "NAVIGATION_MAX_ATTEMPTS", 2)
    page = FakePage()

    def _aborted_after_commit(p: FakePage, url: str) -> None:
        p.url = url
        raise PWError("Navigation interrupted by another navigation")

    page.route(TARGET, _aborted_after_commit)
    client, _ = _client(page)

    client.navigate_with_retry(page, TARGET)
    assert len(page.visits) == 2


# --- credential login -------------------------------------------------------


def _login_page(*, accept: bool) -> tuple[FakePage, dict]:
    page = FakePage()
    storage = {"cookies": [{"name": "sid", "value": "fresh", "domain": "sce.dsmcentral.com"}], "origins": []}

    def _submit(p: FakePage) -> None:
        if not accept:
            _add_login_prompt(p)
            return
        p.url = f"https://{portal_urls.TRADE_ALLY_HOSTNAME}/tradeally/s/"
        p.cookies = [{"name": "sid", "value": "trade-ally"}]
        p.storage = storage

    def _bridge(p: FakePage, _url: str) -> None:
        p.url = f"{ORIGIN}/onsite"
        install_customer_search_form(p)

    page.route(LOGIN, lambda p, url: setattr(p, "url", url))
    page.route(portal_urls.resolve_sso_bridge_url(TARGET), _bridge)
    form = install_login_form(page, on_submit=_submit)
    return page, {"form": form, "storage": storage}


def test_create_storage_state_from_credentials_verifies_round_trip(
    event_recorder: list[tuple[str, dict]], resolve_recorder: list[tuple[str, str]]
) -> None:
    login_page, parts = _login_page(accept=True)
    verify_page = FakePage()
    install_customer_search_form(verify_page)
    client, browser = _client(login_page, verify_page)

    state_json = client.create_storage_state_from_credentials(" ops@example.com ", "hunter2")

    assert json.loads(state_json) == parts["storage"]
    assert parts["form"]["username"].value == "ops@example.com"
    assert parts["form"]["password"].value == "hunter2"
    assert parts["form"]["username"].events == NATIVE_WRITE_EVENTS
    assert parts["form"]["password"].events == NATIVE_WRITE_EVENTS
    assert resolve_recorder == [
        ("css", LOGIN_FORM_SELECTORS.username[0]),
        ("css", LOGIN_FORM_SELECTORS.password[0]),
    ]
    assert parts["form"]["submit"].clicks == 1
    assert browser.contexts[1].storage_state_arg == parts["storage"]
    assert verify_page.url == TARGET
    assert all(context.closed for context in browser.contexts)

    transitions = [
        fields["to_state"]
        for label, fields in event_recorder
        if label == "login" and fields.get("phase") == "state"
    ]
    assert transitions == [
        LoginState.CREDENTIALS_SUBMITTED.value,
        LoginState.IN_IDP_LOGIN_FLOW.value,
        LoginState.SSO_BRIDGE_IN_FLIGHT.value,
        LoginState.CUSTOMER_SEARCH_READY.value,
    ]


def test_rejected_credentials_end_in_login_failed() -> None:
    page, _ = _login_page(accept=False)
    client, browser = _client(page)
    bridge = LoginBridge(client, page)

    with pytest.raises(LoginRequiredError, match="Check the username and password"):
        bridge.run("ops@example.com", "wrong")

    assert bridge.state is LoginState.LOGIN_FAILED
    assert browser.contexts == []


def test_missing_login_form_fails_login() -> None:
    page = FakePage()
    page.route(LOGIN, lambda p, url: setattr(p, "url", url))
    client, _ = _client(page)
    bridge = LoginBridge(client, page)

    with pytest.raises(LoginRequiredError, match="Could not find SCE login fields"):
        bridge.run("ops@example.com", "hunter2")
    assert bridge.state is LoginState.LOGIN_FAILED


def test_unreachable_login_page_fails_login(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "NAVIGATION_MAX_ATTEMPTS", 2)
    page = FakePage()

    def _down(_p: FakePage, _url: str) -> None:
        raise PWError("net::ERR_CONNECTION_REFUSED")

    page.route(LOGIN, _down)
    client, _ = _client(page)
    bridge = LoginBridge(client, page)

    with pytest.raises(LoginRequiredError, match="login page could not be reached") as excinfo:
        bridge.run("ops@example.com", "hunter2")
    assert isinstance(excinfo.value.__cause__, NavigationError)
    assert bridge.state is LoginState.LOGIN_FAILED


def test_password_that_never_sticks_fails_without_echoing_it() -> None:
    page, parts = _login_page(accept=True)
    parts["form"]["password"].editable = False
    client, _ = _client(page)
    bridge = LoginBridge(client, page)

    with pytest.raises(LoginRequiredError, match="did not accept the credentials") as excinfo:
        bridge.run("ops@example.com", "hunter2")

    assert "hunter2" not in str(excinfo.value)
    assert bridge.state is LoginState.LOGIN_FAILED
    assert parts["form"]["submit"].clicks == 0


@pytest.mark.parametrize("username, password", [("", "pw"), ("   ", "pw"), ("ops", "")])
def test_credentials_are_required(username: str, password: str) -> None:
    client = PlaywrightAutomationClient(target_url=TARGET, login_url=LOGIN)
    browser = FakeBrowser()
    install_browser(client, browser)

    with pytest.raises(ValidationError):
        client.create_storage_state_from_credentials(username, password)
    assert browser.contexts == []
