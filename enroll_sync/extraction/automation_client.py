"""Playwright automation of the SCE enrollment portal.

Workflow:

- Log in on the Trade Ally community site with operator credentials.
- Wait for the identity-provider redirect flow (``/tradeally/loginflow/``)
  to clear, then drive the SAML bridge into ``/onsite`` on the portal.
- Confirm the customer-search form has mounted, export the browser storage
  state and prove it works in a brand-new context.
- Reuse one browser session per storage-state fingerprint to fill the
  customer search and read name, phone and email for each address.

Failures are raised as the typed errors from :mod:`.errors` so the run
orchestrator can tell a stale session from an address with no match.
"""

from __future__ import annotations

import json
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, Tuple

from playwright.sync_api import (
    Browser,
    BrowserContext,
    Error as PWError,
    Page,
    sync_playwright,
)

from . import config, portal_urls
from .errors import (
    AccessDeniedError,
    ExtractionError,
    FieldNotFoundError,
    FieldValueMismatchError,
    LoginRequiredError,
    NavigationError,
    NoDataExtractedError,
    SessionExpiredError,
    ValidationError,
)
from .logging_utils import _extraction_event
from .models import AddressInput, ExtractedCustomerData
from .retry_policy import poll_until
from .selector_resolver import (
    Matcher,
    click_first_matching,
    css_matchers,
    fill_with_retry,
    first_value_from_selectors,
    has_any_selector,
    has_match,
    text_field_matchers,
    wait_for_dom_quiescence,
)
from .selectors import (
    CUSTOMER_FIELD_SELECTORS,
    CUSTOMER_SEARCH_SELECTORS,
    LOGIN_FORM_SELECTORS,
    NAVIGATION_SELECTORS,
)
from .session_vault import snapshot_fingerprint

BROWSER_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]

_SIGN_IN_TEXT_RE = re.compile(r"sign in|log in")
_CREDENTIAL_TEXT_RE = re.compile(r"email|password")

# Bounded wait for the form to mount when the URL is already right.
READINESS_WAIT_SECONDS = 9.0
READINESS_POLL_SECONDS = 0.3

# Customer-search inputs: qaanchor or mat-label first, then the CSS fallbacks.
ADDRESS_FIELD_MATCHERS = text_field_matchers(
    CUSTOMER_SEARCH_SELECTORS.address_field, CUSTOMER_SEARCH_SELECTORS.address_full
)
STREET_NUMBER_FIELD_MATCHERS = text_field_matchers(
    CUSTOMER_SEARCH_SELECTORS.street_number_field, CUSTOMER_SEARCH_SELECTORS.street_number
)
STREET_NAME_FIELD_MATCHERS = text_field_matchers(
    CUSTOMER_SEARCH_SELECTORS.street_name_field, CUSTOMER_SEARCH_SELECTORS.street_name
)
ZIP_FIELD_MATCHERS = text_field_matchers(
    CUSTOMER_SEARCH_SELECTORS.zip_field, CUSTOMER_SEARCH_SELECTORS.zip_code
)
LOGIN_USERNAME_MATCHERS = css_matchers(LOGIN_FORM_SELECTORS.username)
LOGIN_PASSWORD_MATCHERS = css_matchers(LOGIN_FORM_SELECTORS.password)


class LoginState(str, Enum):
    AT_LOGIN_PAGE = "at_login_page"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    IN_IDP_LOGIN_FLOW = "in_idp_login_flow"
    SSO_BRIDGE_IN_FLIGHT = "sso_bridge_in_flight"
    CUSTOMER_SEARCH_READY = "customer_search_ready"
    LOGIN_FAILED = "login_failed"
    ACCESS_DENIED = "access_denied"


def _is_target_closed_error(exc: Exception) -> bool:
    """Return ``True`` if *exc* indicates the Playwright target is gone."""

    message = str(exc)
    return any(
        marker in message
        for marker in (
            "Target closed",
            "Target crashed",
            "has been closed",
            "Execution context was destroyed",
        )
    )


def _is_retriable_navigation_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return "err_aborted" in message or "navigation interrupted" in message


def parse_storage_state(snapshot_json: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a storage-state snapshot; ``None`` when no snapshot was given."""

    if not snapshot_json or not snapshot_json.strip():
        return None
    try:
        parsed = json.loads(snapshot_json)
    except ValueError as exc:
        raise LoginRequiredError(
            "Session state JSON is invalid. Recreate the session before running extraction."
        ) from exc
    if not isinstance(parsed, dict):
        raise LoginRequiredError(
            "Session state JSON is invalid. Recreate the session before running extraction."
        )
    return parsed


@dataclass
class ActiveSession:
    """One live browser, its context and page, keyed by snapshot fingerprint."""

    key: str
    playwright: Any
    browser: Browser
    context: BrowserContext
    page: Page

    def close(self) -> None:
        for label, closer in (
            ("context", self.context.close),
            ("browser", self.browser.close),
            ("playwright", getattr(self.playwright, "stop", None)),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception as exc:  # noqa: BLE001
                if not _is_target_closed_error(exc):
                    _extraction_event(
                        "browser", phase="teardown", step=f"{label}_close_failed", error=str(exc)
                    )


class PlaywrightAutomationClient:
    """Drives the SCE portal through a Chromium browser.

    The client holds at most one persistent session. Asking for a different
    snapshot fingerprint tears the old session down first; :meth:`dispose`
    (or leaving the ``with`` block) releases it.
    """

    def __init__(
        self,
        *,
        target_url: Optional[str] = None,
        login_url: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        headless: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target_url = target_url or portal_urls.resolve_customer_search_url()
        self.login_url = login_url or portal_urls.resolve_login_url()
        self.timeout_ms = timeout_ms or config.SCE_AUTOMATION_TIMEOUT_MS
        self.headless = config.SCE_HEADLESS if headless is None else headless
        self._clock = clock
        self._active: Optional[ActiveSession] = None

    # -- lifecycle -----------------------------------------------------------

    def __enter__(self) -> "PlaywrightAutomationClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def _launch_browser(self) -> Tuple[Any, Browser]:
        playwright = sync_playwright().start()
        try:
            browser = playwright.chromium.launch(
                headless=self.headless, args=BROWSER_LAUNCH_ARGS
            )
        except Exception:
            playwright.stop()
            raise
        return playwright, browser

    def _new_page(self, browser: Browser, storage_state: Optional[Dict[str, Any]]) -> Tuple[BrowserContext, Page]:
        if storage_state is None:
            context = browser.new_context()
        else:
            context = browser.new_context(storage_state=storage_state)
        try:
            page = context.new_page()
            page.set_default_timeout(self.timeout_ms)
        except Exception:
            context.close()
            raise
        return context, page

    def _open_session(self, storage_state: Optional[Dict[str, Any]], *, key: str) -> ActiveSession:
        playwright, browser = self._launch_browser()
        try:
            context, page = self._new_page(browser, storage_state)
        except Exception:
            try:
                browser.close()
            finally:
                if playwright is not None:
                    playwright.stop()
            raise
        _extraction_event("browser", phase="open", key=key[:12])
        return ActiveSession(key=key, playwright=playwright, browser=browser, context=context, page=page)

    @contextmanager
    def _browser_session(self, snapshot_json: Optional[str] = None) -> Iterator[ActiveSession]:
        """A throwaway session that is torn down on every exit path."""

        storage_state = parse_storage_state(snapshot_json)
        session = self._open_session(storage_state, key=snapshot_fingerprint(snapshot_json))
        try:
            yield session
        finally:
            session.close()

    def acquire(self, snapshot_json: Optional[str]) -> ActiveSession:
        """Return the persistent session for ``snapshot_json``, opening it if needed."""

        key = snapshot_fingerprint(snapshot_json)
        if self._active is not None and self._active.key == key:
            return self._active

        self.dispose()
        storage_state = parse_storage_state(snapshot_json)
        self._active = self._open_session(storage_state, key=key)
        return self._active

    def dispose(self) -> None:
        session, self._active = self._active, None
        if session is not None:
            session.close()
            _extraction_event("browser", phase="dispose", key=session.key[:12])

    # -- page checks ---------------------------------------------------------

    def _pause(self, page: Page, milliseconds: float) -> None:
        page.wait_for_timeout(milliseconds)

    def _poll(self, page: Page, predicate: Callable[[], bool], *, timeout_seconds: float, interval_seconds: float) -> bool:
        return poll_until(
            predicate,
            timeout_seconds=timeout_seconds,
            interval_seconds=interval_seconds,
            sleep=lambda seconds: self._pause(page, seconds * 1000),
            clock=self._clock,
        )

    def wait_for_any_selector(self, page: Page, selectors: Sequence[str], timeout_ms: int) -> bool:
        return self._poll(
            page,
            lambda: has_any_selector(page, selectors),
            timeout_seconds=timeout_ms / 1000,
            interval_seconds=0.25,
        )

    def has_login_prompt(self, page: Page) -> bool:
        if "/auth/login" in page.url.lower():
            return True

        if has_any_selector(page, [LOGIN_FORM_SELECTORS.prompt_login]) and has_any_selector(
            page, [LOGIN_FORM_SELECTORS.prompt_password]
        ):
            return True

        try:
            body_text = (page.locator("body").inner_text() or "").lower()
        except PWError:
            body_text = ""
        return bool(_SIGN_IN_TEXT_RE.search(body_text) and _CREDENTIAL_TEXT_RE.search(body_text))

    def has_customer_search_fields(self, page: Page) -> bool:
        """Structural readiness: an address input, a zip input and a search button."""

        has_address = has_match(page, ADDRESS_FIELD_MATCHERS) or (
            has_match(page, STREET_NUMBER_FIELD_MATCHERS)
            and has_match(page, STREET_NAME_FIELD_MATCHERS)
        )
        return (
            has_address
            and has_match(page, ZIP_FIELD_MATCHERS)
            and has_any_selector(page, CUSTOMER_SEARCH_SELECTORS.search_button)
        )

    def fill_field(
        self, page: Page, matchers: Sequence[Matcher], value: str, *, field: str, secret: bool = False
    ) -> None:
        """Native-setter fill with read-back, retried with backoff on the page clock."""

        fill_with_retry(
            page,
            matchers,
            value,
            label=field,
            sleep=lambda seconds: self._pause(page, seconds * 1000),
            secret=secret,
        )

    def has_trade_ally_session(self, page: Page) -> bool:
        try:
            cookies = page.context.cookies([f"https://{portal_urls.TRADE_ALLY_HOSTNAME}"])
        except PWError:
            return False
        return any(str(cookie.get("value") or "").strip() for cookie in cookies)

    # -- navigation ----------------------------------------------------------

    def navigate_with_retry(self, page: Page, url: str, *, label: str = "customer_search") -> None:
        """Navigate to ``url``, retrying benign aborts with a growing pause.

        Raises ``NavigationError`` once attempts are exhausted, unless the page
        already sits on the requested path.
        """

        last_error: Optional[BaseException] = None
        attempts = max(1, config.NAVIGATION_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                _extraction_event("nav", step="goto", target=label, url=url, attempt=attempt)
                page.goto(url, wait_until="domcontentloaded" if attempt == 1 else "commit")
                return
            except PWError as exc:
                last_error = exc
                if not _is_retriable_navigation_error(exc):
                    _extraction_event(
                        "error", phase="nav", step="goto_error", target=label, url=url, error=str(exc)
                    )
                    raise NavigationError(f"Navigation to {url} failed: {exc}") from exc
                self._pause(page, 750 * attempt)

        if portal_urls.same_page(page.url, url):
            return
        raise NavigationError(f"Unable to navigate to {url} after SCE login.") from last_error

    def wait_for_login_flow(self, page: Page) -> bool:
        """Wait until the identity-provider redirect flow has left ``/tradeally/loginflow/``."""

        cleared = self._poll(
            page,
            lambda: not portal_urls.is_in_login_flow(page.url),
            timeout_seconds=config.login_flow_timeout_ms() / 1000,
            interval_seconds=config.LOGIN_FLOW_POLL_INTERVAL_SECONDS,
        )
        if not cleared:
            _extraction_event("login", phase="idp_flow", step="timeout", url=page.url)
        return cleared

    def run_sso_bridge(self, page: Page) -> bool:
        """Drive the SAML bridge into ``/onsite``; False when it never lands."""

        bridge_url = portal_urls.resolve_sso_bridge_url(self.target_url)
        self.wait_for_login_flow(page)

        attempts = max(1, config.SSO_BRIDGE_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                page.goto(bridge_url, wait_until="domcontentloaded" if attempt == 1 else "commit")
                self._pause(page, 1200 + 400 * attempt)
            except PWError as exc:
                _extraction_event(
                    "sso", phase="bridge", step="goto_error", attempt=attempt, error=str(exc)
                )
                if not _is_retriable_navigation_error(exc):
                    return False
                self._pause(page, 500 * attempt)
                continue

            if portal_urls.is_in_login_flow(page.url):
                _extraction_event("sso", phase="bridge", step="still_in_login_flow", attempt=attempt)
                self._pause(page, 1200 * attempt)
                continue

            _extraction_event("sso", phase="bridge", step="landed", attempt=attempt, url=page.url)
            return True

        return False

    def try_recover_via_sso(self, page: Page) -> bool:
        if not self.has_trade_ally_session(page):
            return False
        if not self.run_sso_bridge(page):
            return False

        try:
            self.navigate_with_retry(page, self.target_url, label="sso_recovery")
            self._pause(page, 1200)
        except NavigationError:
            return False

        if self.has_login_prompt(page):
            return False
        return self.has_customer_search_fields(page)

    def recover_customer_search_page(self, page: Page) -> None:
        """Try the known customer-search entry points, then the nav link."""

        urls = portal_urls.customer_search_recovery_urls(self.target_url)
        for round_index in range(1, 4):
            for url in urls:
                try:
                    page.goto(url, wait_until="domcontentloaded")
                    self._pause(page, 1200 + 300 * round_index)
                except PWError:
                    continue
                if self.has_login_prompt(page) or self.has_customer_search_fields(page):
                    return

        if click_first_matching(page, NAVIGATION_SELECTORS.customer_search_link):
            self._pause(page, 1800)

    def _login_required(self) -> LoginRequiredError:
        return LoginRequiredError(
            f"SCE login required for {self.target_url}. "
            "Refresh session JSON from an authenticated dsmcentral login."
        )

    def assert_on_customer_search_page(self, page: Page) -> None:
        if self.has_login_prompt(page):
            if self.try_recover_via_sso(page):
                return
            raise self._login_required()

        if self.has_customer_search_fields(page):
            return

        expected_path = portal_urls.normalize_path(portal_urls.path_of(self.target_url))
        actual_path = portal_urls.normalize_path(portal_urls.path_of(page.url))

        if actual_path == expected_path:
            settled = self._poll(
                page,
                lambda: self.has_customer_search_fields(page) or self.has_login_prompt(page),
                timeout_seconds=READINESS_WAIT_SECONDS,
                interval_seconds=READINESS_POLL_SECONDS,
            )
            if settled and self.has_customer_search_fields(page):
                return
            if self.has_login_prompt(page):
                if self.try_recover_via_sso(page):
                    return
                raise self._login_required()
            raise LoginRequiredError(
                f"SCE login required: reached {self.target_url} but the customer-search form "
                "was not available. Session was not fully authenticated in automation context."
            )

        if portal_urls.is_on_onsite_path(actual_path):
            self.recover_customer_search_page(page)
            if self.has_login_prompt(page):
                if self.try_recover_via_sso(page):
                    return
                raise self._login_required()
            if self.has_customer_search_fields(page):
                return
            raise AccessDeniedError(
                f"SCE login succeeded but landed on {page.url} instead of {self.target_url}. "
                "This SCE account/session does not have access to customer-search."
            )

        raise AccessDeniedError(
            f"Unexpected SCE page ({page.url}). Expected {self.target_url}. "
            "Login or account access may be missing."
        )

    def ensure_customer_search_ready(self, page: Page) -> None:
        """Navigate to customer-search and confirm the form is usable.

        An exhausted navigation means the session cannot reach the portal, so
        it surfaces as ``LoginRequiredError`` and stops the whole batch.
        """

        try:
            self.navigate_with_retry(page, self.target_url)
        except NavigationError as exc:
            raise LoginRequiredError(
                f"SCE login required: unable to reach {self.target_url} ({exc})"
            ) from exc
        self._pause(page, 1200)
        self.assert_on_customer_search_page(page)

    def verify_storage_state_round_trip(self, browser: Browser, storage_state: Dict[str, Any]) -> None:
        """A fresh context built from ``storage_state`` must reach customer-search on its own."""

        context, page = self._new_page(browser, storage_state)
        try:
            self.ensure_customer_search_ready(page)
            _extraction_event("login", phase="round_trip", step="verified", url=page.url)
        except ExtractionError as exc:
            _extraction_event(
                "login", phase="round_trip", step="failed", error_code=exc.error_code, error=str(exc)
            )
            raise
        finally:
            try:
                context.close()
            except PWError:
                pass

    # -- operations ----------------------------------------------------------

    def create_storage_state_from_credentials(self, username: str, password: str) -> str:
        """Log in with operator credentials and return a verified storage-state JSON."""

        self.dispose()

        username = (username or "").strip()
        if not username:
            raise ValidationError("SCE username is required")
        if not password:
            raise ValidationError("SCE password is required")

        with self._browser_session() as session:
            LoginBridge(self, session.page).run(username, password)
            storage_state = session.context.storage_state()
            self.verify_storage_state_round_trip(session.browser, storage_state)
            return json.dumps(storage_state)

    def validate_session_access(self, snapshot_json: Optional[str]) -> str:
        """Open a fresh context from ``snapshot_json`` and return the ready URL."""

        with self._browser_session(snapshot_json) as session:
            self.ensure_customer_search_ready(session.page)
            return session.page.url

    def extract_customer_data(
        self, address: AddressInput, snapshot_json: Optional[str]
    ) -> ExtractedCustomerData:
        session = self.acquire(snapshot_json)
        page = session.page
        self.ensure_customer_search_ready(page)

        if has_match(page, ADDRESS_FIELD_MATCHERS):
            self.fill_field(page, ADDRESS_FIELD_MATCHERS, address.full_address, field="address")
        else:
            street_fields = [
                (STREET_NUMBER_FIELD_MATCHERS, address.street_number, "street_number"),
                (STREET_NAME_FIELD_MATCHERS, address.street_name, "street_name"),
            ]
            present = [entry for entry in street_fields if has_match(page, entry[0])]
            if not present:
                raise FieldNotFoundError(
                    "Could not find SCE address fields on customer-search page. "
                    "Check login and selectors."
                )
            for matchers, value, field in present:
                self.fill_field(page, matchers, value, field=field)

        try:
            self.fill_field(page, ZIP_FIELD_MATCHERS, address.zip_code, field="zip")
        except FieldNotFoundError as exc:
            raise FieldNotFoundError(
                "Could not find SCE zip field on customer-search page."
            ) from exc

        if not click_first_matching(page, CUSTOMER_SEARCH_SELECTORS.search_button):
            raise FieldNotFoundError("Could not find SCE search button after filling address.")

        wait_for_dom_quiescence(page, timeout_ms=config.SEARCH_SETTLE_TIMEOUT_MS)

        if self.has_login_prompt(page):
            raise SessionExpiredError(
                "SCE session expired during search. Please refresh the session JSON."
            )

        data = ExtractedCustomerData(
            customer_name=first_value_from_selectors(page, CUSTOMER_FIELD_SELECTORS.name),
            customer_phone=first_value_from_selectors(page, CUSTOMER_FIELD_SELECTORS.phone),
            customer_email=first_value_from_selectors(page, CUSTOMER_FIELD_SELECTORS.email),
        )
        if not data.has_any_data():
            raise NoDataExtractedError(
                "Customer data not found after search. "
                "Verify selectors and ensure the address exists in SCE."
            )
        return data


class LoginBridge:
    """Credential login state machine, from the Trade Ally form to customer-search."""

    def __init__(self, client: PlaywrightAutomationClient, page: Page) -> None:
        self.client = client
        self.page = page
        self.state = LoginState.AT_LOGIN_PAGE

    def _transition(self, state: LoginState, **fields: Any) -> None:
        _extraction_event(
            "login",
            phase="state",
            from_state=self.state.value,
            to_state=state.value,
            url=self.page.url,
            **fields,
        )
        self.state = state

    def _fail(self, message: str) -> LoginRequiredError:
        self._transition(LoginState.LOGIN_FAILED, reason=message)
        return LoginRequiredError(message)

    def run(self, username: str, password: str) -> LoginState:
        client, page = self.client, self.page

        try:
            client.navigate_with_retry(page, client.login_url, label="login")
        except NavigationError as exc:
            raise self._fail(f"SCE login page could not be reached: {exc}") from exc
        timeout_ms = config.login_form_timeout_ms()
        if not (
            client.wait_for_any_selector(page, LOGIN_FORM_SELECTORS.username, timeout_ms)
            and client.wait_for_any_selector(page, LOGIN_FORM_SELECTORS.password, timeout_ms)
        ):
            raise self._fail("Could not find SCE login fields on the login page.")

        try:
            client.fill_field(page, LOGIN_USERNAME_MATCHERS, username, field="username")
            client.fill_field(page, LOGIN_PASSWORD_MATCHERS, password, field="password", secret=True)
        except FieldNotFoundError as exc:
            raise self._fail("Could not find SCE login fields on the login page.") from exc
        except FieldValueMismatchError as exc:
            raise self._fail(f"SCE login form did not accept the credentials: {exc}") from exc
        if not click_first_matching(page, LOGIN_FORM_SELECTORS.submit):
            raise self._fail("Could not find SCE login submit button.")
        self._transition(LoginState.CREDENTIALS_SUBMITTED)

        try:
            page.wait_for_load_state("networkidle", timeout=6000)
        except PWError:
            pass

        self._transition(LoginState.IN_IDP_LOGIN_FLOW)
        client.wait_for_login_flow(page)
        client._pause(page, 1200)

        on_trade_ally = portal_urls.is_on_trade_ally_host(page.url)
        if on_trade_ally and portal_urls.normalize_path(
            portal_urls.path_of(page.url)
        ).startswith(portal_urls.TRADE_ALLY_LOGIN_PATH) and client.has_login_prompt(page):
            raise self._fail(
                "SCE login required: the Trade Ally login form is still shown after "
                "submitting credentials. Check the username and password."
            )

        if on_trade_ally or client.has_trade_ally_session(page):
            self._transition(LoginState.SSO_BRIDGE_IN_FLIGHT)
            client.run_sso_bridge(page)

        try:
            client.ensure_customer_search_ready(page)
        except AccessDeniedError as exc:
            self._transition(LoginState.ACCESS_DENIED, reason=str(exc))
            raise
        except (LoginRequiredError, SessionExpiredError) as exc:
            self._transition(LoginState.LOGIN_FAILED, reason=str(exc))
            raise

        self._transition(LoginState.CUSTOMER_SEARCH_READY)
        return self.state


__all__ = [
    "LoginState",
    "ActiveSession",
    "PlaywrightAutomationClient",
    "LoginBridge",
    "parse_storage_state",
]
