"""Ordered selector fallback for reads and writes against the SCE portal DOM.

Every lookup goes through a chain of matchers. A matcher is a pure function
of the page that returns a locator or ``None``; :func:`resolve` walks the
chain in order and stops at the first hit. The portal is an Angular Material
application, so writes go through the native value setter and synthesize the
events Angular listens for, and readiness is detected by waiting for the DOM
to stop mutating instead of sleeping for a fixed time.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from playwright.sync_api import Error as PWError, Locator, Page, TimeoutError as PWTimeout

from . import config
from .errors import FieldNotFoundError, FieldValueMismatchError, OptionNotFoundError
from .logging_utils import _extraction_event
from .retry_policy import retry_with_backoff
from .selectors import MATERIAL_SELECTORS, pick_first_non_empty

_REQUIRED_MARKER_RE = re.compile(r"^\*\s*")

# Native setter + the events Angular's change detection listens for.
_SET_VALUE_SCRIPT = """
(element, value) => {
  const proto = element instanceof HTMLTextAreaElement
    ? HTMLTextAreaElement.prototype
    : HTMLInputElement.prototype;
  const setter = Object.getOwnPropertyDescriptor(proto, 'value')?.set;
  if (setter) {
    setter.call(element, value);
  } else {
    element.value = value;
  }
  element.dispatchEvent(new Event('input', { bubbles: true }));
  element.dispatchEvent(new Event('change', { bubbles: true }));
  element.dispatchEvent(new FocusEvent('blur', { bubbles: true }));
}
"""

_DOM_QUIESCENCE_SCRIPT = """
({ timeoutMs, quietMs }) => new Promise((resolve) => {
  const root = document.body || document.documentElement;
  if (!root) {
    resolve(true);
    return;
  }
  let lastMutation = Date.now();
  const observer = new MutationObserver(() => {
    lastMutation = Date.now();
  });
  observer.observe(root, { childList: true, subtree: true, attributes: true });
  let check = null;
  let timer = null;
  const finish = (quiet) => {
    clearInterval(check);
    clearTimeout(timer);
    observer.disconnect();
    resolve(quiet);
  };
  check = setInterval(() => {
    if (Date.now() - lastMutation > quietMs) {
      finish(true);
    }
  }, 50);
  timer = setTimeout(() => finish(false), timeoutMs);
})
"""


@dataclass(frozen=True)
class Matcher:
    """One lookup strategy in a fallback chain."""

    strategy: str
    target: str
    find: Callable[[Page], Optional[Locator]]

    def __call__(self, page: Page) -> Optional[Locator]:
        return self.find(page)


def _first_if_present(locator: Locator) -> Optional[Locator]:
    try:
        if locator.count() > 0:
            return locator.first
    except PWError:
        return None
    return None


def _closest_form_field(label: Locator) -> Locator:
    return label.locator(f"xpath=ancestor::{MATERIAL_SELECTORS.form_field}[1]")


def _label_texts(page: Page) -> List[str]:
    labels = page.locator(f"{MATERIAL_SELECTORS.form_field} {MATERIAL_SELECTORS.label}")
    try:
        return [text or "" for text in labels.all_text_contents()]
    except PWError:
        return []


def css_matcher(selector: str) -> Matcher:
    return Matcher("css", selector, lambda page: _first_if_present(page.locator(selector)))


def anchor_matcher(anchor: str) -> Matcher:
    escaped = anchor.replace("\\", "\\\\").replace('"', '\\"')
    selector = (
        f'{MATERIAL_SELECTORS.form_field}[{MATERIAL_SELECTORS.anchor_attribute}="{escaped}"]'
    )
    return Matcher("anchor", anchor, lambda page: _first_if_present(page.locator(selector)))


def label_exact_matcher(label: str) -> Matcher:
    """Match a form field whose label equals ``label`` once a leading ``*`` is stripped."""

    def find(page: Page) -> Optional[Locator]:
        for index, text in enumerate(_label_texts(page)):
            if _REQUIRED_MARKER_RE.sub("", text.strip()) == label:
                labels = page.locator(
                    f"{MATERIAL_SELECTORS.form_field} {MATERIAL_SELECTORS.label}"
                )
                return _closest_form_field(labels.nth(index))
        return None

    return Matcher("label_exact", label, find)


def label_partial_matcher(label: str) -> Matcher:
    needle = label.lower()

    def find(page: Page) -> Optional[Locator]:
        for index, text in enumerate(_label_texts(page)):
            if needle in text.lower():
                labels = page.locator(
                    f"{MATERIAL_SELECTORS.form_field} {MATERIAL_SELECTORS.label}"
                )
                return _closest_form_field(labels.nth(index))
        return None

    return Matcher("label_partial", label, find)


def within(matcher: Matcher, selector: str) -> Matcher:
    """Narrow ``matcher``'s hit to its first descendant matching ``selector``."""

    def find(page: Page) -> Optional[Locator]:
        container = matcher(page)
        if container is None:
            return None
        return _first_if_present(container.locator(selector))

    return Matcher(matcher.strategy, matcher.target, find)


def resolve(page: Page, matchers: Sequence[Matcher]) -> Optional[Locator]:
    """Return the first locator produced by ``matchers``, evaluated in order.

    Evaluation stops at the first hit; matchers never touch page state.
    """

    for matcher in matchers:
        found = matcher(page)
        if found is not None:
            _extraction_event(
                "selector",
                phase="resolve",
                strategy=matcher.strategy,
                target=matcher.target,
            )
            return found
    return None


def has_match(page: Page, matchers: Sequence[Matcher]) -> bool:
    """Presence check over a chain; unlike :func:`resolve` it logs nothing."""

    return any(matcher(page) is not None for matcher in matchers)


def field_matchers(label_or_anchor: str) -> List[Matcher]:
    """Default chain: stable anchor attribute, exact label, partial label."""

    return [
        anchor_matcher(label_or_anchor),
        label_exact_matcher(label_or_anchor),
        label_partial_matcher(label_or_anchor),
    ]


def input_matchers(label_or_anchor: str) -> List[Matcher]:
    return [within(m, MATERIAL_SELECTORS.text_control) for m in field_matchers(label_or_anchor)]


def css_matchers(selectors: Iterable[str]) -> List[Matcher]:
    return [css_matcher(selector) for selector in selectors]


def text_field_matchers(label_or_anchor: str, fallbacks: Iterable[str]) -> List[Matcher]:
    """Material text field chain for ``label_or_anchor``, then plain CSS ``fallbacks``."""

    return input_matchers(label_or_anchor) + css_matchers(fallbacks)


def find_form_field(page: Page, label_or_anchor: str) -> Optional[Locator]:
    return resolve(page, field_matchers(label_or_anchor))


def find_input(page: Page, label_or_anchor: str) -> Optional[Locator]:
    form_field = find_form_field(page, label_or_anchor)
    if form_field is None:
        return None
    return _first_if_present(form_field.locator(MATERIAL_SELECTORS.text_control))


def find_select(page: Page, label_or_anchor: str) -> Optional[Locator]:
    form_field = find_form_field(page, label_or_anchor)
    if form_field is None:
        return None
    return _first_if_present(form_field.locator(MATERIAL_SELECTORS.select_control))


def set_field_value(control: Locator, value: str) -> None:
    """Write ``value`` through the native setter and fire input/change/blur."""

    control.evaluate(_SET_VALUE_SCRIPT, value)


def wait_for_dom_quiescence(
    page: Page,
    timeout_ms: Optional[int] = None,
    quiet_window_ms: Optional[int] = None,
) -> bool:
    """Wait until the DOM has been quiet for ``quiet_window_ms``.

    Returns True on a quiet window and False when ``timeout_ms`` elapsed first
    or the page navigated away mid-wait. Never blocks past the timeout.
    """

    timeout = config.SEARCH_SETTLE_TIMEOUT_MS if timeout_ms is None else max(0, timeout_ms)
    quiet = config.DOM_QUIET_WINDOW_MS if quiet_window_ms is None else max(0, quiet_window_ms)
    try:
        return bool(
            page.evaluate(_DOM_QUIESCENCE_SCRIPT, {"timeoutMs": timeout, "quietMs": quiet})
        )
    except PWError as exc:
        _extraction_event(
            "dom",
            phase="quiescence",
            step="evaluate_failed",
            timeout_ms=timeout,
            error=str(exc),
        )
        return False


def select_dropdown_option(
    page: Page,
    control: Locator,
    option_text: str,
    *,
    label: str,
    timeout_ms: Optional[int] = None,
) -> None:
    """Open a ``mat-select`` and click the option whose text matches ``option_text``.

    Matching is trimmed and case-insensitive. When nothing matches, the
    overlay is dismissed and ``OptionNotFoundError`` lists what was offered.
    """

    wait_ms = config.DROPDOWN_OVERLAY_TIMEOUT_MS if timeout_ms is None else timeout_ms
    control.click()

    options = page.locator(MATERIAL_SELECTORS.overlay_option)
    try:
        options.first.wait_for(state="visible", timeout=wait_ms)
    except PWTimeout as exc:
        raise FieldNotFoundError(f'Dropdown overlay did not open for: "{label}"') from exc

    texts = [(text or "").strip() for text in options.all_text_contents()]
    wanted = option_text.strip().lower()
    for index, text in enumerate(texts):
        if text.lower() == wanted:
            options.nth(index).click()
            _extraction_event("selector", phase="select_option", field=label, option=text)
            wait_for_dom_quiescence(page, timeout_ms=2000)
            return

    backdrop = _first_if_present(page.locator(MATERIAL_SELECTORS.overlay_backdrop))
    if backdrop is not None:
        try:
            backdrop.click()
        except PWError:
            pass

    raise OptionNotFoundError(
        f'Option "{option_text}" not found in "{label}". Available: {", ".join(texts)}',
        available=tuple(texts),
    )


def fill_with_retry(
    page: Page,
    matchers: Sequence[Matcher],
    value: str,
    *,
    label: str,
    max_attempts: Optional[int] = None,
    base_delay_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    secret: bool = False,
) -> Locator:
    """Resolve, clear, set and verify a text control, retrying with backoff.

    Raises ``FieldNotFoundError`` when no matcher ever hits and
    ``FieldValueMismatchError`` when the written value never reads back.
    With ``secret`` the values are left out of the mismatch message.
    """

    def attempt() -> Locator:
        control = resolve(page, matchers)
        if control is None:
            raise FieldNotFoundError(f'Field not found: "{label}"')

        control.focus()
        set_field_value(control, "")
        set_field_value(control, value)
        wait_for_dom_quiescence(page, timeout_ms=1000)

        actual = control.input_value()
        if actual != value:
            if secret:
                raise FieldValueMismatchError(f'Field "{label}" value mismatch')
            raise FieldValueMismatchError(
                f'Field "{label}" value mismatch: expected "{value}", got "{actual}"'
            )
        _extraction_event("selector", phase="fill", field=label)
        return control

    return retry_with_backoff(
        attempt,
        max_attempts=config.FILL_MAX_ATTEMPTS if max_attempts is None else max_attempts,
        base_delay_seconds=(
            config.FILL_RETRY_BASE_DELAY_SECONDS
            if base_delay_seconds is None
            else base_delay_seconds
        ),
        context=f"fill:{label}",
        sleep=sleep,
    )


# --- helpers over plain CSS fallback lists ---------------------------------


def has_any_selector(page: Page, selectors: Iterable[str]) -> bool:
    for selector in selectors:
        try:
            if page.locator(selector).count() > 0:
                return True
        except PWError:
            continue
    return False


def click_first_matching(page: Page, selectors: Iterable[str]) -> bool:
    for selector in selectors:
        locator = _first_if_present(page.locator(selector))
        if locator is None:
            continue
        try:
            locator.click()
            return True
        except PWError:
            continue
    return False


def _locator_value(locator: Locator) -> str:
    """Input value for form controls, text content for everything else."""

    try:
        value = locator.input_value()
        if value:
            return value
    except PWError:
        pass
    try:
        return locator.text_content() or ""
    except PWError:
        return ""


def first_value_from_selectors(page: Page, selectors: Iterable[str]) -> Optional[str]:
    values: List[Optional[str]] = []
    for selector in selectors:
        locator = _first_if_present(page.locator(selector))
        if locator is not None:
            values.append(_locator_value(locator))
    return pick_first_non_empty(values)


def read_field_value(page: Page, label_or_anchor: str) -> Optional[str]:
    """Current value of a labelled text field or the selected ``mat-select`` text."""

    control = find_input(page, label_or_anchor)
    if control is not None:
        try:
            return control.input_value() or None
        except PWError:
            return None

    select = find_select(page, label_or_anchor)
    if select is not None:
        value_text = _first_if_present(select.locator(MATERIAL_SELECTORS.select_value_text))
        if value_text is not None:
            return pick_first_non_empty([value_text.text_content()])
    return None


__all__ = [
    "Matcher",
    "css_matcher",
    "anchor_matcher",
    "label_exact_matcher",
    "label_partial_matcher",
    "within",
    "resolve",
    "has_match",
    "field_matchers",
    "input_matchers",
    "css_matchers",
    "find_form_field",
    "find_input",
    "find_select",
    "set_field_value",
    "wait_for_dom_quiescence",
    "select_dropdown_option",
    "fill_with_retry",
    "has_any_selector",
    "text_field_matchers",
    "click_first_matching",
    "first_value_from_selectors",
    "read_field_value",
    "pick_first_non_empty",
]
