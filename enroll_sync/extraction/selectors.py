from __future__ import annotations

"""Selector fallback lists for the SCE portal pages.

Each tuple is an ordered fallback list: the most specific selector first and
the broadest last. The portal's markup drifts between releases, so callers
walk a list until one selector matches rather than relying on a single id.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple


@dataclass(frozen=True)
class LoginFormSelectors:
    """Trade Ally community login page."""

    username: Tuple[str, ...] = (
        'input#login',
        'input[placeholder*="first.last@sce.tac" i]',
        'input[aria-label*="email" i]',
        'input[type="text"]',
    )
    password: Tuple[str, ...] = (
        'input#password',
        'input[placeholder*="password" i]',
        'input[type="password"]',
    )
    submit: Tuple[str, ...] = (
        'button:has-text("Login")',
        'button:has-text("Log In")',
        'button:has-text("Sign in")',
        'button[type="submit"]',
        'input[type="submit"]',
    )
    # Selectors used to recognise a login prompt on any page.
    prompt_login: str = 'input#login, input[name*="login" i], input[aria-label*="email" i]'
    prompt_password: str = 'input#password, input[type="password"]'


@dataclass(frozen=True)
class CustomerSearchSelectors:
    """Customer-search form on the enrollment portal."""

    # mat-form-field qaanchor or mat-label text, tried before the CSS lists.
    address_field: str = "Address"
    street_number_field: str = "Street Number"
    street_name_field: str = "Street Name"
    zip_field: str = "Zip Code"

    address_full: Tuple[str, ...] = (
        'input[aria-label*="address" i]',
        'input[name*="address" i]',
        'input[placeholder*="address" i]',
    )
    street_number: Tuple[str, ...] = (
        'input[aria-label*="street number" i]',
        'input[name*="streetNumber" i]',
        'input[placeholder*="street number" i]',
    )
    street_name: Tuple[str, ...] = (
        'input[aria-label*="street name" i]',
        'input[name*="streetName" i]',
        'input[placeholder*="street name" i]',
    )
    zip_code: Tuple[str, ...] = (
        'input[aria-label*="zip" i]',
        'input[name*="zip" i]',
        'input[placeholder*="zip" i]',
    )
    search_button: Tuple[str, ...] = (
        'button:has-text("Search")',
        'button[type="submit"]',
        'input[type="submit"]',
    )


@dataclass(frozen=True)
class CustomerFieldSelectors:
    """Read-back locations for the contact fields shown after a search."""

    name: Tuple[str, ...] = (
        '[aria-label*="customer name" i]',
        'input[name*="customerName" i]',
        '[data-field-name*="customerName" i]',
        '.customer-name',
        'input[placeholder*="name" i]',
    )
    phone: Tuple[str, ...] = (
        '[aria-label*="phone" i]',
        'input[name*="phone" i]',
        '[data-field-name*="phone" i]',
        '.customer-phone',
        'input[type="tel"]',
    )
    email: Tuple[str, ...] = (
        '[aria-label*="email" i]',
        'input[name*="email" i]',
        'input[type="email"]',
    )


@dataclass(frozen=True)
class NavigationSelectors:
    customer_search_link: Tuple[str, ...] = (
        'a:has-text("Customer Search")',
        'button:has-text("Customer Search")',
        '[role="menuitem"]:has-text("Customer Search")',
        '[data-testid*="customer-search" i]',
    )


@dataclass(frozen=True)
class AngularMaterialSelectors:
    """Structural hooks of the Angular Material form controls the portal renders."""

    form_field: str = "mat-form-field"
    label: str = "mat-label"
    anchor_attribute: str = "qaanchor"
    text_control: str = (
        "input.mat-input-element, input.mat-mdc-input-element, input[matinput], textarea"
    )
    select_control: str = "mat-select"
    select_value_text: str = ".mat-select-value-text, .mat-mdc-select-value-text"
    overlay_option: str = ".cdk-overlay-container mat-option"
    overlay_backdrop: str = ".cdk-overlay-backdrop"


LOGIN_FORM_SELECTORS = LoginFormSelectors()
CUSTOMER_SEARCH_SELECTORS = CustomerSearchSelectors()
CUSTOMER_FIELD_SELECTORS = CustomerFieldSelectors()
NAVIGATION_SELECTORS = NavigationSelectors()
MATERIAL_SELECTORS = AngularMaterialSelectors()


def pick_first_non_empty(values: Iterable[Optional[str]]) -> Optional[str]:
    """Return the first value that is a non-blank string, trimmed."""

    for value in values:
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if trimmed:
            return trimmed
    return None


__all__ = [
    "LoginFormSelectors",
    "CustomerSearchSelectors",
    "CustomerFieldSelectors",
    "NavigationSelectors",
    "AngularMaterialSelectors",
    "LOGIN_FORM_SELECTORS",
    "CUSTOMER_SEARCH_SELECTORS",
    "CUSTOMER_FIELD_SELECTORS",
    "NAVIGATION_SELECTORS",
    "MATERIAL_SELECTORS",
    "pick_first_non_empty",
]
