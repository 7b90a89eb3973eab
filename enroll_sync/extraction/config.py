"""Configuration constants for the customer extraction engine."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("ENROLL_SYNC_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
EXPORTS_DIR: Path = DATA_DIR / "exports"
DB_PATH: Path = DATA_DIR / "enroll_sync.db"

DEFAULT_SCE_LOGIN_URL: str = (
    "https://sce-trade-ally-community.my.site.com/tradeally/s/login/"
    "?ec=302&inst=Vt&startURL=%2Ftradeally%2Fsite%2FSiteLogin.apexp"
)

SCE_BASE_URL: str = os.getenv("SCE_BASE_URL", "https://sce.dsmcentral.com").strip()
SCE_FORM_PATH: str = os.getenv("SCE_FORM_PATH", "/onsite/customer-search").strip()
SCE_LOGIN_URL: str = os.getenv("SCE_LOGIN_URL", DEFAULT_SCE_LOGIN_URL).strip()

SCE_AUTOMATION_ENABLED: bool = os.getenv("SCE_AUTOMATION_ENABLED", "false").strip().lower() == "true"
SCE_SESSION_ENCRYPTION_KEY: str = os.getenv("SCE_SESSION_ENCRYPTION_KEY", "")
SCE_HEADLESS: bool = os.getenv("SCE_HEADLESS", "true").strip().lower() not in {"0", "false"}


def _parse_int_ms(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a millisecond value from the environment with a lower bound."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Default timeout applied to every Playwright page action.
SCE_AUTOMATION_TIMEOUT_MS: int = _parse_int_ms("SCE_AUTOMATION_TIMEOUT_MS", 45000)

# Settle window after submitting the customer search.
SEARCH_SETTLE_TIMEOUT_MS: int = _parse_int_ms("SCE_SEARCH_SETTLE_TIMEOUT_MS", 3000)
DOM_QUIET_WINDOW_MS: int = _parse_int_ms("SCE_DOM_QUIET_WINDOW_MS", 250)

# Dropdown overlays are expected to render quickly once opened.
DROPDOWN_OVERLAY_TIMEOUT_MS: int = _parse_int_ms("SCE_DROPDOWN_OVERLAY_TIMEOUT_MS", 3000)

FILL_MAX_ATTEMPTS: int = int(os.getenv("SCE_FILL_MAX_ATTEMPTS", "3"))
FILL_RETRY_BASE_DELAY_SECONDS: float = float(os.getenv("SCE_FILL_RETRY_BASE_DELAY_SECONDS", "0.3"))

SSO_BRIDGE_MAX_ATTEMPTS: int = int(os.getenv("SCE_SSO_BRIDGE_MAX_ATTEMPTS", "5"))
NAVIGATION_MAX_ATTEMPTS: int = int(os.getenv("SCE_NAVIGATION_MAX_ATTEMPTS", "3"))

# Polling of the identity-provider login flow.
LOGIN_FLOW_POLL_INTERVAL_SECONDS: float = float(
    os.getenv("SCE_LOGIN_FLOW_POLL_INTERVAL_SECONDS", "0.5")
)

SESSION_LABEL_MAX_LENGTH: int = 200
USERNAME_MAX_LENGTH: int = 320
PASSWORD_MAX_LENGTH: int = 500


def login_form_timeout_ms() -> int:
    """Bounded wait for the login form, derived from the automation timeout."""

    return min(max(SCE_AUTOMATION_TIMEOUT_MS, 2000), 15000)


def login_flow_timeout_ms() -> int:
    """Bounded wait for the identity-provider redirect flow to clear."""

    return min(max(SCE_AUTOMATION_TIMEOUT_MS, 10000), 30000)


def automation_enabled() -> bool:
    """Return True when cloud extraction operations may run."""

    return SCE_AUTOMATION_ENABLED
