from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

from .errors import ErrorCode, ExtractionError
from .logging_utils import _extraction_event

T = TypeVar("T")

RETRYABLE_ERROR_CODES = {
    ErrorCode.NAVIGATION,
    ErrorCode.FIELD_NOT_FOUND,
    ErrorCode.FIELD_VALUE_MISMATCH,
}

NON_RETRYABLE_ERROR_CODES = {
    ErrorCode.CONFIGURATION,
    ErrorCode.DECRYPTION,
    ErrorCode.ACCESS_DENIED,
    ErrorCode.LOGIN_REQUIRED,
    ErrorCode.SESSION_EXPIRED,
    ErrorCode.NO_DATA_EXTRACTED,
    # Dropdown options do not appear on a second look.
    ErrorCode.OPTION_NOT_FOUND,
    ErrorCode.PROPERTY_NOT_FOUND,
}


def compute_backoff_seconds(
    attempt_index: int, *, base_seconds: float = 1.0, cap_seconds: float = 30.0
) -> float:
    """Return a capped exponential backoff for the given attempt (1-based)."""

    return float(min(base_seconds * (2 ** max(0, attempt_index - 1)), cap_seconds))


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    error_code: Optional[str] = None,
    context: Optional[str] = None,
) -> bool:
    """Decide whether a failed attempt should be retried."""

    code = (error_code or "").strip()
    if not code and isinstance(error, ExtractionError):
        code = error.error_code

    if attempt_index >= max_attempts:
        kind, will_retry = "capped", False
    elif code in NON_RETRYABLE_ERROR_CODES:
        kind, will_retry = "non_retryable", False
    elif code in RETRYABLE_ERROR_CODES:
        kind, will_retry = "retryable", True
    else:
        # Unknown failure: allow retries up to the cap, the page is asynchronous.
        kind, will_retry = ("unknown" if code else "missing_error_code"), True

    _extraction_event(
        "state",
        phase="retry_decision",
        kind=kind,
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        context=context,
        will_retry=will_retry,
        error_repr=repr(error) if error is not None and kind != "capped" else None,
    )
    return will_retry


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay_seconds: float = 0.5,
    max_delay_seconds: float = 10.0,
    context: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or the retry policy gives up.

    The last exception is re-raised unchanged once attempts are exhausted or a
    non-retryable error code is seen.
    """

    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001
            if not decide_retry(attempt, attempts, exc, context=context):
                raise
            sleep(
                compute_backoff_seconds(
                    attempt, base_seconds=base_delay_seconds, cap_seconds=max_delay_seconds
                )
            )
    raise AssertionError("unreachable")  # pragma: no cover


def poll_until(
    predicate: Callable[[], bool],
    *,
    timeout_seconds: float,
    interval_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll ``predicate`` until it holds or ``timeout_seconds`` elapses.

    Returns the final predicate outcome. The predicate is always evaluated at
    least once and never after the deadline has passed.
    """

    deadline = clock() + max(0.0, timeout_seconds)
    while True:
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval_seconds, remaining))


__all__ = [
    "RETRYABLE_ERROR_CODES",
    "NON_RETRYABLE_ERROR_CODES",
    "compute_backoff_seconds",
    "decide_retry",
    "retry_with_backoff",
    "poll_until",
]
