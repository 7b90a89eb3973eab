from __future__ import annotations

"""Error taxonomy for session handling and customer extraction.

Every failure raised by the engine carries an ``error_code`` from
:class:`ErrorCode`. The codes are written to structured logs and let the run
orchestrator decide whether a failure is scoped to one address or poisons the
shared browser session for the rest of a batch.
"""

from typing import Optional


class ErrorCode:
    CONFIGURATION = "configuration_error"
    DECRYPTION = "decryption_error"
    LOGIN_REQUIRED = "login_required"
    SESSION_EXPIRED = "session_expired"
    ACCESS_DENIED = "access_denied"
    FIELD_NOT_FOUND = "field_not_found"
    OPTION_NOT_FOUND = "option_not_found"
    FIELD_VALUE_MISMATCH = "field_value_mismatch"
    NO_DATA_EXTRACTED = "no_data_extracted"
    NAVIGATION = "navigation_error"
    PROPERTY_NOT_FOUND = "property_not_found"
    SHARED_SESSION_SKIPPED = "shared_session_skipped"
    INTERNAL = "internal_error"


class ExtractionError(Exception):
    """Base class for every typed failure raised by the extraction engine."""

    error_code: str = ErrorCode.INTERNAL

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ConfigurationError(ExtractionError):
    error_code = ErrorCode.CONFIGURATION


class DecryptionError(ExtractionError):
    error_code = ErrorCode.DECRYPTION


class LoginRequiredError(ExtractionError):
    error_code = ErrorCode.LOGIN_REQUIRED


class SessionExpiredError(ExtractionError):
    error_code = ErrorCode.SESSION_EXPIRED


class AccessDeniedError(ExtractionError):
    error_code = ErrorCode.ACCESS_DENIED


class FieldNotFoundError(ExtractionError):
    error_code = ErrorCode.FIELD_NOT_FOUND


class OptionNotFoundError(FieldNotFoundError):
    error_code = ErrorCode.OPTION_NOT_FOUND

    def __init__(self, message: str, *, available: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.available = available


class FieldValueMismatchError(ExtractionError):
    error_code = ErrorCode.FIELD_VALUE_MISMATCH


class NoDataExtractedError(ExtractionError):
    error_code = ErrorCode.NO_DATA_EXTRACTED


class NavigationError(ExtractionError):
    error_code = ErrorCode.NAVIGATION


# Service-level errors raised by the exposed operations.


class ValidationError(ExtractionError):
    error_code = "validation_error"


class NotFoundError(ExtractionError):
    error_code = "not_found"

    def __init__(self, resource: str, resource_id: object | None = None) -> None:
        message = (
            f"{resource} with id '{resource_id}' not found"
            if resource_id is not None
            else f"{resource} not found"
        )
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: int) -> None:
        super().__init__("ExtractionRun", run_id)


class RunConflictError(ExtractionError):
    error_code = "run_conflict"


class FeatureDisabledError(ConfigurationError):
    pass


# Errors that describe the shared browser session rather than one address.
SESSION_LEVEL_ERRORS: tuple[type[ExtractionError], ...] = (
    LoginRequiredError,
    SessionExpiredError,
    AccessDeniedError,
    DecryptionError,
    # Navigation is only exhausted when the portal itself is unreachable.
    NavigationError,
)

# Fallback for untyped exceptions bubbling out of an injected client.
SHARED_SESSION_FAILURE_PATTERNS: tuple[str, ...] = (
    "sce login required",
    "sce session expired",
    "does not have access to customer-search",
    "landed on",
)

SHARED_SESSION_SKIP_PREFIX = "Skipped after shared SCE session failure"


def is_shared_session_failure(error: BaseException) -> bool:
    """Return True when ``error`` invalidates the session for the whole batch."""

    if isinstance(error, SESSION_LEVEL_ERRORS):
        return True
    if isinstance(error, ExtractionError):
        return False
    normalized = str(error).lower()
    return any(pattern in normalized for pattern in SHARED_SESSION_FAILURE_PATTERNS)


def error_code_for(error: BaseException) -> str:
    if isinstance(error, ExtractionError):
        return error.error_code
    if is_shared_session_failure(error):
        return ErrorCode.LOGIN_REQUIRED
    return ErrorCode.INTERNAL


def short_error_message(error: BaseException, max_length: int = 500) -> str:
    """Return a single-line, bounded error message for persistence."""

    message = str(error).strip() or type(error).__name__
    message = " ".join(message.split())
    if len(message) > max_length:
        return message[: max_length - 3] + "..."
    return message


__all__ = [
    "ErrorCode",
    "ExtractionError",
    "ConfigurationError",
    "DecryptionError",
    "LoginRequiredError",
    "SessionExpiredError",
    "AccessDeniedError",
    "FieldNotFoundError",
    "OptionNotFoundError",
    "FieldValueMismatchError",
    "NoDataExtractedError",
    "NavigationError",
    "ValidationError",
    "NotFoundError",
    "RunNotFoundError",
    "RunConflictError",
    "FeatureDisabledError",
    "SESSION_LEVEL_ERRORS",
    "SHARED_SESSION_FAILURE_PATTERNS",
    "SHARED_SESSION_SKIP_PREFIX",
    "is_shared_session_failure",
    "error_code_for",
    "short_error_message",
]
