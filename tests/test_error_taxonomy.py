from __future__ import annotations

import pytest

from enroll_sync.extraction.errors import (
    AccessDeniedError,
    ConfigurationError,
    DecryptionError,
    ErrorCode,
    FieldNotFoundError,
    LoginRequiredError,
    NavigationError,
    NoDataExtractedError,
    NotFoundError,
    OptionNotFoundError,
    RunNotFoundError,
    SessionExpiredError,
    error_code_for,
    is_shared_session_failure,
    short_error_message,
)


@pytest.mark.parametrize(
    "error",
    [
        LoginRequiredError("SCE login required for https://sce.dsmcentral.com/onsite/customer-search."),
        SessionExpiredError("SCE session expired during search."),
        AccessDeniedError("account has no customer-search access"),
        DecryptionError("Unable to decrypt session state"),
        NavigationError("Unable to navigate to https://sce.dsmcentral.com/onsite/customer-search"),
    ],
)
def test_session_level_errors_are_shared_failures(error: Exception) -> None:
    assert is_shared_session_failure(error) is True


@pytest.mark.parametrize(
    "error",
    [
        FieldNotFoundError("Could not find SCE zip field on customer-search page."),
        OptionNotFoundError('Option "Gas" not found in "Fuel"'),
        NoDataExtractedError("Customer data not found after search."),
        # Typed errors are classified by type, never by message.
        NoDataExtractedError("SCE login required somewhere in the message"),
    ],
)
def test_address_level_errors_are_not_shared_failures(error: Exception) -> None:
    assert is_shared_session_failure(error) is False


@pytest.mark.parametrize(
    "message, expected",
    [
        ("SCE login required for https://example.test", True),
        ("SCE session expired during search", True),
        ("This SCE account/session does not have access to customer-search.", True),
        ("SCE login succeeded but landed on /onsite instead of /onsite/customer-search", True),
        ("Timeout 30000ms exceeded", False),
        ("net::ERR_CONNECTION_RESET", False),
    ],
)
def test_untyped_errors_fall_back_to_message_patterns(message: str, expected: bool) -> None:
    assert is_shared_session_failure(RuntimeError(message)) is expected


def test_error_code_for_typed_and_untyped_errors() -> None:
    assert error_code_for(SessionExpiredError("x")) == ErrorCode.SESSION_EXPIRED
    assert error_code_for(OptionNotFoundError("x", available=("A",))) == ErrorCode.OPTION_NOT_FOUND
    assert error_code_for(ConfigurationError("x")) == ErrorCode.CONFIGURATION
    assert error_code_for(RuntimeError("SCE login required")) == ErrorCode.LOGIN_REQUIRED
    assert error_code_for(RuntimeError("boom")) == ErrorCode.INTERNAL


def test_option_not_found_is_a_field_not_found_error() -> None:
    error = OptionNotFoundError("missing", available=("Gas", "Electric"))

    assert isinstance(error, FieldNotFoundError)
    assert error.available == ("Gas", "Electric")


def test_not_found_messages_name_the_resource() -> None:
    assert str(NotFoundError("ExtractionSession", 7)) == "ExtractionSession with id '7' not found"
    assert str(RunNotFoundError(3)) == "ExtractionRun with id '3' not found"
    assert str(NotFoundError("Property")) == "Property not found"


def test_short_error_message_flattens_and_bounds_text() -> None:
    assert short_error_message(RuntimeError("line one\n   line two")) == "line one line two"
    assert short_error_message(ValueError("")) == "ValueError"

    long_message = short_error_message(RuntimeError("x" * 900), max_length=50)
    assert len(long_message) == 50
    assert long_message.endswith("...")
