"""Operations exposed to callers: session management and run lifecycle.

Inputs are validated here before anything reaches the database or the
browser. Browser work is injected (``state_factory``, ``validator``,
``launcher``) so callers and tests can substitute their own.
"""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from . import config, db
from .automation_client import PlaywrightAutomationClient
from .date_utils import format_iso_utc, now_iso, parse_iso_utc, utc_now
from .errors import (
    ConfigurationError,
    DecryptionError,
    FeatureDisabledError,
    NotFoundError,
    RunConflictError,
    RunNotFoundError,
    ValidationError,
    short_error_message,
)
from .logging_utils import _extraction_event
from .models import ExtractionRun, ExtractionSession, Property, RunStatus
from .session_vault import decrypt_json, encrypt_json, is_session_usable, require_encryption_key
from .utils import log_line, log_warning
from .worker import load_run, process_extraction_run

StateFactory = Callable[[str, str], str]
SessionValidator = Callable[[str], str]
RunLauncher = Callable[[int], Any]


@dataclass
class SessionValidationResult:
    session_id: int
    valid: bool
    checked_at: str
    message: str
    current_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "session_id": self.session_id,
            "valid": self.valid,
            "checked_at": self.checked_at,
            "message": self.message,
        }
        if self.current_url is not None:
            payload["current_url"] = self.current_url
        return payload


def _require_enabled() -> None:
    if not config.automation_enabled():
        raise FeatureDisabledError("Cloud extraction disabled")


# --- input parsing ----------------------------------------------------------


def _parse_positive_id(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value


def _parse_label(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("label is required and must be a string")
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError("label cannot be empty")
    if len(trimmed) > config.SESSION_LABEL_MAX_LENGTH:
        raise ValidationError(
            f"label must be {config.SESSION_LABEL_MAX_LENGTH} characters or less"
        )
    return trimmed


def _parse_session_state_json(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("session_state_json is required and must be a JSON string")
    try:
        json.loads(value)
    except ValueError as exc:
        raise ValidationError("session_state_json must be valid JSON") from exc
    return value


def _parse_username(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("username is required and must be a string")
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError("username cannot be empty")
    if len(trimmed) > config.USERNAME_MAX_LENGTH:
        raise ValidationError(f"username must be {config.USERNAME_MAX_LENGTH} characters or less")
    return trimmed


def _parse_password(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("password is required and must be a string")
    if not value.strip():
        raise ValidationError("password cannot be empty")
    if len(value) > config.PASSWORD_MAX_LENGTH:
        raise ValidationError(f"password must be {config.PASSWORD_MAX_LENGTH} characters or less")
    return value


def _parse_expiration(value: Union[str, datetime, None], now: Optional[datetime] = None) -> datetime:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("expires_at is required and must be an ISO date string")
    if not isinstance(value, (str, datetime)):
        raise ValidationError("expires_at is required and must be an ISO date string")
    try:
        parsed = parse_iso_utc(value)
    except ValueError as exc:
        raise ValidationError("expires_at must be a valid ISO date string") from exc
    if parsed is None or parsed <= (now or utc_now()):
        raise ValidationError("expires_at must be in the future")
    return parsed


def _parse_property_ids(value: Any) -> List[int]:
    if not isinstance(value, (list, tuple)) or not value:
        raise ValidationError("property_ids must be a non-empty list")
    if any(isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0 for pid in value):
        raise ValidationError("property_ids must contain only positive integers")
    if len(set(value)) != len(value):
        raise ValidationError("property_ids must not contain duplicates")
    return list(value)


# --- default browser-backed collaborators ----------------------------------


def default_state_factory(username: str, password: str) -> str:
    with PlaywrightAutomationClient() as client:
        return client.create_storage_state_from_credentials(username, password)


def default_validator(snapshot_json: str) -> str:
    with PlaywrightAutomationClient() as client:
        return client.validate_session_access(snapshot_json)


def run_extraction(run_id: int) -> ExtractionRun:
    """Process ``run_id`` in the calling thread with a fresh browser client."""

    return process_extraction_run(run_id, PlaywrightAutomationClient())


def launch_run_in_background(run_id: int) -> threading.Thread:
    def _run() -> None:
        try:
            run_extraction(run_id)
        except Exception as exc:  # noqa: BLE001
            log_line(f"Extraction run {run_id} thread failed: {exc}")

    thread = threading.Thread(target=_run, daemon=True, name=f"extraction-run-{run_id}")
    thread.start()
    return thread


# --- sessions ---------------------------------------------------------------


def _store_session(label: str, session_state_json: str, expires_at: datetime) -> ExtractionSession:
    encrypted = encrypt_json(session_state_json, require_encryption_key())
    session_id = db.insert_session(label, encrypted, format_iso_utc(expires_at))
    _extraction_event("session", phase="created", session_id=session_id, session_label=label)
    return ExtractionSession.from_row(db.get_session(session_id))


def create_session(
    label: str, session_state_json: str, expires_at: Union[str, datetime]
) -> ExtractionSession:
    """Encrypt and store an operator-supplied browser storage-state snapshot."""

    _require_enabled()
    label = _parse_label(label)
    session_state_json = _parse_session_state_json(session_state_json)
    expiry = _parse_expiration(expires_at)
    return _store_session(label, session_state_json, expiry)


def create_session_from_credentials(
    label: str,
    username: str,
    password: str,
    expires_at: Union[str, datetime],
    *,
    state_factory: Optional[StateFactory] = None,
) -> ExtractionSession:
    """Log in through the portal and store the resulting verified snapshot."""

    _require_enabled()
    label = _parse_label(label)
    username = _parse_username(username)
    password = _parse_password(password)
    expiry = _parse_expiration(expires_at)
    require_encryption_key()

    factory = state_factory or default_state_factory
    try:
        session_state_json = factory(username, password)
    except ConfigurationError:
        raise
    except Exception as exc:  # noqa: BLE001
        reason = short_error_message(exc) or "Unknown login bridge failure while creating session state."
        log_warning(f"Cloud extraction login bridge failed for {username}: {reason}")
        raise ValidationError(f"Unable to create session from SCE login: {reason}") from exc

    return _store_session(label, session_state_json, expiry)


def list_sessions() -> List[ExtractionSession]:
    _require_enabled()
    return [ExtractionSession.from_row(row) for row in db.list_sessions()]


def get_session(session_id: int) -> ExtractionSession:
    _require_enabled()
    session_id = _parse_positive_id(session_id, "session_id")
    row = db.get_session(session_id)
    if row is None:
        raise NotFoundError("ExtractionSession", session_id)
    return ExtractionSession.from_row(row)


def deactivate_session(session_id: int) -> ExtractionSession:
    _require_enabled()
    session_id = _parse_positive_id(session_id, "session_id")
    if not db.deactivate_session(session_id):
        raise NotFoundError("ExtractionSession", session_id)
    _extraction_event("session", phase="deactivated", session_id=session_id)
    return ExtractionSession.from_row(db.get_session(session_id))


def validate_session(
    session_id: int, *, validator: Optional[SessionValidator] = None
) -> SessionValidationResult:
    """Check whether a stored session can still reach customer-search."""

    session = get_session(session_id)
    checked_at = now_iso()

    if not session.is_active:
        return SessionValidationResult(
            session.id, False, checked_at, "Session is inactive. Create a new login bridge session."
        )
    if not is_session_usable(session):
        return SessionValidationResult(
            session.id, False, checked_at, "Session expired. Create a new login bridge session."
        )

    try:
        snapshot_json = decrypt_json(session.encrypted_state_json, require_encryption_key())
    except DecryptionError as exc:
        return SessionValidationResult(session.id, False, checked_at, short_error_message(exc))

    check = validator or default_validator
    try:
        current_url = check(snapshot_json)
    except ConfigurationError:
        raise
    except Exception as exc:  # noqa: BLE001
        reason = short_error_message(exc) or "Unknown session validation failure."
        log_warning(f"Cloud extraction session validation failed for {session.id}: {reason}")
        return SessionValidationResult(session.id, False, checked_at, reason)

    return SessionValidationResult(
        session.id,
        True,
        checked_at,
        "Session can access SCE customer-search.",
        current_url=current_url,
    )


# --- properties -------------------------------------------------------------


def add_property(
    *,
    street_number: str,
    street_name: str,
    zip_code: str,
    address_full: Optional[str] = None,
) -> Property:
    """Queue a property for extraction."""

    parts = [value.strip() if isinstance(value, str) else "" for value in (street_number, street_name, zip_code)]
    if not all(parts):
        raise ValidationError("street_number, street_name and zip_code are required")
    full = (address_full or f"{parts[0]} {parts[1]}").strip()
    property_id = db.create_property(
        full, street_number=parts[0], street_name=parts[1], zip_code=parts[2]
    )
    return Property.from_row(db.get_property(property_id))


# --- runs -------------------------------------------------------------------


def create_run(session_id: int, property_ids: Sequence[int]) -> ExtractionRun:
    """Create a QUEUED run with one QUEUED item per property."""

    _require_enabled()
    session_id = _parse_positive_id(session_id, "session_id")
    ids = _parse_property_ids(property_ids)
    if db.get_session(session_id) is None:
        raise NotFoundError("ExtractionSession", session_id)

    run_id = db.create_run_with_items(session_id, ids)
    _extraction_event("run", phase="created", run_id=run_id, session_id=session_id, total=len(ids))
    return load_run(run_id)


def start_run(run_id: int, *, launcher: Optional[RunLauncher] = None) -> ExtractionRun:
    """Move a QUEUED run to RUNNING and hand it to ``launcher``.

    Raises ``RunConflictError`` for any other status; the claim is atomic so
    two concurrent starts cannot both succeed.
    """

    _require_enabled()
    run_id = _parse_positive_id(run_id, "run_id")
    row = db.get_run(run_id)
    if row is None:
        raise RunNotFoundError(run_id)
    if row["status"] != RunStatus.QUEUED or not db.claim_run(run_id):
        status = db.get_run(run_id)["status"]
        raise RunConflictError(f"Run {run_id} cannot be started from status {status}")

    _extraction_event("run", phase="started", run_id=run_id)
    (launcher or launch_run_in_background)(run_id)
    return load_run(run_id)


def get_run(run_id: int) -> ExtractionRun:
    _require_enabled()
    return load_run(_parse_positive_id(run_id, "run_id"))


def list_runs(limit: int = 50) -> List[ExtractionRun]:
    _require_enabled()
    return [ExtractionRun.from_row(row) for row in db.list_runs(limit)]


__all__ = [
    "SessionValidationResult",
    "create_session",
    "create_session_from_credentials",
    "list_sessions",
    "get_session",
    "deactivate_session",
    "validate_session",
    "add_property",
    "create_run",
    "start_run",
    "get_run",
    "list_runs",
    "run_extraction",
    "launch_run_in_background",
    "default_state_factory",
    "default_validator",
]
