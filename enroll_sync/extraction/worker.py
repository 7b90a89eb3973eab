"""Sequential processing of one extraction run.

The worker owns the run loop: it claims the run, decrypts the session once,
walks the QUEUED items in ascending id order against a single automation
client and persists item outcomes and run counters after every item.

A failure that invalidates the shared portal session (login required,
session expired, access denied) fails the current item, marks every
remaining QUEUED item as skipped and stops the run. Address-level failures
only fail their own item.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from . import db
from .date_utils import utc_now
from .errors import (
    SHARED_SESSION_SKIP_PREFIX,
    ConfigurationError,
    ExtractionError,
    LoginRequiredError,
    NoDataExtractedError,
    RunConflictError,
    RunNotFoundError,
    SessionExpiredError,
    error_code_for,
    is_shared_session_failure,
    short_error_message,
)
from .logging_utils import _extraction_event
from .models import (
    AddressInput,
    ExtractedCustomerData,
    ExtractionRun,
    ExtractionRunItem,
    ExtractionSession,
    ItemStatus,
    Property,
    RunStatus,
)
from .session_vault import decrypt_json, is_session_usable, require_encryption_key
from .utils import setup_run_logger


class AutomationClient(Protocol):
    def extract_customer_data(
        self, address: AddressInput, snapshot_json: Optional[str]
    ) -> ExtractedCustomerData:
        ...


class _RunCounters:
    def __init__(self, run: ExtractionRun) -> None:
        self.run_id = run.id
        self.total = run.total_count
        self.processed = run.processed_count
        self.succeeded = run.success_count
        self.failed = run.failure_count

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1
        self.persist()

    def record_failures(self, count: int = 1) -> None:
        self.processed += count
        self.failed += count
        self.persist()

    def persist(self) -> None:
        db.update_run_counts(
            self.run_id,
            processed_count=self.processed,
            success_count=self.succeeded,
            failure_count=self.failed,
        )

    def finish(self, status: str, error_summary: Optional[str] = None) -> None:
        db.finish_run(
            self.run_id,
            status,
            processed_count=self.processed,
            success_count=self.succeeded,
            failure_count=self.failed,
            error_summary=error_summary,
        )
        _extraction_event(
            "run",
            phase="finish",
            run_id=self.run_id,
            status=status,
            total=self.total,
            processed=self.processed,
            succeeded=self.succeeded,
            failed=self.failed,
            error_summary=error_summary,
        )


def load_run(run_id: int) -> ExtractionRun:
    """Return the run with its items, or raise ``RunNotFoundError``."""

    row = db.get_run(run_id)
    if row is None:
        raise RunNotFoundError(run_id)
    items = [ExtractionRunItem.from_row(item) for item in db.get_run_items(run_id)]
    return ExtractionRun.from_row(row, items)


def _claim(run_id: int) -> ExtractionRun:
    row = db.get_run(run_id)
    if row is None:
        raise RunNotFoundError(run_id)

    status = row["status"]
    if status in RunStatus.TERMINAL:
        raise RunConflictError(f"Extraction run {run_id} is already {status}")
    if status == RunStatus.QUEUED and not db.claim_run(run_id):
        raise RunConflictError(f"Extraction run {run_id} was started by another worker")
    return ExtractionRun.from_row(db.get_run(run_id))


def _load_session_snapshot(
    session_id: int, encryption_key: str, now: Optional[datetime]
) -> str:
    row = db.get_session(session_id)
    if row is None:
        raise LoginRequiredError(
            f"SCE login required: extraction session {session_id} not found. "
            "Create a new session before running extraction."
        )
    session = ExtractionSession.from_row(row)
    if is_session_usable(session, now):
        return decrypt_json(session.encrypted_state_json, encryption_key)
    if not session.is_active:
        raise LoginRequiredError(
            f"SCE login required: extraction session {session_id} is inactive. "
            "Create a new session before running extraction."
        )
    raise SessionExpiredError(
        f"SCE session expired: extraction session {session_id} expired at "
        f"{session.expires_at.strftime('%Y-%m-%dT%H:%M:%SZ')}. "
        "Create a new session before running extraction."
    )


def _fail_remaining(counters: _RunCounters, message: str) -> int:
    skipped = db.fail_queued_items(counters.run_id, message)
    if skipped:
        counters.record_failures(skipped)
    return skipped


def _dispose(client: Any) -> None:
    dispose = getattr(client, "dispose", None)
    if dispose is None:
        return
    try:
        dispose()
    except Exception as exc:  # noqa: BLE001
        _extraction_event("error", phase="dispose", error=str(exc))


def _extract_item(
    client: AutomationClient, item: ExtractionRunItem, snapshot_json: str
) -> Optional[Property]:
    """Extract and store contact data for one item; None when its property is gone."""

    row = db.get_property(item.property_id)
    if row is None:
        return None
    prop = Property.from_row(row)

    extracted = client.extract_customer_data(prop.to_address_input(), snapshot_json)
    if extracted is None or not extracted.has_any_data():
        raise NoDataExtractedError(
            f"No customer data extracted for property {prop.id}; keeping status as {prop.status}"
        )

    db.mark_property_extracted(
        prop.id,
        customer_name=extracted.customer_name or prop.customer_name,
        customer_phone=extracted.customer_phone or prop.customer_phone,
        customer_email=extracted.customer_email or prop.customer_email,
    )
    return prop


def _terminal_status(counters: _RunCounters) -> tuple[str, Optional[str]]:
    if counters.failed == 0:
        return RunStatus.SUCCEEDED, None
    summary = f"{counters.failed} of {counters.total} items failed"
    if counters.succeeded == 0:
        return RunStatus.FAILED, summary
    return RunStatus.SUCCEEDED, summary


def process_extraction_run(
    run_id: int,
    client: AutomationClient,
    *,
    encryption_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ExtractionRun:
    """Process every QUEUED item of ``run_id`` with ``client`` and return the final run.

    ``ConfigurationError`` is recorded on the run and then re-raised; every
    other failure ends up on the run and its items.
    """

    try:
        run = _claim(run_id)
        setup_run_logger(run_id)
        queued = [
            ExtractionRunItem.from_row(row)
            for row in db.get_run_items(run_id, status=ItemStatus.QUEUED)
        ]
        counters = _RunCounters(run)
        _extraction_event(
            "run",
            phase="start",
            run_id=run_id,
            session_id=run.session_id,
            total=run.total_count,
            queued=len(queued),
        )

        try:
            key = encryption_key if encryption_key is not None else require_encryption_key()
            snapshot_json = _load_session_snapshot(run.session_id, key, now or utc_now())
        except ConfigurationError as exc:
            message = short_error_message(exc)
            _fail_remaining(counters, message)
            counters.finish(RunStatus.FAILED, message)
            raise
        except ExtractionError as exc:
            message = short_error_message(exc)
            _extraction_event(
                "error", phase="session", run_id=run_id, error_code=exc.error_code, error=message
            )
            _fail_remaining(counters, message)
            counters.finish(RunStatus.FAILED, message)
            return load_run(run_id)

        try:
            for item in queued:
                try:
                    prop = _extract_item(client, item, snapshot_json)
                except Exception as exc:  # noqa: BLE001
                    message = short_error_message(exc)
                    db.mark_item_failed(item.id, message)
                    counters.record_failures()
                    shared = is_shared_session_failure(exc) or isinstance(exc, ConfigurationError)
                    _extraction_event(
                        "item",
                        phase="failed",
                        run_id=run_id,
                        item_id=item.id,
                        property_id=item.property_id,
                        error_code=error_code_for(exc),
                        shared_session_failure=shared,
                        error=message,
                    )
                    if not shared:
                        continue

                    skipped = _fail_remaining(counters, f"{SHARED_SESSION_SKIP_PREFIX}: {message}")
                    _extraction_event(
                        "run", phase="fail_fast", run_id=run_id, item_id=item.id, skipped=skipped
                    )
                    counters.finish(RunStatus.FAILED, message)
                    if isinstance(exc, ConfigurationError):
                        raise
                    return load_run(run_id)

                if prop is None:
                    db.mark_item_failed(item.id, f"Property {item.property_id} not found")
                    counters.record_failures()
                    _extraction_event(
                        "item",
                        phase="failed",
                        run_id=run_id,
                        item_id=item.id,
                        property_id=item.property_id,
                        error_code="property_not_found",
                    )
                    continue

                db.mark_item_succeeded(item.id)
                counters.record_success()
                _extraction_event(
                    "item", phase="succeeded", run_id=run_id, item_id=item.id, property_id=prop.id
                )
        except ConfigurationError:
            raise
        except Exception as exc:
            message = short_error_message(exc)
            _fail_remaining(counters, message)
            counters.finish(RunStatus.FAILED, message)
            raise

        status, summary = _terminal_status(counters)
        counters.finish(status, summary)
        return load_run(run_id)
    finally:
        _dispose(client)


__all__ = ["AutomationClient", "load_run", "process_extraction_run"]
