"""SQLite helpers for the customer extraction engine.

This module defines the project database path, connection helper, schema
initialisation, and the statements used to persist properties, encrypted
portal sessions and extraction runs with their per-property items.
"""
from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from . import config
from .models import ItemStatus, PropertyStatus, RunStatus

DB_PATH: Path = config.DB_PATH


def get_connection() -> sqlite3.Connection:
    """Return a SQLite connection to the project database.

    The parent directory is created if missing and ``check_same_thread`` is
    disabled so the background run launcher can reuse the helper. Callers must
    manage concurrency at a higher layer.
    """

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_schema() -> None:
    """Create the baseline tables if they do not yet exist.

    Safe to call multiple times; each statement uses ``IF NOT EXISTS``.
    """

    statements: Iterable[str] = (
        """
        CREATE TABLE IF NOT EXISTS properties (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            address_full    TEXT NOT NULL,
            street_number   TEXT,
            street_name     TEXT,
            zip_code        TEXT,
            status          TEXT NOT NULL DEFAULT 'PENDING_SCRAPE',
            customer_name   TEXT,
            customer_phone  TEXT,
            customer_email  TEXT,
            data_extracted  INTEGER NOT NULL DEFAULT 0,
            extracted_at    TEXT,
            created_at      TEXT NOT NULL,
            updated_at      TEXT NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS extraction_sessions (
            id                    INTEGER PRIMARY KEY AUTOINCREMENT,
            label                 TEXT NOT NULL,
            encrypted_state_json  TEXT NOT NULL,
            expires_at            TEXT NOT NULL,
            is_active             INTEGER NOT NULL DEFAULT 1,
            created_at            TEXT NOT NULL,
            updated_at            TEXT NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS extraction_runs (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id       INTEGER NOT NULL,
            status           TEXT NOT NULL DEFAULT 'QUEUED',
            total_count      INTEGER NOT NULL DEFAULT 0,
            processed_count  INTEGER NOT NULL DEFAULT 0,
            success_count    INTEGER NOT NULL DEFAULT 0,
            failure_count    INTEGER NOT NULL DEFAULT 0,
            error_summary    TEXT,
            started_at       TEXT,
            finished_at      TEXT,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL,
            FOREIGN KEY(session_id) REFERENCES extraction_sessions(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS extraction_run_items (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id       INTEGER NOT NULL,
            property_id  INTEGER NOT NULL,
            status       TEXT NOT NULL DEFAULT 'QUEUED',
            error        TEXT,
            created_at   TEXT NOT NULL,
            updated_at   TEXT NOT NULL,
            FOREIGN KEY(run_id) REFERENCES extraction_runs(id) ON DELETE CASCADE,
            UNIQUE(run_id, property_id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_extraction_runs_status
            ON extraction_runs(status);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_extraction_run_items_run_status
            ON extraction_run_items(run_id, status);
        """,
    )

    conn = get_connection()
    with conn:
        for statement in statements:
            conn.execute(statement)


def _utc_now() -> str:
    """Return a UTC timestamp formatted as ISO8601 without fractional seconds."""

    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


# --- properties -------------------------------------------------------------


def create_property(
    address_full: str,
    *,
    street_number: Optional[str] = None,
    street_name: Optional[str] = None,
    zip_code: Optional[str] = None,
    status: str = PropertyStatus.PENDING_SCRAPE,
) -> int:
    """Insert a property awaiting customer extraction and return its id."""

    now = _utc_now()
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO properties (
                address_full, street_number, street_name, zip_code, status,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (address_full, street_number, street_name, zip_code, status, now, now),
        )
    return int(cursor.lastrowid)


def get_property(property_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM properties WHERE id = ?", (property_id,)
    ).fetchone()


def mark_property_extracted(
    property_id: int,
    *,
    customer_name: Optional[str],
    customer_phone: Optional[str],
    customer_email: Optional[str],
    status: str = PropertyStatus.READY_FOR_FIELD,
) -> None:
    """Store extracted contact fields and advance the property's queue status."""

    now = _utc_now()
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE properties
            SET customer_name = ?,
                customer_phone = ?,
                customer_email = ?,
                data_extracted = 1,
                extracted_at = ?,
                status = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (customer_name, customer_phone, customer_email, now, status, now, property_id),
        )


# --- sessions ---------------------------------------------------------------


def insert_session(label: str, encrypted_state_json: str, expires_at: str) -> int:
    """Persist an encrypted session blob; the plaintext never reaches this layer."""

    now = _utc_now()
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO extraction_sessions (
                label, encrypted_state_json, expires_at, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, 1, ?, ?)
            """,
            (label, encrypted_state_json, expires_at, now, now),
        )
    return int(cursor.lastrowid)


def get_session(session_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM extraction_sessions WHERE id = ?", (session_id,)
    ).fetchone()


def list_sessions() -> List[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM extraction_sessions ORDER BY created_at DESC, id DESC"
    ).fetchall()


def deactivate_session(session_id: int) -> bool:
    """Mark a session inactive. Returns False when no such session exists."""

    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            UPDATE extraction_sessions
            SET is_active = 0, updated_at = ?
            WHERE id = ?
            """,
            (_utc_now(), session_id),
        )
    return cursor.rowcount > 0


# --- runs -------------------------------------------------------------------


def create_run_with_items(session_id: int, property_ids: Sequence[int]) -> int:
    """Create a QUEUED run and one QUEUED item per property in one transaction."""

    now = _utc_now()
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO extraction_runs (
                session_id, status, total_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, RunStatus.QUEUED, len(property_ids), now, now),
        )
        run_id = int(cursor.lastrowid)
        conn.executemany(
            """
            INSERT INTO extraction_run_items (
                run_id, property_id, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            [(run_id, property_id, ItemStatus.QUEUED, now, now) for property_id in property_ids],
        )
    return run_id


def get_run(run_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM extraction_runs WHERE id = ?", (run_id,)
    ).fetchone()


def get_run_items(run_id: int, *, status: Optional[str] = None) -> List[sqlite3.Row]:
    """Return a run's items in ascending id order, optionally filtered by status."""

    conn = get_connection()
    if status is None:
        return conn.execute(
            "SELECT * FROM extraction_run_items WHERE run_id = ? ORDER BY id ASC",
            (run_id,),
        ).fetchall()
    return conn.execute(
        """
        SELECT * FROM extraction_run_items
        WHERE run_id = ? AND status = ?
        ORDER BY id ASC
        """,
        (run_id, status),
    ).fetchall()


def list_runs(limit: int = 50) -> List[sqlite3.Row]:
    conn = get_connection()
    return conn.execute(
        "SELECT * FROM extraction_runs ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()


def claim_run(run_id: int) -> bool:
    """Atomically move a QUEUED run to RUNNING.

    Returns True only for the caller that performed the transition.
    """

    now = _utc_now()
    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            UPDATE extraction_runs
            SET status = ?, started_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (RunStatus.RUNNING, now, now, run_id, RunStatus.QUEUED),
        )
    return cursor.rowcount == 1


def update_run_counts(
    run_id: int,
    *,
    processed_count: int,
    success_count: int,
    failure_count: int,
) -> None:
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE extraction_runs
            SET processed_count = ?,
                success_count = ?,
                failure_count = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (processed_count, success_count, failure_count, _utc_now(), run_id),
        )


def finish_run(
    run_id: int,
    status: str,
    *,
    processed_count: int,
    success_count: int,
    failure_count: int,
    error_summary: Optional[str] = None,
) -> None:
    """Record the terminal status and final counters of a run."""

    if status not in RunStatus.TERMINAL:
        raise ValueError(f"Unsupported terminal run status: {status!r}")

    now = _utc_now()
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE extraction_runs
            SET status = ?,
                processed_count = ?,
                success_count = ?,
                failure_count = ?,
                error_summary = ?,
                started_at = COALESCE(started_at, ?),
                finished_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                status,
                processed_count,
                success_count,
                failure_count,
                error_summary,
                now,
                now,
                now,
                run_id,
            ),
        )


def mark_item_succeeded(item_id: int) -> None:
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE extraction_run_items
            SET status = ?, error = NULL, updated_at = ?
            WHERE id = ?
            """,
            (ItemStatus.SUCCEEDED, _utc_now(), item_id),
        )


def mark_item_failed(item_id: int, error: str) -> None:
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE extraction_run_items
            SET status = ?, error = ?, updated_at = ?
            WHERE id = ?
            """,
            (ItemStatus.FAILED, error, _utc_now(), item_id),
        )


def fail_queued_items(run_id: int, error: str) -> int:
    """Fail every still-QUEUED item of a run and return how many changed."""

    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            UPDATE extraction_run_items
            SET status = ?, error = ?, updated_at = ?
            WHERE run_id = ? AND status = ?
            """,
            (ItemStatus.FAILED, error, _utc_now(), run_id, ItemStatus.QUEUED),
        )
    return int(cursor.rowcount)


__all__ = [
    "DB_PATH",
    "get_connection",
    "initialize_schema",
    "create_property",
    "get_property",
    "mark_property_extracted",
    "insert_session",
    "get_session",
    "list_sessions",
    "deactivate_session",
    "create_run_with_items",
    "get_run",
    "get_run_items",
    "list_runs",
    "claim_run",
    "update_run_counts",
    "finish_run",
    "mark_item_succeeded",
    "mark_item_failed",
    "fail_queued_items",
]
