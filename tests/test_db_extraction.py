from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import List

import pytest

from enroll_sync.extraction import config, db
from enroll_sync.extraction.date_utils import format_iso_utc, utc_now
from enroll_sync.extraction.models import ExtractionRun, ExtractionRunItem, Property
from enroll_sync.extraction.session_vault import encrypt_json

TEST_ENCRYPTION_KEY = "unit-test-session-key"
STORAGE_STATE_JSON = '{"cookies": [{"name": "sid", "value": "abc"}], "origins": []}'


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "enroll_sync.db"

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "EXPORTS_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "DB_PATH", db_path)
    monkeypatch.setattr(db, "DB_PATH", db_path)
    monkeypatch.setattr(config, "SCE_SESSION_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setattr(config, "SCE_AUTOMATION_ENABLED", True)


def _create_session(
    *,
    state_json: str = STORAGE_STATE_JSON,
    expires_in: timedelta = timedelta(days=1),
    active: bool = True,
    key: str = TEST_ENCRYPTION_KEY,
) -> int:
    session_id = db.insert_session(
        "field team",
        encrypt_json(state_json, key),
        format_iso_utc(utc_now() + expires_in),
    )
    if not active:
        db.deactivate_session(session_id)
    return session_id


def _create_properties(count: int) -> List[int]:
    return [
        db.create_property(
            f"{100 + index} Main St",
            street_number=str(100 + index),
            street_name="Main St",
            zip_code="91770",
        )
        for index in range(count)
    ]


def test_initialize_schema_is_idempotent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    db.initialize_schema()
    db.initialize_schema()

    conn = db.get_connection()
    tables = {
        row["name"]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    assert {"properties", "extraction_sessions", "extraction_runs", "extraction_run_items"} <= tables


def test_create_run_with_items_creates_one_queued_item_per_property(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    session_id = _create_session()
    property_ids = _create_properties(3)

    run_id = db.create_run_with_items(session_id, property_ids)

    run = ExtractionRun.from_row(db.get_run(run_id))
    items = [ExtractionRunItem.from_row(row) for row in db.get_run_items(run_id)]
    assert run.status == "QUEUED"
    assert run.total_count == 3
    assert run.processed_count == 0
    assert [item.property_id for item in items] == property_ids
    assert all(item.status == "QUEUED" for item in items)
    assert [item.id for item in items] == sorted(item.id for item in items)


def test_claim_run_only_succeeds_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    run_id = db.create_run_with_items(_create_session(), _create_properties(1))

    assert db.claim_run(run_id) is True
    assert db.claim_run(run_id) is False

    row = db.get_run(run_id)
    assert row["status"] == "RUNNING"
    assert row["started_at"] is not None


def test_fail_queued_items_only_touches_queued_rows(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    run_id = db.create_run_with_items(_create_session(), _create_properties(3))
    first, second, third = db.get_run_items(run_id)

    db.mark_item_succeeded(first["id"])
    db.mark_item_failed(second["id"], "boom")
    changed = db.fail_queued_items(run_id, "skipped")

    assert changed == 1
    statuses = {row["id"]: (row["status"], row["error"]) for row in db.get_run_items(run_id)}
    assert statuses[first["id"]] == ("SUCCEEDED", None)
    assert statuses[second["id"]] == ("FAILED", "boom")
    assert statuses[third["id"]] == ("FAILED", "skipped")


def test_finish_run_rejects_non_terminal_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    run_id = db.create_run_with_items(_create_session(), _create_properties(1))

    with pytest.raises(ValueError):
        db.finish_run(run_id, "RUNNING", processed_count=0, success_count=0, failure_count=0)


def test_mark_property_extracted_sets_contact_fields(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    (property_id,) = _create_properties(1)

    db.mark_property_extracted(
        property_id,
        customer_name="Jane Doe",
        customer_phone="555-0100",
        customer_email=None,
    )

    prop = Property.from_row(db.get_property(property_id))
    assert prop.customer_name == "Jane Doe"
    assert prop.customer_phone == "555-0100"
    assert prop.customer_email is None
    assert prop.data_extracted is True
    assert prop.extracted_at is not None
    assert prop.status == "READY_FOR_FIELD"


def test_deactivate_session_reports_missing_rows(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    session_id = _create_session()

    assert db.deactivate_session(session_id) is True
    assert db.deactivate_session(session_id + 100) is False
    assert db.get_session(session_id)["is_active"] == 0
