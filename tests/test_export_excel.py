from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from enroll_sync.extraction import config, db, worker
from enroll_sync.extraction.errors import NoDataExtractedError
from enroll_sync.extraction.export_excel import ITEM_COLUMNS, export_run_to_excel
from enroll_sync.extraction.models import ExtractedCustomerData
from tests.test_db_extraction import _configure_temp_paths, _create_properties, _create_session
from tests.test_worker import RecordingClient


def test_export_run_to_excel_writes_all_sheets(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    run_id = db.create_run_with_items(_create_session(), _create_properties(2))
    client = RecordingClient(
        {
            "100": ExtractedCustomerData(customer_name="Jane Doe", customer_email="jane@example.com"),
            "101": NoDataExtractedError("Customer data not found after search."),
        }
    )
    worker.process_extraction_run(run_id, client)

    path = export_run_to_excel(run_id)

    assert Path(path) == config.EXPORTS_DIR / f"extraction_run_{run_id}.xlsx"
    sheets = pd.read_excel(path, sheet_name=None)
    assert set(sheets) == {"All", "Succeeded", "Failed", "Summary"}
    assert list(sheets["All"].columns) == ITEM_COLUMNS
    assert len(sheets["All"]) == 2
    assert sheets["Succeeded"]["customer_name"].tolist() == ["Jane Doe"]
    assert sheets["Failed"]["error"].tolist() == ["Customer data not found after search."]

    summary = dict(zip(sheets["Summary"]["field"], sheets["Summary"]["value"]))
    assert summary["status"] == "SUCCEEDED"
    assert summary["error_summary"] == "1 of 2 items failed"


def test_export_run_to_excel_honours_destination(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    db.initialize_schema()
    run_id = db.create_run_with_items(_create_session(), _create_properties(1))
    dest = tmp_path / "custom.xlsx"

    assert export_run_to_excel(run_id, str(dest)) == str(dest)
    queued = pd.read_excel(dest, sheet_name="All")
    assert queued["status"].tolist() == ["QUEUED"]
