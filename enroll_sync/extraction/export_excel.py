"""Excel export of one extraction run joined with the extracted contact data."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from . import config, db
from .models import ItemStatus
from .worker import load_run

ITEM_COLUMNS = [
    "item_id",
    "property_id",
    "status",
    "error",
    "address_full",
    "zip_code",
    "customer_name",
    "customer_phone",
    "customer_email",
    "property_status",
    "extracted_at",
]


def _item_rows(run_id: int) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for item in load_run(run_id).items:
        prop = db.get_property(item.property_id)
        rows.append(
            {
                "item_id": item.id,
                "property_id": item.property_id,
                "status": item.status,
                "error": item.error,
                "address_full": prop["address_full"] if prop else None,
                "zip_code": prop["zip_code"] if prop else None,
                "customer_name": prop["customer_name"] if prop else None,
                "customer_phone": prop["customer_phone"] if prop else None,
                "customer_email": prop["customer_email"] if prop else None,
                "property_status": prop["status"] if prop else None,
                "extracted_at": prop["extracted_at"] if prop else None,
            }
        )
    return rows


def export_run_to_excel(run_id: int, dest_path: Optional[str] = None) -> str:
    """Write All/Succeeded/Failed/Summary sheets for ``run_id`` and return the path."""

    run = load_run(run_id)
    df = pd.DataFrame(_item_rows(run_id), columns=ITEM_COLUMNS)

    succeeded = df[df["status"] == ItemStatus.SUCCEEDED].copy()
    failed = df[df["status"] == ItemStatus.FAILED].copy()

    summary = pd.DataFrame(
        [
            {"field": "run_id", "value": run.id},
            {"field": "session_id", "value": run.session_id},
            {"field": "status", "value": run.status},
            {"field": "total_count", "value": run.total_count},
            {"field": "processed_count", "value": run.processed_count},
            {"field": "success_count", "value": run.success_count},
            {"field": "failure_count", "value": run.failure_count},
            {"field": "error_summary", "value": run.error_summary},
            {"field": "started_at", "value": run.started_at},
            {"field": "finished_at", "value": run.finished_at},
        ]
    )

    if not dest_path:
        os.makedirs(config.EXPORTS_DIR, exist_ok=True)
        dest_path = str(Path(config.EXPORTS_DIR) / f"extraction_run_{run.id}.xlsx")

    with pd.ExcelWriter(dest_path, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="All")
        succeeded.to_excel(writer, index=False, sheet_name="Succeeded")
        failed.to_excel(writer, index=False, sheet_name="Failed")
        summary.to_excel(writer, index=False, sheet_name="Summary")

    return dest_path


__all__ = ["ITEM_COLUMNS", "export_run_to_excel"]
