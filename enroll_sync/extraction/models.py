"""Records exchanged between the persistence layer and the extraction engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .date_utils import parse_iso_utc


class RunStatus:
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    TERMINAL = frozenset({SUCCEEDED, FAILED})


class ItemStatus:
    QUEUED = "QUEUED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class PropertyStatus:
    PENDING_SCRAPE = "PENDING_SCRAPE"
    READY_FOR_FIELD = "READY_FOR_FIELD"
    VISITED = "VISITED"
    READY_FOR_SUBMISSION = "READY_FOR_SUBMISSION"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


def _optional_str(row: Any, key: str) -> Optional[str]:
    if key not in row.keys():
        return None
    value = row[key]
    return None if value is None else str(value)


@dataclass
class ExtractionSession:
    id: int
    label: str
    encrypted_state_json: str
    expires_at: datetime
    is_active: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "ExtractionSession":
        return cls(
            id=int(row["id"]),
            label=str(row["label"]),
            encrypted_state_json=str(row["encrypted_state_json"]),
            expires_at=parse_iso_utc(row["expires_at"]),
            is_active=bool(row["is_active"]),
            created_at=_optional_str(row, "created_at"),
            updated_at=_optional_str(row, "updated_at"),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "expires_at": self.expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ExtractionRunItem:
    id: int
    run_id: int
    property_id: int
    status: str
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "ExtractionRunItem":
        return cls(
            id=int(row["id"]),
            run_id=int(row["run_id"]),
            property_id=int(row["property_id"]),
            status=str(row["status"]),
            error=_optional_str(row, "error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "property_id": self.property_id,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class ExtractionRun:
    id: int
    session_id: int
    status: str
    total_count: int
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_summary: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    items: List[ExtractionRunItem] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Any, items: Optional[List[ExtractionRunItem]] = None) -> "ExtractionRun":
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            status=str(row["status"]),
            total_count=int(row["total_count"]),
            processed_count=int(row["processed_count"]),
            success_count=int(row["success_count"]),
            failure_count=int(row["failure_count"]),
            error_summary=_optional_str(row, "error_summary"),
            started_at=_optional_str(row, "started_at"),
            finished_at=_optional_str(row, "finished_at"),
            created_at=_optional_str(row, "created_at"),
            updated_at=_optional_str(row, "updated_at"),
            items=list(items or []),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in RunStatus.TERMINAL

    def to_dict(self, *, include_items: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "session_id": self.session_id,
            "status": self.status,
            "total_count": self.total_count,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "error_summary": self.error_summary,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if include_items:
            payload["items"] = [item.to_dict() for item in self.items]
        return payload


@dataclass
class Property:
    id: int
    address_full: str
    street_number: Optional[str]
    street_name: Optional[str]
    zip_code: Optional[str]
    status: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    data_extracted: bool = False
    extracted_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Property":
        return cls(
            id=int(row["id"]),
            address_full=str(row["address_full"] or ""),
            street_number=_optional_str(row, "street_number"),
            street_name=_optional_str(row, "street_name"),
            zip_code=_optional_str(row, "zip_code"),
            status=str(row["status"]),
            customer_name=_optional_str(row, "customer_name"),
            customer_phone=_optional_str(row, "customer_phone"),
            customer_email=_optional_str(row, "customer_email"),
            data_extracted=bool(row["data_extracted"]),
            extracted_at=_optional_str(row, "extracted_at"),
        )

    def to_address_input(self) -> "AddressInput":
        return AddressInput(
            street_number=self.street_number or "",
            street_name=self.street_name or "",
            zip_code=self.zip_code or "",
        )


@dataclass(frozen=True)
class AddressInput:
    street_number: str
    street_name: str
    zip_code: str

    @property
    def full_address(self) -> str:
        return f"{self.street_number} {self.street_name}".strip()


@dataclass
class ExtractedCustomerData:
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None

    def has_any_data(self) -> bool:
        return any(
            isinstance(value, str) and value.strip()
            for value in (self.customer_name, self.customer_phone, self.customer_email)
        )


__all__ = [
    "RunStatus",
    "ItemStatus",
    "PropertyStatus",
    "ExtractionSession",
    "ExtractionRun",
    "ExtractionRunItem",
    "Property",
    "AddressInput",
    "ExtractedCustomerData",
]
