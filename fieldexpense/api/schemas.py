"""Pydantic request/response schemas for the FastAPI endpoints."""

import datetime as dt
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from fieldexpense.ledger.models import (
    EntryDraft,
    ExpenseCategory,
    LedgerEntry,
    PeriodType,
)
from fieldexpense.signature.rasterizer import PointerEventType


def _require_value(value: Any) -> Any:
    # Omit a field to leave it unchanged; null would clear a required value.
    if value is None:
        raise ValueError("must not be null")
    return value


class EntryUpdateRequest(BaseModel):
    """Partial update of a ledger entry. Unset fields are left unchanged."""

    title: str | None = None
    date: dt.date | None = None
    amount: Decimal | str | float | None = None
    currency: str | None = None
    category: ExpenseCategory | None = None
    issuer_address: str | None = None
    notes: str | None = None
    verified: bool | None = None

    @field_validator(
        "title", "date", "amount", "currency", "category", "verified", mode="before"
    )
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        return _require_value(value)


class ExpenseListResponse(BaseModel):
    """Ledger projection for the dashboard."""

    entries: list[LedgerEntry]
    total_spent: Decimal
    category_totals: dict[str, Decimal]


class DraftResponse(BaseModel):
    """A recognized or manual draft waiting for confirmation."""

    draft_id: str
    draft: EntryDraft
    recognized: bool
    has_receipt: bool
    error: str | None = None


class MetadataUpdateRequest(BaseModel):
    """Partial update of the report metadata."""

    approver_name: str | None = None
    purpose: str | None = None
    claimant: str | None = None
    period_type: PeriodType | None = None
    period_label: str | None = None
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    received_amount: Decimal | str | float | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        return _require_value(value)


class PointerEventRequest(BaseModel):
    """One pointer or touch event on the signature surface."""

    type: PointerEventType
    x: float = 0.0
    y: float = 0.0


class SignatureRequest(BaseModel):
    """Recorded pointer events making up a signature."""

    events: list[PointerEventRequest] = Field(default_factory=list)


class ReportErrorDetail(BaseModel):
    """Reason a report export was refused."""

    reason: str
    prompt: str


class ClearResponse(BaseModel):
    """Response schema for clearing all ledger data."""

    status: str
    entry_count: int


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    ledger_loaded: bool
    entry_count: int
    recognition_configured: bool
