"""Ledger data model: expense entries and report metadata."""

import datetime as dt
import math
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ExpenseCategory(StrEnum):
    """Closed set of expense categories."""

    TRANSPORT = "Transport"
    FOOD = "Food"
    LODGING = "Lodging"
    EQUIPMENT = "Equipment"
    MISCELLANEOUS = "Miscellaneous"


class PeriodType(StrEnum):
    """Kind of period a liquidation report covers."""

    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"
    PROJECT_SITE = "Project/Site"


def coerce_amount(value: Any) -> Decimal:
    """Coerce a raw amount to a finite, non-negative decimal.

    Unparseable, non-finite, and negative values become zero instead of
    being rejected.

    Args:
        value: Number, numeric string (thousands separators allowed), or None.

    Returns:
        Amount quantized to two decimal places.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0.00")
    if isinstance(value, float) and not math.isfinite(value):
        return Decimal("0.00")
    try:
        if isinstance(value, str):
            value = value.replace(",", "").strip()
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0.00")
    if not amount.is_finite() or amount < 0:
        return Decimal("0.00")
    return amount.quantize(Decimal("0.01"))


def match_category(value: Any, default: ExpenseCategory) -> ExpenseCategory:
    """Resolve a raw category label against the closed enumeration."""
    if isinstance(value, ExpenseCategory):
        return value
    label = str(value or "").strip().lower()
    for category in ExpenseCategory:
        if category.value.lower() == label:
            return category
    return default


class EntryDraft(BaseModel):
    """Expense fields before the ledger assigns an id."""

    title: str = ""
    date: dt.date = Field(default_factory=dt.date.today)
    amount: Decimal = Decimal("0.00")
    currency: str = "PHP"
    category: ExpenseCategory = ExpenseCategory.MISCELLANEOUS
    issuer_address: str | None = None
    notes: str | None = None
    verified: bool = False

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal:
        return coerce_amount(value)

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value: Any) -> ExpenseCategory:
        return match_category(value, ExpenseCategory.MISCELLANEOUS)


class LedgerEntry(EntryDraft):
    """A recorded expense. ``receipt_ref`` resolves through the blob store."""

    id: str
    receipt_ref: str | None = None


class LedgerRecord(BaseModel):
    """Persisted projection of the ledger, without image payloads."""

    entries: list[LedgerEntry] = Field(default_factory=list)
    pending_purge: list[str] = Field(default_factory=list)


class ReportMetadata(BaseModel):
    """Personnel and period information printed on the report."""

    approver_name: str = "FINANCE AUTHORIZER"
    purpose: str = "Site Visitation"
    claimant: str = "Field Personnel"
    period_type: PeriodType = PeriodType.PROJECT_SITE
    period_label: str = "Quezon Ave Project"
    start_date: dt.date = Field(default_factory=dt.date.today)
    end_date: dt.date = Field(default_factory=dt.date.today)
    received_amount: Decimal = Decimal("0.00")
    signature_ref: str | None = None

    @field_validator("received_amount", mode="before")
    @classmethod
    def _coerce_received(cls, value: Any) -> Decimal:
        return coerce_amount(value)
