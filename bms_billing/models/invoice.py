from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from bms_billing.core.money import Money, quantize
from bms_billing.core.serialization import MongoModel, UTCDateTime, new_id, utcnow


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ItemKind(str, Enum):
    RENT = "rent"
    CHARGE = "charge"
    PENALTY = "penalty"
    DEPOSIT = "deposit"
    OTHER = "other"


class InvoiceItem(BaseModel):
    model_config = {"use_enum_values": True, "validate_default": True}

    description: str
    amount: Money
    kind: ItemKind = ItemKind.OTHER


def compute_totals(items: List[InvoiceItem], tax: Optional[Decimal]) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (subtotal, tax, total) with total == subtotal + tax."""
    subtotal = quantize(sum((item.amount for item in items), Decimal("0")))
    tax_amount = quantize(tax if tax is not None else 0)
    return subtotal, tax_amount, quantize(subtotal + tax_amount)


# ---------------- Invoice document ----------------
class Invoice(MongoModel):
    id: str = Field(default_factory=new_id, alias="_id")

    organization_id: str
    lease_id: str
    tenant_id: str
    unit_id: str

    invoice_number: str
    invoice_year: Optional[int] = None
    invoice_sequence: Optional[int] = None

    issue_date: UTCDateTime
    due_date: UTCDateTime
    period_start: UTCDateTime
    period_end: UTCDateTime

    items: List[InvoiceItem]
    subtotal: Money
    tax: Money = Decimal("0")
    total: Money
    amount_paid: Money = Decimal("0")

    status: InvoiceStatus = InvoiceStatus.DRAFT
    paid_at: Optional[UTCDateTime] = None
    notes: Optional[str] = None

    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    @property
    def outstanding(self) -> Decimal:
        return quantize(max(self.total - self.amount_paid, Decimal("0")))


# ---------------- Request bodies ----------------
def reject_draft_target(status):
    if status is not None and InvoiceStatus(status) is InvoiceStatus.DRAFT:
        raise ValueError("an invoice cannot be moved back to draft")
    return status


class InvoiceCreate(BaseModel):
    lease_id: str
    tenant_id: str
    unit_id: str
    invoice_number: Optional[str] = None
    issue_date: Optional[UTCDateTime] = None
    due_date: UTCDateTime
    period_start: UTCDateTime
    period_end: UTCDateTime
    items: List[InvoiceItem] = Field(default_factory=list)
    tax: Optional[Money] = None
    notes: Optional[str] = None


class InvoicePatch(BaseModel):
    """Partial update; unset fields are left untouched."""
    items: Optional[List[InvoiceItem]] = None
    tax: Optional[Money] = None
    issue_date: Optional[UTCDateTime] = None
    due_date: Optional[UTCDateTime] = None
    period_start: Optional[UTCDateTime] = None
    period_end: Optional[UTCDateTime] = None
    status: Optional[InvoiceStatus] = None
    notes: Optional[str] = None

    @field_validator("items", "issue_date", "due_date", "period_start", "period_end")
    @classmethod
    def _required_when_given(cls, value):
        if value is None:
            raise ValueError("field cannot be cleared")
        return value

    @field_validator("status")
    @classmethod
    def _not_back_to_draft(cls, value):
        return reject_draft_target(value)


class InvoiceStatusChange(BaseModel):
    status: InvoiceStatus
    paid_at: Optional[UTCDateTime] = None

    @field_validator("status")
    @classmethod
    def _not_back_to_draft(cls, value):
        return reject_draft_target(value)


class InvoiceGenerationRequest(BaseModel):
    period_start: UTCDateTime
    period_end: UTCDateTime
    force: bool = False


class InvoiceGenerationResult(BaseModel):
    lease_id: str
    success: bool
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None
