from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from bms_billing.core.money import Money
from bms_billing.core.serialization import MongoModel, UTCDateTime, new_id, utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReconciliationStatus(str, Enum):
    PENDING = "pending"
    RECONCILED = "reconciled"
    DISPUTED = "disputed"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    TELEBIRR = "telebirr"
    CBE_BIRR = "cbe_birr"
    CHAPA = "chapa"
    HELLOCASH = "hellocash"
    OTHER = "other"


# Fields that never touch monetary state and may be written in any status
BOOKKEEPING_FIELDS = frozenset({
    "receipt_url",
    "reconciliation_status",
    "reconciled_at",
    "reconciled_by",
    "bank_statement_reference",
    "notes",
})


class Payment(MongoModel):
    id: str = Field(default_factory=new_id, alias="_id")

    organization_id: str
    tenant_id: str
    invoice_id: Optional[str] = None

    amount: Money
    currency: str = "ETB"
    method: PaymentMethod
    payment_date: UTCDateTime = Field(default_factory=utcnow)
    reference_number: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING

    provider_transaction_id: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0

    reconciliation_status: ReconciliationStatus = ReconciliationStatus.PENDING
    reconciled_at: Optional[UTCDateTime] = None
    reconciled_by: Optional[str] = None
    bank_statement_reference: Optional[str] = None

    receipt_url: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    refunded_at: Optional[UTCDateTime] = None

    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)


class PaymentCreate(BaseModel):
    tenant_id: str
    invoice_id: Optional[str] = None
    amount: Money
    method: PaymentMethod
    currency: Optional[str] = None
    payment_date: Optional[UTCDateTime] = None
    reference_number: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED
    provider_transaction_id: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class PaymentPatch(BaseModel):
    model_config = {"use_enum_values": True}

    status: Optional[PaymentStatus] = None
    amount: Optional[Money] = None
    method: Optional[PaymentMethod] = None
    payment_date: Optional[UTCDateTime] = None
    provider_transaction_id: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    receipt_url: Optional[str] = None
    reconciliation_status: Optional[ReconciliationStatus] = None
    notes: Optional[str] = None


class ReconcileRequest(BaseModel):
    payment_ids: List[str] = Field(min_length=1)
    bank_statement_reference: Optional[str] = None
    notes: Optional[str] = None
    status: ReconciliationStatus = ReconciliationStatus.RECONCILED


class ReconcileResult(BaseModel):
    matched: int
    modified: int
    status: ReconciliationStatus


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class DisputeRequest(BaseModel):
    notes: Optional[str] = None
