from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from bms_billing.core.money import Money
from bms_billing.core.serialization import MongoModel, UTCDateTime, new_id, utcnow


class PaymentProvider(str, Enum):
    TELEBIRR = "telebirr"
    CBE_BIRR = "cbe_birr"
    CHAPA = "chapa"
    HELLOCASH = "hellocash"
    BANK_TRANSFER = "bank_transfer"


class IntentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentIntent(MongoModel):
    id: str = Field(default_factory=new_id, alias="_id")

    organization_id: str
    tenant_id: str
    invoice_id: Optional[str] = None

    amount: Money
    currency: str = "ETB"
    provider: PaymentProvider
    status: IntentStatus = IntentStatus.PENDING

    reference_number: str
    redirect_url: Optional[str] = None
    payment_instructions: Optional[str] = None
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)

    payment_id: Optional[str] = None
    error: Optional[str] = None

    expires_at: UTCDateTime
    completed_at: Optional[UTCDateTime] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class PaymentIntentCreate(BaseModel):
    invoice_id: Optional[str] = None
    amount: Money
    provider: PaymentProvider
    currency: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    intent: PaymentIntent
    redirect_url: Optional[str] = None
    payment_instructions: Optional[str] = None
    reference_number: str
    is_expired: bool = False
