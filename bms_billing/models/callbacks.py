"""
Provider callback payloads.

Each provider posts its own JSON shape and names the reference differently.
The payloads are resolved into one variant of ``ProviderCallback`` at the HTTP
boundary so the reconciler only ever sees ``reference_number``, ``reported_status``,
``amount`` and ``transaction_id``.
"""

from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, Field, TypeAdapter

from bms_billing.core.exceptions import ValidationError
from bms_billing.models.payment_intent import PaymentProvider

SUCCESS_STATUSES = frozenset({"success", "successful", "completed", "paid"})


class ProviderCallback(BaseModel):
    model_config = {"populate_by_name": True, "extra": "allow"}

    @property
    def reference_number(self) -> str:
        raise NotImplementedError

    @property
    def reported_status(self) -> Optional[str]:
        return getattr(self, "status", None)

    @property
    def transaction_id(self) -> Optional[str]:
        return None

    @property
    def reports_success(self) -> bool:
        status = self.reported_status
        return bool(status) and status.lower() in SUCCESS_STATUSES

    def raw(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"provider"}, mode="json")


class ChapaCallback(ProviderCallback):
    provider: Literal["chapa"] = "chapa"
    tx_ref: str = Field(min_length=1)
    reference: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @property
    def reference_number(self) -> str:
        return self.tx_ref

    @property
    def transaction_id(self) -> Optional[str]:
        return self.reference


class TelebirrCallback(ProviderCallback):
    provider: Literal["telebirr"] = "telebirr"
    out_trade_no: str = Field(alias="outTradeNo", min_length=1)
    trade_no: Optional[str] = Field(default=None, alias="tradeNo")
    trade_status: Optional[str] = Field(default=None, alias="tradeStatus")
    amount: Optional[Decimal] = Field(default=None, alias="totalAmount")

    @property
    def reference_number(self) -> str:
        return self.out_trade_no

    @property
    def reported_status(self) -> Optional[str]:
        return self.trade_status

    @property
    def transaction_id(self) -> Optional[str]:
        return self.trade_no


class CbeBirrCallback(ProviderCallback):
    provider: Literal["cbe_birr"] = "cbe_birr"
    transaction_id_: str = Field(alias="transactionId", min_length=1)
    receipt_number: Optional[str] = Field(default=None, alias="receiptNumber")
    status: Optional[str] = None
    amount: Optional[Decimal] = None

    @property
    def reference_number(self) -> str:
        return self.transaction_id_

    @property
    def transaction_id(self) -> Optional[str]:
        return self.receipt_number


class HelloCashCallback(ProviderCallback):
    provider: Literal["hellocash"] = "hellocash"
    payment_reference: str = Field(alias="paymentReference", min_length=1)
    id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None

    @property
    def reference_number(self) -> str:
        return self.payment_reference

    @property
    def transaction_id(self) -> Optional[str]:
        return self.id


class BankTransferCallback(ProviderCallback):
    provider: Literal["bank_transfer"] = "bank_transfer"
    reference: str = Field(min_length=1)
    bank_reference: Optional[str] = Field(default=None, alias="bankReference")
    status: Optional[str] = None
    amount: Optional[Decimal] = None

    @property
    def reference_number(self) -> str:
        return self.reference

    @property
    def transaction_id(self) -> Optional[str]:
        return self.bank_reference


AnyCallback = Annotated[
    Union[ChapaCallback, TelebirrCallback, CbeBirrCallback, HelloCashCallback, BankTransferCallback],
    Field(discriminator="provider"),
]

_callback_adapter = TypeAdapter(AnyCallback)


def parse_callback(provider: PaymentProvider, payload: Any) -> ProviderCallback:
    """Resolve a raw JSON body into the provider's callback variant."""
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object", provider=provider.value)
    try:
        return _callback_adapter.validate_python({**payload, "provider": provider.value})
    except pydantic.ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError(
            "Callback is missing the provider reference or has malformed fields",
            provider=provider.value,
            fields=missing,
        ) from e
