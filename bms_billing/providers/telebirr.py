from decimal import Decimal
from typing import Any, Dict, Optional

from bms_billing.core.exceptions import ProviderVerificationError
from bms_billing.models.callbacks import ProviderCallback
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.providers.base import BasePaymentProvider, InitiationResult, VerificationResult


class TelebirrProvider(BasePaymentProvider):
    """Telebirr mobile money (web checkout)."""

    name = PaymentProvider.TELEBIRR

    def has_credentials(self) -> bool:
        return bool(self.settings.telebirr_app_id and self.settings.telebirr_app_key)

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-APP-Key": self.settings.telebirr_app_key or ""}

    async def initiate_payment(self, amount: Decimal, currency: str, reference_number: str,
                               metadata: Dict[str, Any]) -> InitiationResult:
        if self.sandbox:
            return self.sandbox_initiation(amount, currency, reference_number, metadata)

        body = {
            "appId": self.settings.telebirr_app_id,
            "outTradeNo": reference_number,
            "subject": f"Invoice {metadata.get('invoice_id') or 'payment'}",
            "totalAmount": str(amount),
            "currency": currency,
            "notifyUrl": self.callback_url(),
            "returnUrl": self.return_url(reference_number),
            "timeoutExpress": str(self.settings.intent_ttl_minutes),
        }
        data = await self._request(
            "initiate", "POST", f"{self.settings.telebirr_base_url}/payment/preorder",
            json=body, headers=self._headers,
        )
        payload = data.get("data") or {}
        if str(data.get("code")) != "0" or not payload.get("toPayUrl"):
            raise ProviderVerificationError(
                data.get("msg") or "Failed to create Telebirr order", provider=self.name.value
            )
        return InitiationResult(
            reference_number=reference_number,
            redirect_url=payload["toPayUrl"],
            metadata={"provider": self.name.value, "prepay_id": payload.get("prepayId")},
        )

    async def verify_payment(self, reference_number: str,
                             callback: Optional[ProviderCallback] = None) -> VerificationResult:
        if self.sandbox:
            return self.sandbox_verification(reference_number, callback)

        data = await self._request(
            "verify", "POST", f"{self.settings.telebirr_base_url}/payment/query",
            json={"appId": self.settings.telebirr_app_id, "outTradeNo": reference_number},
            headers=self._headers,
        )
        payload = data.get("data") or {}
        status = payload.get("tradeStatus")
        success = str(data.get("code")) == "0" and (status or "").lower() in ("completed", "success")
        return VerificationResult(
            success=success,
            reference_number=reference_number,
            amount=Decimal(str(payload["totalAmount"])) if payload.get("totalAmount") is not None else None,
            transaction_id=payload.get("tradeNo"),
            amount_confirmed=True,
            metadata={"provider": self.name.value, "status": status},
            error=None if success else (data.get("msg") or f"Transaction status: {status}"),
        )
