from decimal import Decimal
from typing import Any, Dict, Optional

from bms_billing.core.exceptions import ProviderVerificationError
from bms_billing.models.callbacks import ProviderCallback
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.providers.base import BasePaymentProvider, InitiationResult, VerificationResult


class CbeBirrProvider(BasePaymentProvider):
    """CBE Birr bank wallet."""

    name = PaymentProvider.CBE_BIRR

    def has_credentials(self) -> bool:
        return bool(self.settings.cbe_birr_merchant_id and self.settings.cbe_birr_api_key)

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.cbe_birr_api_key}",
            "X-Merchant-Id": self.settings.cbe_birr_merchant_id or "",
        }

    async def initiate_payment(self, amount: Decimal, currency: str, reference_number: str,
                               metadata: Dict[str, Any]) -> InitiationResult:
        if self.sandbox:
            return self.sandbox_initiation(amount, currency, reference_number, metadata)

        data = await self._request(
            "initiate", "POST", f"{self.settings.cbe_birr_base_url}/payments",
            json={
                "transactionId": reference_number,
                "amount": str(amount),
                "currency": currency,
                "callbackUrl": self.callback_url(),
                "description": f"Invoice {metadata.get('invoice_id') or 'payment'}",
            },
            headers=self._headers,
        )
        if not data.get("paymentUrl") and not data.get("ussdCode"):
            raise ProviderVerificationError(
                data.get("message") or "CBE Birr did not return payment details", provider=self.name.value
            )
        instructions = None
        if data.get("ussdCode"):
            instructions = f"Dial {data['ussdCode']} and enter reference {reference_number} to pay {currency} {amount}"
        return InitiationResult(
            reference_number=reference_number,
            redirect_url=data.get("paymentUrl"),
            instructions=instructions,
            metadata={"provider": self.name.value, "cbe_request_id": data.get("requestId")},
        )

    async def verify_payment(self, reference_number: str,
                             callback: Optional[ProviderCallback] = None) -> VerificationResult:
        if self.sandbox:
            return self.sandbox_verification(reference_number, callback)

        data = await self._request(
            "verify", "GET", f"{self.settings.cbe_birr_base_url}/payments/{reference_number}",
            headers=self._headers,
        )
        status = data.get("status")
        success = (status or "").lower() in ("success", "completed")
        return VerificationResult(
            success=success,
            reference_number=reference_number,
            amount=Decimal(str(data["amount"])) if data.get("amount") is not None else None,
            transaction_id=data.get("receiptNumber"),
            amount_confirmed=True,
            metadata={"provider": self.name.value, "status": status},
            error=None if success else f"Transaction status: {status}",
        )
