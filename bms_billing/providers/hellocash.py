from decimal import Decimal
from typing import Any, Dict, Optional

from bms_billing.core.exceptions import ProviderVerificationError
from bms_billing.models.callbacks import ProviderCallback
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.providers.base import BasePaymentProvider, InitiationResult, VerificationResult

SETTLED_STATUSES = ("processed", "completed", "success")


class HelloCashProvider(BasePaymentProvider):
    """HelloCash mobile money. Payments are approved by the payer on their handset."""

    name = PaymentProvider.HELLOCASH

    def has_credentials(self) -> bool:
        return bool(self.settings.hellocash_principal and self.settings.hellocash_token)

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.hellocash_token}"}

    async def initiate_payment(self, amount: Decimal, currency: str, reference_number: str,
                               metadata: Dict[str, Any]) -> InitiationResult:
        if self.sandbox:
            return self.sandbox_initiation(amount, currency, reference_number, metadata)

        payer = metadata.get("payer") or {}
        if not payer.get("phone"):
            raise ProviderVerificationError("HelloCash requires the payer's phone number",
                                            provider=self.name.value)
        data = await self._request(
            "initiate", "POST", f"{self.settings.hellocash_base_url}/invoices",
            json={
                "amount": str(amount),
                "currency": currency,
                "from": payer["phone"],
                "to": self.settings.hellocash_principal,
                "description": f"Invoice {metadata.get('invoice_id') or 'payment'}",
                "tracenumber": reference_number,
                "notifyfrom": True,
            },
            headers=self._headers,
        )
        return InitiationResult(
            reference_number=reference_number,
            instructions=f"Approve the HelloCash request of {currency} {amount} on {payer['phone']}",
            metadata={"provider": self.name.value, "hellocash_invoice_id": data.get("id")},
        )

    async def verify_payment(self, reference_number: str,
                             callback: Optional[ProviderCallback] = None) -> VerificationResult:
        if self.sandbox:
            return self.sandbox_verification(reference_number, callback)

        data = await self._request(
            "verify", "GET", f"{self.settings.hellocash_base_url}/invoices",
            params={"tracenumber": reference_number},
            headers=self._headers,
        )
        record = data[0] if isinstance(data, list) and data else data if isinstance(data, dict) else {}
        status = record.get("status")
        success = (status or "").lower() in SETTLED_STATUSES
        return VerificationResult(
            success=success,
            reference_number=reference_number,
            amount=Decimal(str(record["amount"])) if record.get("amount") is not None else None,
            transaction_id=record.get("id"),
            amount_confirmed=True,
            metadata={"provider": self.name.value, "status": status},
            error=None if success else f"Transaction status: {status}",
        )
