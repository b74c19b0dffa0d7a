import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from bms_billing.core.exceptions import ProviderVerificationError
from bms_billing.models.callbacks import ProviderCallback
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.providers.base import BasePaymentProvider, InitiationResult, VerificationResult

logger = structlog.get_logger(__name__)


class ChapaProvider(BasePaymentProvider):
    """Chapa card/wallet gateway. Callbacks are signed with HMAC-SHA256."""

    name = PaymentProvider.CHAPA
    requires_signature = True
    signature_header = "X-Chapa-Signature"

    def has_credentials(self) -> bool:
        return bool(self.settings.chapa_secret_key)

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.chapa_secret_key}"}

    async def initiate_payment(self, amount: Decimal, currency: str, reference_number: str,
                               metadata: Dict[str, Any]) -> InitiationResult:
        if self.sandbox:
            return self.sandbox_initiation(amount, currency, reference_number, metadata)

        payer = metadata.get("payer") or {}
        body = {
            "amount": str(amount),
            "currency": currency,
            "email": payer.get("email") or f"tenant-{metadata.get('tenant_id')}@example.com",
            "first_name": payer.get("first_name") or "Tenant",
            "last_name": payer.get("last_name") or "User",
            "phone_number": payer.get("phone"),
            "tx_ref": reference_number,
            "callback_url": self.callback_url(),
            "return_url": self.return_url(reference_number),
            "customization": {
                "title": "Invoice Payment",
                "description": f"Payment for invoice {metadata.get('invoice_id') or 'N/A'}",
            },
            "meta": {k: metadata.get(k) for k in ("intent_id", "invoice_id", "tenant_id", "organization_id")},
        }
        data = await self._request(
            "initiate", "POST", f"{self.settings.chapa_base_url}/transaction/initialize",
            json=body, headers=self._headers,
        )
        checkout_url = (data.get("data") or {}).get("checkout_url")
        if data.get("status") != "success" or not checkout_url:
            raise ProviderVerificationError(
                data.get("message") or "Failed to initialize Chapa payment", provider=self.name.value
            )
        return InitiationResult(
            reference_number=reference_number,
            redirect_url=checkout_url,
            metadata={"provider": self.name.value, "tx_ref": reference_number},
        )

    async def verify_payment(self, reference_number: str,
                             callback: Optional[ProviderCallback] = None) -> VerificationResult:
        if self.sandbox:
            return self.sandbox_verification(reference_number, callback)

        data = await self._request(
            "verify", "GET", f"{self.settings.chapa_base_url}/transaction/verify/{reference_number}",
            headers=self._headers,
        )
        transaction = data.get("data")
        if data.get("status") != "success" or not transaction:
            return VerificationResult(
                success=False,
                reference_number=reference_number,
                error=data.get("message") or "Transaction verification failed",
            )

        status = transaction.get("status")
        success = status in ("success", "successful")
        return VerificationResult(
            success=success,
            reference_number=reference_number,
            amount=Decimal(str(transaction.get("amount") or "0")),
            transaction_id=transaction.get("reference") or transaction.get("id"),
            amount_confirmed=True,
            metadata={
                "provider": self.name.value,
                "status": status,
                "currency": transaction.get("currency"),
            },
            error=None if success else f"Transaction status: {status}",
        )

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Compare the hex HMAC-SHA256 of the raw body against the header value.
        Fails closed when either the secret or the signature is missing.
        """
        secret = self.settings.chapa_webhook_secret or self.settings.chapa_secret_key
        if not secret:
            logger.warning("chapa_webhook_secret_missing")
            return False
        if not signature:
            return False
        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())
