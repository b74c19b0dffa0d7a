from decimal import Decimal
from typing import Any, Dict, Optional

from bms_billing.models.callbacks import ProviderCallback
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.providers.base import BasePaymentProvider, InitiationResult, VerificationResult


class BankTransferProvider(BasePaymentProvider):
    """
    Manual bank transfer. There is no API: initiation hands out account
    details, and confirmation arrives from the bank statement feed.
    """

    name = PaymentProvider.BANK_TRANSFER

    def has_credentials(self) -> bool:
        return bool(self.settings.bank_transfer_account_number)

    async def initiate_payment(self, amount: Decimal, currency: str, reference_number: str,
                               metadata: Dict[str, Any]) -> InitiationResult:
        s = self.settings
        instructions = (
            f"Bank: {s.bank_transfer_bank_name}\n"
            f"Account name: {s.bank_transfer_account_name or 'N/A'}\n"
            f"Account number: {s.bank_transfer_account_number or 'N/A'}\n"
            f"Amount: {currency} {amount}\n"
            f"Reference: {reference_number}\n\n"
            "Include the reference in the transfer description."
        )
        return InitiationResult(
            reference_number=reference_number,
            instructions=instructions,
            metadata={"provider": self.name.value, "sandbox": self.sandbox},
        )

    async def verify_payment(self, reference_number: str,
                             callback: Optional[ProviderCallback] = None) -> VerificationResult:
        # statement-feed callbacks are the only evidence available
        result = self.sandbox_verification(reference_number, callback)
        result.metadata["sandbox"] = self.sandbox
        if result.success and result.amount is None:
            result.success = False
            result.error = "Bank confirmation is missing the transferred amount"
        return result
