from bms_billing.providers.base import BasePaymentProvider, InitiationResult, VerificationResult
from bms_billing.providers.provider_selector import PROVIDERS, ProviderRegistry, get_provider

__all__ = [
    "BasePaymentProvider",
    "InitiationResult",
    "VerificationResult",
    "PROVIDERS",
    "ProviderRegistry",
    "get_provider",
]
