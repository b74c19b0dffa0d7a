from typing import Dict, Optional, Union

import httpx

from bms_billing.core.config import Settings
from bms_billing.core.exceptions import ProviderConfigurationError
from bms_billing.metrics.metrics import MetricsCollector
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.providers.bank_transfer import BankTransferProvider
from bms_billing.providers.base import BasePaymentProvider
from bms_billing.providers.cbe_birr import CbeBirrProvider
from bms_billing.providers.chapa import ChapaProvider
from bms_billing.providers.hellocash import HelloCashProvider
from bms_billing.providers.telebirr import TelebirrProvider

PROVIDERS: Dict[PaymentProvider, type[BasePaymentProvider]] = {
    PaymentProvider.TELEBIRR: TelebirrProvider,
    PaymentProvider.CBE_BIRR: CbeBirrProvider,
    PaymentProvider.CHAPA: ChapaProvider,
    PaymentProvider.HELLOCASH: HelloCashProvider,
    PaymentProvider.BANK_TRANSFER: BankTransferProvider,
}


def _resolve(name: Union[str, PaymentProvider]) -> PaymentProvider:
    if isinstance(name, PaymentProvider):
        return name
    try:
        return PaymentProvider(name.lower())
    except ValueError as e:
        raise ProviderConfigurationError(f"Unsupported provider: {name}", provider=name) from e


def get_provider(
    name: Union[str, PaymentProvider],
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    metrics: Optional[MetricsCollector] = None,
) -> BasePaymentProvider:
    """Factory function for selecting a payment provider adapter."""
    key = _resolve(name)
    provider_cls = PROVIDERS.get(key)
    if not provider_cls:
        raise ProviderConfigurationError(f"Unsupported provider: {name}", provider=key.value)
    return provider_cls(settings, http_client, metrics)


class ProviderRegistry:
    """One adapter instance per provider, built once and shared by the services."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
        overrides: Optional[Dict[PaymentProvider, BasePaymentProvider]] = None,
    ):
        self._adapters: Dict[PaymentProvider, BasePaymentProvider] = {
            key: get_provider(key, settings, http_client, metrics) for key in PROVIDERS
        }
        if overrides:
            self._adapters.update(overrides)

    def get(self, name: Union[str, PaymentProvider]) -> BasePaymentProvider:
        key = _resolve(name)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ProviderConfigurationError(f"Provider not configured: {key.value}", provider=key.value)
        return adapter

    def __contains__(self, name) -> bool:
        try:
            return _resolve(name) in self._adapters
        except ProviderConfigurationError:
            return False
