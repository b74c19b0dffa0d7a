import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
import tenacity

from bms_billing.core.config import Settings
from bms_billing.core.exceptions import ProviderVerificationError
from bms_billing.metrics.metrics import MetricsCollector, get_metrics
from bms_billing.models.callbacks import ProviderCallback
from bms_billing.models.payment_intent import PaymentProvider

logger = structlog.get_logger(__name__)


@dataclass
class InitiationResult:
    reference_number: str
    redirect_url: Optional[str] = None
    instructions: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationResult:
    success: bool
    reference_number: str
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    # set only when the amount came from the provider API rather than the callback body
    amount_confirmed: bool = False


class BasePaymentProvider(ABC):
    """
    Abstract base class for payment rails.

    Credentials come from the injected ``Settings``; adapters never read the
    process environment. Without credentials an adapter runs in sandbox mode:
    ``initiate_payment`` builds a local redirect and ``verify_payment`` trusts
    the status carried by the callback itself.
    """

    name: PaymentProvider
    requires_signature: bool = False
    signature_header: Optional[str] = None

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings
        self.http_client = http_client
        self.metrics = metrics or get_metrics()

    @abstractmethod
    def has_credentials(self) -> bool:
        """Whether live API credentials are configured."""

    @property
    def sandbox(self) -> bool:
        return not self.has_credentials()

    @abstractmethod
    async def initiate_payment(
        self,
        amount: Decimal,
        currency: str,
        reference_number: str,
        metadata: Dict[str, Any],
    ) -> InitiationResult:
        """Ask the provider to start collecting ``amount``."""

    @abstractmethod
    async def verify_payment(
        self,
        reference_number: str,
        callback: Optional[ProviderCallback] = None,
    ) -> VerificationResult:
        """Confirm with the provider whether ``reference_number`` was paid."""

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Providers without signed callbacks accept every body."""
        return True

    # -------------- helpers --------------
    def callback_url(self) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/webhooks/payments/{self.name.value}"

    def return_url(self, reference_number: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/payments/status?reference={reference_number}"

    def sandbox_initiation(self, amount: Decimal, currency: str, reference_number: str,
                           metadata: Dict[str, Any]) -> InitiationResult:
        base = self.settings.public_base_url.rstrip("/")
        return InitiationResult(
            reference_number=reference_number,
            redirect_url=f"{base}/payments/{self.name.value}/sandbox?reference={reference_number}",
            instructions=(
                f"{self.name.value} payment (sandbox)\n\n"
                f"Reference: {reference_number}\nAmount: {currency} {amount}"
            ),
            metadata={"sandbox": True, "provider": self.name.value,
                      **{k: v for k, v in metadata.items() if k != "payer"}},
        )

    def sandbox_verification(self, reference_number: str,
                             callback: Optional[ProviderCallback]) -> VerificationResult:
        if callback is None:
            return VerificationResult(
                success=False,
                reference_number=reference_number,
                error="No callback payload to verify in sandbox mode",
                metadata={"sandbox": True, "provider": self.name.value},
            )
        success = callback.reports_success
        return VerificationResult(
            success=success,
            reference_number=reference_number,
            amount=getattr(callback, "amount", None),
            transaction_id=callback.transaction_id,
            metadata={"sandbox": True, "provider": self.name.value, "status": callback.reported_status},
            error=None if success else f"Transaction status: {callback.reported_status}",
        )

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Call the provider API with retries on transport errors.

        Raises ProviderVerificationError when the provider cannot be reached
        or answers with a non-2xx status.
        """
        if self.http_client is None:
            raise ProviderVerificationError("HTTP client not configured", provider=self.name.value)

        retrying = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=5),
            stop=tenacity.stop_after_attempt(self.settings.provider_retry_attempts),
            retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
            reraise=True,
        )
        start = time.perf_counter()
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self.http_client.request(
                        method, url, timeout=self.settings.provider_timeout_seconds, **kwargs
                    )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            self._record(operation, "http_error", start)
            logger.error("provider_http_error", provider=self.name.value, operation=operation,
                         status_code=e.response.status_code)
            raise ProviderVerificationError(
                f"{self.name.value} API error: {e.response.status_code}", provider=self.name.value
            ) from e
        except (httpx.RequestError, httpx.TimeoutException) as e:
            self._record(operation, "unreachable", start)
            logger.error("provider_unreachable", provider=self.name.value, operation=operation, error=str(e))
            raise ProviderVerificationError(
                f"{self.name.value} API unreachable", provider=self.name.value
            ) from e
        except ValueError as e:
            self._record(operation, "bad_response", start)
            raise ProviderVerificationError(
                f"{self.name.value} returned a non-JSON response", provider=self.name.value
            ) from e

        self._record(operation, "ok", start)
        return data

    def _record(self, operation: str, outcome: str, start: float):
        self.metrics.record_provider_call(self.name.value, operation, outcome, time.perf_counter() - start)
