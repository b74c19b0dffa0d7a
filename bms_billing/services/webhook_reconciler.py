# services/webhook_reconciler.py - Provider callback reconciliation

from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

import orjson
import structlog

from bms_billing.core.exceptions import (
    DuplicateReferenceError,
    NotFoundError,
    SignatureVerificationError,
    ValidationError,
)
from bms_billing.metrics.metrics import MetricsCollector, get_metrics
from bms_billing.models.callbacks import ProviderCallback, parse_callback
from bms_billing.models.payment import PaymentCreate, PaymentMethod, PaymentStatus
from bms_billing.models.payment_intent import IntentStatus, PaymentIntent, PaymentProvider
from bms_billing.providers.provider_selector import ProviderRegistry
from bms_billing.services.notifications import NotificationOutbox
from bms_billing.services.payment_intents import PaymentIntentService
from bms_billing.services.payment_ledger import PaymentLedger

logger = structlog.get_logger(__name__)


@dataclass
class WebhookOutcome:
    status: str  # completed | already_processed | failed
    intent_id: Optional[str] = None
    payment_id: Optional[str] = None
    message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class WebhookReconciler:
    """
    Turns one provider callback into at most one completed payment.

    Order per callback: signature, reference, intent lookup, adapter
    verification, then the payment insert whose unique reference index makes
    replays and concurrent deliveries collapse into a single row.
    """

    def __init__(
        self,
        intent_service: PaymentIntentService,
        payment_ledger: PaymentLedger,
        providers: ProviderRegistry,
        notifications: NotificationOutbox,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.intent_service = intent_service
        self.payment_ledger = payment_ledger
        self.providers = providers
        self.notifications = notifications
        self.metrics = metrics or get_metrics()

    async def handle_callback(self, provider: PaymentProvider, raw_body: bytes,
                              headers: Mapping[str, str]) -> WebhookOutcome:
        adapter = self.providers.get(provider)

        if adapter.requires_signature:
            lowered = {k.lower(): v for k, v in headers.items()}
            signature = lowered.get((adapter.signature_header or "").lower())
            if not adapter.verify_signature(raw_body, signature):
                self.metrics.record_webhook(provider.value, "rejected")
                logger.warning("webhook_signature_rejected", provider=provider.value,
                               has_signature=bool(signature))
                raise SignatureVerificationError("Invalid webhook signature", provider=provider.value)

        try:
            payload = orjson.loads(raw_body or b"")
        except orjson.JSONDecodeError as e:
            self.metrics.record_webhook(provider.value, "bad_request")
            raise ValidationError("Malformed JSON body", provider=provider.value) from e

        try:
            callback = parse_callback(provider, payload)
        except ValidationError:
            self.metrics.record_webhook(provider.value, "bad_request")
            logger.warning("webhook_reference_missing", provider=provider.value)
            raise
        return await self.reconcile(provider, callback)

    async def reconcile(self, provider: PaymentProvider, callback: ProviderCallback) -> WebhookOutcome:
        reference = callback.reference_number
        log = logger.bind(provider=provider.value, reference_number=reference)

        intent = await self.intent_service.find_intent_by_reference(reference)
        if intent is None or intent.provider != provider.value:
            self.metrics.record_webhook(provider.value, "not_found")
            log.warning("webhook_intent_not_found")
            raise NotFoundError("Payment intent not found", reference_number=reference)

        adapter = self.providers.get(provider)
        verification = await adapter.verify_payment(reference, callback)

        if not verification.success:
            error = verification.error or "Payment verification failed"
            updated = await self.intent_service.mark_failed(intent, error, verification.metadata)
            if updated is None:
                log.warning("webhook_failure_after_completion_ignored", intent_id=intent.id)
                self.metrics.record_webhook(provider.value, "already_processed")
                return WebhookOutcome(status="already_processed", intent_id=intent.id,
                                      payment_id=intent.payment_id)
            log.info("webhook_verification_failed", intent_id=intent.id, error=error)
            await self._notify_failed(intent, error)
            self.metrics.record_webhook(provider.value, "failed")
            return WebhookOutcome(status="failed", intent_id=intent.id, message=error)

        late = intent.status != IntentStatus.COMPLETED.value and (
            intent.status in (IntentStatus.EXPIRED.value, IntentStatus.CANCELLED.value) or intent.is_expired()
        )
        if late:
            log.warning("webhook_late_callback_accepted", intent_id=intent.id, intent_status=intent.status,
                        expires_at=intent.expires_at.isoformat())
        intent = await self.intent_service.mark_completed(intent, verification, late=late)

        amount = intent.amount
        provider_response = dict(verification.metadata)
        if verification.amount is not None and verification.amount > 0 and verification.amount != intent.amount:
            if verification.amount_confirmed:
                log.warning("webhook_amount_mismatch", intent_amount=str(intent.amount),
                            verified_amount=str(verification.amount))
                amount = verification.amount
            else:
                # callback bodies are not proof of the amount collected
                log.warning("webhook_unconfirmed_amount_ignored", intent_amount=str(intent.amount),
                            reported_amount=str(verification.amount))
                provider_response["reported_amount"] = str(verification.amount)

        try:
            payment = await self.payment_ledger.create_payment(
                intent.organization_id,
                PaymentCreate(
                    tenant_id=intent.tenant_id,
                    invoice_id=intent.invoice_id,
                    amount=amount,
                    method=PaymentMethod(provider.value),
                    currency=intent.currency,
                    reference_number=reference,
                    status=PaymentStatus.COMPLETED,
                    provider_transaction_id=verification.transaction_id,
                    provider_response=provider_response,
                ),
                settles_provider_intent=True,
            )
        except DuplicateReferenceError:
            existing = await self.payment_ledger.find_payment_by_reference(intent.organization_id, reference)
            self.metrics.record_webhook(provider.value, "already_processed")
            log.info("webhook_already_processed", intent_id=intent.id)
            return WebhookOutcome(
                status="already_processed",
                intent_id=intent.id,
                payment_id=existing.id if existing else None,
            )

        self.metrics.record_webhook(provider.value, "completed")
        log.info("webhook_payment_recorded", intent_id=intent.id, payment_id=payment.id, amount=str(amount))
        await self._after_commit(intent, payment.id, amount)
        return WebhookOutcome(status="completed", intent_id=intent.id, payment_id=payment.id)

    async def _after_commit(self, intent: PaymentIntent, payment_id: str, amount):
        """Side effects after the payment row exists; none of them can undo it."""
        try:
            await self.intent_service.attach_payment(intent.id, payment_id)
        except Exception:
            logger.exception("intent_payment_link_failed", intent_id=intent.id, payment_id=payment_id)

        receipt_url = None
        try:
            receipt_url = await self.payment_ledger.attach_receipt(payment_id, intent.organization_id)
        except Exception:
            logger.exception("receipt_generation_failed", payment_id=payment_id)

        try:
            await self.notifications.payment_completed(
                intent.organization_id, intent.tenant_id, payment_id, amount,
                invoice_id=intent.invoice_id, receipt_url=receipt_url,
            )
        except Exception:
            logger.exception("payment_notification_failed", payment_id=payment_id)

    async def _notify_failed(self, intent: PaymentIntent, error: str):
        try:
            await self.notifications.payment_failed(intent.organization_id, intent.tenant_id, intent.id, error)
        except Exception:
            logger.exception("payment_notification_failed", intent_id=intent.id)
