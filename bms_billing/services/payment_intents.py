# services/payment_intents.py - Provider-agnostic payment intents

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from pymongo import ReturnDocument

from bms_billing.core.config import Settings
from bms_billing.core.exceptions import (
    BillingError,
    InvalidStateError,
    NotFoundError,
    ProviderVerificationError,
    ValidationError,
)
from bms_billing.core.serialization import utcnow
from bms_billing.models.invoice import InvoiceStatus
from bms_billing.models.payment_intent import (
    IntentStatus,
    PaymentIntent,
    PaymentIntentCreate,
    PaymentIntentResponse,
    PaymentProvider,
)
from bms_billing.providers.base import VerificationResult
from bms_billing.providers.provider_selector import ProviderRegistry
from bms_billing.services.directory import DirectoryService
from bms_billing.services.invoice_ledger import InvoiceLedger
from bms_billing.services.payment_ledger import PaymentLedger

logger = structlog.get_logger(__name__)


def generate_reference(provider: PaymentProvider) -> str:
    return f"BMS-{provider.value.upper().replace('_', '')}-{uuid.uuid4().hex[:16].upper()}"


def _payer_details(tenant: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "email": tenant.get("email"),
        "first_name": tenant.get("first_name"),
        "last_name": tenant.get("last_name"),
        "phone": tenant.get("primary_phone") or tenant.get("phone"),
    }


class PaymentIntentService:
    """
    Creates intents, hands them to the provider adapter and records what the
    provider returned. No payment row is written here; only a verified
    provider callback produces one.
    """

    def __init__(
        self,
        intents_collection,
        payment_ledger: PaymentLedger,
        invoice_ledger: InvoiceLedger,
        directory: DirectoryService,
        providers: ProviderRegistry,
        settings: Settings,
    ):
        self.intents_collection = intents_collection
        self.payment_ledger = payment_ledger
        self.invoice_ledger = invoice_ledger
        self.directory = directory
        self.providers = providers
        self.settings = settings

    def _response(self, intent: PaymentIntent) -> PaymentIntentResponse:
        return PaymentIntentResponse(
            intent=intent,
            redirect_url=intent.redirect_url,
            payment_instructions=intent.payment_instructions,
            reference_number=intent.reference_number,
            is_expired=intent.status == IntentStatus.PENDING.value and intent.is_expired(),
        )

    async def create_and_initiate_payment(
        self,
        organization_id: str,
        tenant_id: str,
        data: PaymentIntentCreate,
    ) -> PaymentIntentResponse:
        """
        Validate ownership, persist a pending intent and ask the provider to
        start collecting. A failed or timed-out provider call leaves the intent
        ``failed`` with the error recorded and raises ProviderVerificationError.
        """
        if data.amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        adapter = self.providers.get(data.provider)
        tenant = await self.directory.get_tenant(tenant_id, organization_id)

        if data.invoice_id:
            invoice = await self.payment_ledger.validate_invoice_link(data.invoice_id, organization_id, tenant_id)
            outstanding = await self.invoice_ledger.outstanding_balance(invoice)
            if invoice.status == InvoiceStatus.PAID.value or outstanding <= 0:
                raise InvalidStateError("Invoice is already fully paid, nothing to collect",
                                        invoice_id=invoice.id)
            if data.amount > outstanding:
                raise ValidationError(
                    f"Amount exceeds the outstanding balance of {outstanding}",
                    invoice_id=invoice.id,
                    outstanding=str(outstanding),
                )

        now = utcnow()
        intent = PaymentIntent(
            organization_id=organization_id,
            tenant_id=tenant_id,
            invoice_id=data.invoice_id,
            amount=data.amount,
            currency=data.currency or self.settings.default_currency,
            provider=data.provider,
            reference_number=generate_reference(PaymentProvider(data.provider)),
            expires_at=now + timedelta(minutes=self.settings.intent_ttl_minutes),
            created_at=now,
            updated_at=now,
        )
        await self.intents_collection.insert_one(intent.to_mongo())
        logger.info("payment_intent_created", intent_id=intent.id, provider=intent.provider,
                    reference_number=intent.reference_number, amount=str(intent.amount))

        metadata = {
            "intent_id": intent.id,
            "invoice_id": intent.invoice_id,
            "tenant_id": tenant_id,
            "organization_id": organization_id,
            "payer": _payer_details(tenant),
        }
        try:
            result = await asyncio.wait_for(
                adapter.initiate_payment(intent.amount, intent.currency, intent.reference_number, metadata),
                timeout=self.settings.provider_initiate_timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._fail_initiation(intent, "Provider did not respond in time")
            raise ProviderVerificationError("Payment provider timed out", intent_id=intent.id)
        except BillingError as e:
            await self._fail_initiation(intent, e.message)
            raise ProviderVerificationError(e.message, intent_id=intent.id) from e
        except Exception as e:
            logger.exception("payment_initiation_crashed", intent_id=intent.id, provider=intent.provider)
            await self._fail_initiation(intent, str(e) or e.__class__.__name__)
            raise ProviderVerificationError("Failed to initiate payment", intent_id=intent.id) from e

        doc = await self.intents_collection.find_one_and_update(
            {"_id": intent.id},
            {"$set": {
                "reference_number": result.reference_number,
                "redirect_url": result.redirect_url,
                "payment_instructions": result.instructions,
                "provider_metadata": result.metadata,
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        intent = PaymentIntent.from_mongo(doc)
        logger.info("payment_intent_initiated", intent_id=intent.id, provider=intent.provider,
                    has_redirect=bool(intent.redirect_url))
        return self._response(intent)

    async def _fail_initiation(self, intent: PaymentIntent, error: str):
        await self.intents_collection.update_one(
            {"_id": intent.id, "status": IntentStatus.PENDING.value},
            {"$set": {"status": IntentStatus.FAILED.value, "error": error, "updated_at": utcnow()}},
        )
        logger.warning("payment_intent_initiation_failed", intent_id=intent.id, provider=intent.provider,
                       error=error)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_intent(self, intent_id: str, organization_id: str) -> PaymentIntentResponse:
        doc = await self.intents_collection.find_one({"_id": intent_id, "organization_id": organization_id})
        if not doc:
            raise NotFoundError("Payment intent not found", intent_id=intent_id)
        return self._response(PaymentIntent.from_mongo(doc))

    async def find_intent_by_reference(self, reference_number: str) -> Optional[PaymentIntent]:
        return PaymentIntent.from_mongo(
            await self.intents_collection.find_one({"reference_number": reference_number})
        )

    async def list_intents_by_tenant(self, organization_id: str, tenant_id: str,
                                     status: Optional[IntentStatus] = None) -> List[PaymentIntent]:
        query: Dict[str, Any] = {"organization_id": organization_id, "tenant_id": tenant_id}
        if status:
            query["status"] = IntentStatus(status).value
        cursor = self.intents_collection.find(query).sort("created_at", -1)
        return [PaymentIntent.from_mongo(doc) for doc in await cursor.to_list(length=None)]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def cancel_intent(self, intent_id: str, organization_id: str) -> PaymentIntentResponse:
        doc = await self.intents_collection.find_one_and_update(
            {"_id": intent_id, "organization_id": organization_id, "status": IntentStatus.PENDING.value},
            {"$set": {"status": IntentStatus.CANCELLED.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            current = await self.get_intent(intent_id, organization_id)
            raise InvalidStateError("Only pending intents can be cancelled",
                                    intent_id=intent_id, status=current.intent.status)
        logger.info("payment_intent_cancelled", intent_id=intent_id)
        return self._response(PaymentIntent.from_mongo(doc))

    async def mark_completed(self, intent: PaymentIntent, verification: VerificationResult,
                             late: bool = False) -> PaymentIntent:
        """Completion is idempotent: an already completed intent is returned unchanged."""
        updates: Dict[str, Any] = {
            "status": IntentStatus.COMPLETED.value,
            "completed_at": utcnow(),
            "updated_at": utcnow(),
            "error": None,
            "provider_metadata.verification": verification.metadata,
        }
        if verification.transaction_id:
            updates["provider_metadata.transaction_id"] = verification.transaction_id
        if late:
            updates["provider_metadata.late_callback"] = True
        doc = await self.intents_collection.find_one_and_update(
            {"_id": intent.id, "status": {"$ne": IntentStatus.COMPLETED.value}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            doc = await self.intents_collection.find_one({"_id": intent.id})
        return PaymentIntent.from_mongo(doc)

    async def mark_failed(self, intent: PaymentIntent, error: str,
                          metadata: Optional[Dict[str, Any]] = None) -> Optional[PaymentIntent]:
        """Record a failed verification; a completed intent is never downgraded."""
        doc = await self.intents_collection.find_one_and_update(
            {"_id": intent.id, "status": {"$ne": IntentStatus.COMPLETED.value}},
            {"$set": {
                "status": IntentStatus.FAILED.value,
                "error": error,
                "provider_metadata.verification_error": error,
                "provider_metadata.verification": metadata or {},
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        return PaymentIntent.from_mongo(doc)

    async def attach_payment(self, intent_id: str, payment_id: str):
        await self.intents_collection.update_one(
            {"_id": intent_id},
            {"$set": {"payment_id": payment_id, "updated_at": utcnow()}},
        )

    async def expire_stale_intents(self, as_of: Optional[datetime] = None) -> int:
        """Mark pending intents past their expiry as ``expired``."""
        result = await self.intents_collection.update_many(
            {"status": IntentStatus.PENDING.value, "expires_at": {"$lte": as_of or utcnow()}},
            {"$set": {"status": IntentStatus.EXPIRED.value, "updated_at": utcnow()}},
        )
        if result.modified_count:
            logger.info("payment_intents_expired", count=result.modified_count)
        return result.modified_count
