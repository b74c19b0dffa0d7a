# services/payment_ledger.py - Payment records, refunds and reconciliation bookkeeping

from typing import Any, Dict, List, Optional

import structlog
from pymongo import ReturnDocument

from bms_billing.core.config import Settings
from bms_billing.core.database import InsertOutcome, insert_or_conflict
from bms_billing.core.exceptions import (
    CrossOrganizationError,
    DuplicateReferenceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from bms_billing.core.serialization import utcnow
from bms_billing.metrics.metrics import MetricsCollector, get_metrics
from bms_billing.models.invoice import Invoice, InvoiceStatus
from bms_billing.models.payment import (
    BOOKKEEPING_FIELDS,
    Payment,
    PaymentCreate,
    PaymentPatch,
    PaymentStatus,
    ReconcileResult,
    ReconciliationStatus,
)
from bms_billing.services.directory import DirectoryService
from bms_billing.services.invoice_ledger import InvoiceLedger

logger = structlog.get_logger(__name__)

# Fields that travel with a status change into completed/failed
SETTLEMENT_FIELDS = frozenset({"provider_transaction_id", "provider_response", "failure_reason", "payment_date"})


class PaymentLedger:
    """
    Owns payment rows. Every write that can change how much of an invoice is
    paid ends with ``InvoiceLedger.recompute_payment_status``.
    """

    def __init__(
        self,
        payments_collection,
        invoice_ledger: InvoiceLedger,
        directory: DirectoryService,
        settings: Settings,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.payments_collection = payments_collection
        self.invoice_ledger = invoice_ledger
        self.directory = directory
        self.settings = settings
        self.metrics = metrics or get_metrics()

    # ------------------------------------------------------------------
    # Validation shared with the intent orchestrator
    # ------------------------------------------------------------------
    async def validate_invoice_link(self, invoice_id: str, organization_id: str, tenant_id: str,
                                    allow_cancelled: bool = False) -> Invoice:
        """
        The invoice must exist and belong to the organization and tenant.
        Cancelled invoices are refused unless ``allow_cancelled`` is set.
        """
        invoice = await self.invoice_ledger.find_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found", invoice_id=invoice_id)
        if invoice.organization_id != organization_id:
            raise CrossOrganizationError("Invoice does not belong to the same organization", invoice_id=invoice_id)
        if invoice.tenant_id != tenant_id:
            raise CrossOrganizationError("Invoice does not belong to this tenant", invoice_id=invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED.value and not allow_cancelled:
            raise InvalidStateError("Invoice is cancelled", invoice_id=invoice_id)
        return invoice

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def create_payment(self, organization_id: str, data: PaymentCreate,
                             created_by: Optional[str] = None,
                             settles_provider_intent: bool = False) -> Payment:
        """
        Insert a payment.

        The unique (organization_id, reference_number) index is the idempotency
        gate: a second insert with the same reference raises
        DuplicateReferenceError and leaves exactly one row.

        ``settles_provider_intent`` is set by the webhook path: money the
        provider already collected is recorded even if the invoice was
        cancelled in the meantime, and left pending reconciliation.
        """
        await self.directory.get_tenant(data.tenant_id, organization_id)
        if data.amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        if data.status not in (PaymentStatus.PENDING, PaymentStatus.COMPLETED):
            raise ValidationError("Payments are created pending or completed", status=data.status.value)
        if data.invoice_id:
            invoice = await self.validate_invoice_link(
                data.invoice_id, organization_id, data.tenant_id, allow_cancelled=settles_provider_intent
            )
            if invoice.status == InvoiceStatus.CANCELLED.value:
                logger.warning("payment_on_cancelled_invoice", invoice_id=invoice.id,
                               reference_number=data.reference_number)

        payment = Payment(
            organization_id=organization_id,
            tenant_id=data.tenant_id,
            invoice_id=data.invoice_id,
            amount=data.amount,
            currency=data.currency or self.settings.default_currency,
            method=data.method,
            payment_date=data.payment_date or utcnow(),
            reference_number=data.reference_number or None,
            status=data.status,
            provider_transaction_id=data.provider_transaction_id,
            provider_response=data.provider_response,
            notes=data.notes,
            created_by=created_by,
        )
        outcome = await insert_or_conflict(self.payments_collection, payment.to_mongo())
        if outcome is InsertOutcome.ALREADY_EXISTS:
            logger.info("payment_duplicate_reference", reference_number=payment.reference_number,
                        organization_id=organization_id)
            raise DuplicateReferenceError(
                "A payment with this reference number already exists",
                reference_number=payment.reference_number,
            )

        self.metrics.record_payment(payment.status)
        logger.info(
            "payment_created",
            payment_id=payment.id,
            invoice_id=payment.invoice_id,
            reference_number=payment.reference_number,
            status=payment.status,
            amount=str(payment.amount),
        )

        if payment.status == PaymentStatus.COMPLETED.value and payment.invoice_id:
            await self.invoice_ledger.recompute_payment_status(payment.invoice_id, organization_id)
        return payment

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------
    async def update_payment(self, payment_id: str, organization_id: str, patch: PaymentPatch) -> Payment:
        """
        Edit a payment.

        Anything may change while ``pending``. After that only bookkeeping
        fields change, except for a move into ``completed`` or ``failed``
        which may carry settlement details. Refunded payments and completed
        payments never leave their state through this path.
        """
        current = await self.get_payment(payment_id, organization_id)
        fields = patch.model_dump(exclude_unset=True)
        new_status = fields.pop("status", None)
        new_status = PaymentStatus(new_status).value if new_status is not None else None
        monetary = set(fields) - BOOKKEEPING_FIELDS

        if new_status == PaymentStatus.REFUNDED.value:
            raise InvalidStateError("Use the refund operation to refund a payment", payment_id=payment_id)
        if new_status == current.status:
            new_status = None

        if new_status is not None:
            allowed_from = {
                PaymentStatus.PENDING.value: {PaymentStatus.PENDING.value, PaymentStatus.FAILED.value},
                PaymentStatus.COMPLETED.value: {PaymentStatus.PENDING.value, PaymentStatus.FAILED.value},
                PaymentStatus.FAILED.value: {PaymentStatus.PENDING.value},
            }[new_status]
            if current.status not in allowed_from:
                raise InvalidStateError(
                    f"Cannot move a {current.status} payment to {new_status}",
                    payment_id=payment_id,
                )
        if monetary and current.status != PaymentStatus.PENDING.value:
            settling = new_status in (PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value)
            if not (settling and monetary <= SETTLEMENT_FIELDS):
                raise InvalidStateError(
                    "Payment can only be modified while pending",
                    payment_id=payment_id,
                    status=current.status,
                )
        if "amount" in fields and fields["amount"] <= 0:
            raise ValidationError("Payment amount must be greater than zero")

        updates: Dict[str, Any] = dict(fields)
        if new_status is not None:
            updates["status"] = new_status
        if not updates:
            return current
        updates["updated_at"] = utcnow()

        doc = await self.payments_collection.find_one_and_update(
            {"_id": payment_id, "organization_id": organization_id, "status": current.status},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise InvalidStateError("Payment changed state while being updated", payment_id=payment_id)
        payment = Payment.from_mongo(doc)
        logger.info("payment_updated", payment_id=payment_id, fields=sorted(updates))

        if new_status is not None:
            self.metrics.record_payment(new_status)
        if new_status == PaymentStatus.COMPLETED.value and payment.invoice_id:
            await self.invoice_ledger.recompute_payment_status(payment.invoice_id, organization_id)
        return payment

    async def refund_payment(self, payment_id: str, organization_id: str, reason: Optional[str] = None) -> Payment:
        """completed -> refunded, then settle the linked invoice (a paid invoice may revert to sent)."""
        updates: Dict[str, Any] = {
            "status": PaymentStatus.REFUNDED.value,
            "refunded_at": utcnow(),
            "updated_at": utcnow(),
        }
        if reason:
            updates["notes"] = reason
        doc = await self.payments_collection.find_one_and_update(
            {"_id": payment_id, "organization_id": organization_id, "status": PaymentStatus.COMPLETED.value},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            current = await self.get_payment(payment_id, organization_id)
            raise InvalidStateError(
                "Only completed payments can be refunded",
                payment_id=payment_id,
                status=current.status,
            )

        payment = Payment.from_mongo(doc)
        self.metrics.record_payment(PaymentStatus.REFUNDED.value)
        logger.info("payment_refunded", payment_id=payment_id, invoice_id=payment.invoice_id,
                    amount=str(payment.amount))
        if payment.invoice_id:
            await self.invoice_ledger.recompute_payment_status(payment.invoice_id, organization_id)
        return payment

    def receipt_url(self, payment_id: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/payments/{payment_id}/receipt"

    async def attach_receipt(self, payment_id: str, organization_id: str, url: Optional[str] = None) -> str:
        """Receipt URL is bookkeeping; it is written whatever the payment's status."""
        url = url or self.receipt_url(payment_id)
        result = await self.payments_collection.update_one(
            {"_id": payment_id, "organization_id": organization_id},
            {"$set": {"receipt_url": url, "updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        return url

    # ------------------------------------------------------------------
    # Reconciliation bookkeeping
    # ------------------------------------------------------------------
    async def list_payments_for_reconciliation(
        self,
        organization_id: str,
        reconciliation_status: ReconciliationStatus = ReconciliationStatus.PENDING,
        method: Optional[str] = None,
        limit: int = 50,
    ) -> List[Payment]:
        query: Dict[str, Any] = {
            "organization_id": organization_id,
            "status": PaymentStatus.COMPLETED.value,
            "reconciliation_status": ReconciliationStatus(reconciliation_status).value,
        }
        if method:
            query["method"] = method
        cursor = self.payments_collection.find(query).sort("payment_date", -1).limit(limit)
        return [Payment.from_mongo(doc) for doc in await cursor.to_list(length=limit)]

    async def reconcile_payments(
        self,
        organization_id: str,
        payment_ids: List[str],
        bank_statement_reference: Optional[str] = None,
        notes: Optional[str] = None,
        reconciled_by: Optional[str] = None,
        status: ReconciliationStatus = ReconciliationStatus.RECONCILED,
    ) -> ReconcileResult:
        if not payment_ids:
            raise ValidationError("payment_ids must not be empty")
        status = ReconciliationStatus(status)
        updates: Dict[str, Any] = {
            "reconciliation_status": status.value,
            "reconciled_at": utcnow(),
            "reconciled_by": reconciled_by,
            "updated_at": utcnow(),
        }
        if bank_statement_reference:
            updates["bank_statement_reference"] = bank_statement_reference
        if notes:
            updates["notes"] = notes

        result = await self.payments_collection.update_many(
            {"_id": {"$in": list(payment_ids)}, "organization_id": organization_id},
            {"$set": updates},
        )
        logger.info(
            "payments_reconciled",
            organization_id=organization_id,
            requested=len(payment_ids),
            matched=result.matched_count,
            status=status.value,
        )
        return ReconcileResult(matched=result.matched_count, modified=result.modified_count, status=status)

    async def dispute_payment(self, payment_id: str, organization_id: str, notes: Optional[str] = None,
                              disputed_by: Optional[str] = None) -> Payment:
        result = await self.reconcile_payments(
            organization_id, [payment_id], notes=notes, reconciled_by=disputed_by,
            status=ReconciliationStatus.DISPUTED,
        )
        if result.matched == 0:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        return await self.get_payment(payment_id, organization_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_payment(self, payment_id: str, organization_id: str) -> Payment:
        doc = await self.payments_collection.find_one({"_id": payment_id, "organization_id": organization_id})
        if not doc:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        return Payment.from_mongo(doc)

    async def find_payment_by_reference(self, organization_id: str, reference_number: str) -> Optional[Payment]:
        return Payment.from_mongo(await self.payments_collection.find_one(
            {"organization_id": organization_id, "reference_number": reference_number}
        ))

    async def list_payments_by_invoice(self, organization_id: str, invoice_id: str) -> List[Payment]:
        cursor = self.payments_collection.find(
            {"organization_id": organization_id, "invoice_id": invoice_id}
        ).sort("payment_date", -1)
        return [Payment.from_mongo(doc) for doc in await cursor.to_list(length=None)]

    async def list_payments_by_tenant(self, organization_id: str, tenant_id: str,
                                      status: Optional[PaymentStatus] = None) -> List[Payment]:
        query: Dict[str, Any] = {"organization_id": organization_id, "tenant_id": tenant_id}
        if status:
            query["status"] = PaymentStatus(status).value
        cursor = self.payments_collection.find(query).sort("payment_date", -1)
        return [Payment.from_mongo(doc) for doc in await cursor.to_list(length=None)]
