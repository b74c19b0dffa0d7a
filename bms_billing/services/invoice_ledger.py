# services/invoice_ledger.py - Invoice creation, numbering and lifecycle

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
import tenacity
from pymongo import ReturnDocument

from bms_billing.core.config import Settings
from bms_billing.core.database import InsertOutcome, insert_or_conflict
from bms_billing.core.exceptions import (
    DuplicateReferenceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from bms_billing.core.locks import KeyedLock
from bms_billing.core.money import money_sum, to_decimal
from bms_billing.core.serialization import utcnow
from bms_billing.metrics.metrics import MetricsCollector, get_metrics
from bms_billing.models.invoice import (
    Invoice,
    InvoiceCreate,
    InvoiceItem,
    InvoicePatch,
    InvoiceStatus,
    compute_totals,
)
from bms_billing.models.payment import PaymentStatus
from bms_billing.services.directory import DirectoryService

logger = structlog.get_logger(__name__)

# Fields an invoice accepts after it has left draft
LIFECYCLE_FIELDS = frozenset({"status", "notes"})
REQUIRED_PATCH_FIELDS = ("items", "issue_date", "due_date", "period_start", "period_end")


class InvoiceNumberTaken(Exception):
    """Another writer claimed the sequence number we computed"""


def format_invoice_number(year: int, sequence: int) -> str:
    return f"INV-{year}-{sequence:03d}"


class InvoiceLedger:
    """Owns invoice rows: creation, numbering, totals and status transitions"""

    def __init__(
        self,
        invoices_collection,
        payments_collection,
        directory: DirectoryService,
        settings: Settings,
        locks: Optional[KeyedLock] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.invoices_collection = invoices_collection
        self.payments_collection = payments_collection
        self.directory = directory
        self.settings = settings
        self.locks = locks or KeyedLock()
        self.metrics = metrics or get_metrics()

    # ------------------------------------------------------------------
    # Numbering
    # ------------------------------------------------------------------
    async def next_invoice_number(self, organization_id: str, year: int) -> tuple[str, int]:
        """
        Read the highest sequence for the organization/year and add one.

        The read is only a guess; the unique index on
        (organization_id, invoice_number) decides who gets the number.
        """
        cursor = (
            self.invoices_collection.find({"organization_id": organization_id, "invoice_year": year})
            .sort("invoice_sequence", -1)
            .limit(1)
        )
        last = await cursor.to_list(length=1)
        sequence = (last[0].get("invoice_sequence") or 0) + 1 if last else 1
        return format_invoice_number(year, sequence), sequence

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def create_invoice(self, organization_id: str, data: InvoiceCreate) -> Invoice:
        """Validate against the lease, compute totals and insert a draft invoice."""
        lease = await self.directory.get_lease(data.lease_id, organization_id)
        await self.directory.get_tenant(data.tenant_id, organization_id)
        await self.directory.get_unit(data.unit_id, organization_id)
        if lease.get("tenant_id") != data.tenant_id:
            raise ValidationError("Tenant ID does not match the lease", lease_id=data.lease_id)
        if lease.get("unit_id") != data.unit_id:
            raise ValidationError("Unit ID does not match the lease", lease_id=data.lease_id)
        if not data.items:
            raise ValidationError("Invoice must have at least one item")

        issue_date = data.issue_date or utcnow()
        self._validate_dates(issue_date, data.due_date, data.period_start, data.period_end)
        subtotal, tax, total = compute_totals(data.items, data.tax)

        def build(number: str, year: Optional[int], sequence: Optional[int]) -> Invoice:
            return Invoice(
                organization_id=organization_id,
                lease_id=data.lease_id,
                tenant_id=data.tenant_id,
                unit_id=data.unit_id,
                invoice_number=number,
                invoice_year=year,
                invoice_sequence=sequence,
                issue_date=issue_date,
                due_date=data.due_date,
                period_start=data.period_start,
                period_end=data.period_end,
                items=data.items,
                subtotal=subtotal,
                tax=tax,
                total=total,
                status=InvoiceStatus.DRAFT,
                notes=data.notes,
            )

        if data.invoice_number:
            invoice = build(data.invoice_number, None, None)
            outcome = await insert_or_conflict(self.invoices_collection, invoice.to_mongo())
            if outcome is InsertOutcome.ALREADY_EXISTS:
                raise DuplicateReferenceError(
                    "Invoice number already exists", invoice_number=data.invoice_number
                )
        else:
            invoice = await self._insert_with_generated_number(organization_id, issue_date.year, build)

        self.metrics.record_invoice_transition(InvoiceStatus.DRAFT.value)
        logger.info(
            "invoice_created",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            organization_id=organization_id,
            total=str(invoice.total),
        )
        return invoice

    async def _insert_with_generated_number(self, organization_id: str, year: int, build) -> Invoice:
        retrying = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(self.settings.invoice_number_retry_attempts),
            wait=tenacity.wait_random(min=0, max=0.05),
            retry=tenacity.retry_if_exception_type(InvoiceNumberTaken),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    number, sequence = await self.next_invoice_number(organization_id, year)
                    invoice = build(number, year, sequence)
                    outcome = await insert_or_conflict(self.invoices_collection, invoice.to_mongo())
                    if outcome is InsertOutcome.ALREADY_EXISTS:
                        logger.info("invoice_number_collision", invoice_number=number,
                                    attempt=attempt.retry_state.attempt_number)
                        raise InvoiceNumberTaken(number)
        except InvoiceNumberTaken as e:
            raise InvalidStateError(
                "Could not allocate an invoice number, try again", organization_id=organization_id
            ) from e
        return invoice

    @staticmethod
    def _validate_dates(issue_date: datetime, due_date: datetime, period_start: datetime,
                        period_end: datetime):
        if period_end < period_start:
            raise ValidationError("Period end date must be after period start date")
        if due_date < issue_date.replace(hour=0, minute=0, second=0, microsecond=0):
            raise ValidationError("Due date must not be before the issue date")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_invoice(self, invoice_id: str, organization_id: str) -> Invoice:
        doc = await self.invoices_collection.find_one({"_id": invoice_id, "organization_id": organization_id})
        if not doc:
            raise NotFoundError("Invoice not found", invoice_id=invoice_id)
        return Invoice.from_mongo(doc)

    async def find_invoice(self, invoice_id: str) -> Optional[Invoice]:
        """Unscoped lookup, used to tell missing rows from foreign ones."""
        return Invoice.from_mongo(await self.invoices_collection.find_one({"_id": invoice_id}))

    async def list_invoices(
        self,
        organization_id: str,
        tenant_id: Optional[str] = None,
        lease_id: Optional[str] = None,
        status: Optional[InvoiceStatus] = None,
        limit: int = 100,
    ) -> List[Invoice]:
        query: Dict[str, Any] = {"organization_id": organization_id}
        if tenant_id:
            query["tenant_id"] = tenant_id
        if lease_id:
            query["lease_id"] = lease_id
        if status:
            query["status"] = InvoiceStatus(status).value
        cursor = self.invoices_collection.find(query).sort("issue_date", -1).limit(limit)
        return [Invoice.from_mongo(doc) for doc in await cursor.to_list(length=limit)]

    async def list_invoices_by_tenant(self, organization_id: str, tenant_id: str) -> List[Invoice]:
        return await self.list_invoices(organization_id, tenant_id=tenant_id)

    async def list_invoices_by_lease(self, organization_id: str, lease_id: str) -> List[Invoice]:
        return await self.list_invoices(organization_id, lease_id=lease_id)

    async def find_overdue_invoices(self, organization_id: str, as_of: Optional[datetime] = None) -> List[Invoice]:
        """Sent or overdue invoices whose due date has passed."""
        as_of = as_of or utcnow()
        cursor = self.invoices_collection.find({
            "organization_id": organization_id,
            "status": {"$in": [InvoiceStatus.SENT.value, InvoiceStatus.OVERDUE.value]},
            "due_date": {"$lt": as_of},
        }).sort("due_date", 1)
        return [Invoice.from_mongo(doc) for doc in await cursor.to_list(length=None)]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    async def update_invoice(self, invoice_id: str, organization_id: str, patch: InvoicePatch) -> Invoice:
        """
        Edit an invoice. Content fields can only change while ``draft``;
        status and notes can change at any stage.
        """
        current = await self.get_invoice(invoice_id, organization_id)
        fields = patch.model_dump(exclude_unset=True)
        # these columns are required; an explicit null leaves them untouched
        for key in REQUIRED_PATCH_FIELDS:
            if key in fields and fields[key] is None:
                fields.pop(key)
        status = fields.pop("status", None)
        content_keys = set(fields) - LIFECYCLE_FIELDS

        if content_keys and current.status != InvoiceStatus.DRAFT.value:
            raise InvalidStateError(
                "Invoice can only be modified while in draft",
                invoice_id=invoice_id,
                status=current.status,
            )

        updates: Dict[str, Any] = {}
        if "items" in fields or "tax" in fields:
            items = [InvoiceItem.model_validate(i) for i in fields.get("items", current.items)]
            if not items:
                raise ValidationError("Invoice must have at least one item")
            subtotal, tax, total = compute_totals(items, fields.get("tax", current.tax))
            updates.update({
                "items": [i.model_dump(mode="python") for i in items],
                "subtotal": subtotal,
                "tax": tax,
                "total": total,
            })
            fields.pop("items", None)
            fields.pop("tax", None)

        dates = {
            key: fields.get(key) or getattr(current, key)
            for key in ("issue_date", "due_date", "period_start", "period_end")
        }
        self._validate_dates(**dates)
        updates.update(fields)

        invoice = current
        if updates:
            query: Dict[str, Any] = {"_id": invoice_id, "organization_id": organization_id}
            if content_keys:
                query["status"] = InvoiceStatus.DRAFT.value
            updates["updated_at"] = utcnow()
            doc = await self.invoices_collection.find_one_and_update(
                query, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
            if doc is None:
                raise InvalidStateError("Invoice left draft while being edited", invoice_id=invoice_id)
            invoice = Invoice.from_mongo(doc)
            logger.info("invoice_updated", invoice_id=invoice_id, fields=sorted(updates))
            if "total" in updates and invoice.amount_paid > 0:
                invoice = await self.recompute_payment_status(invoice_id, organization_id)

        if status is not None and status != invoice.status:
            invoice = await self.update_invoice_status(invoice_id, organization_id, InvoiceStatus(status))
        return invoice

    async def update_invoice_status(
        self,
        invoice_id: str,
        organization_id: str,
        status: InvoiceStatus,
        paid_at: Optional[datetime] = None,
    ) -> Invoice:
        """
        Move an invoice to ``status``.

        ``paid`` stamps ``paid_at`` (default now); every other status clears it.
        A paid invoice cannot be cancelled and a cancelled invoice is final.
        """
        status = InvoiceStatus(status)
        current = await self.get_invoice(invoice_id, organization_id)
        if status is InvoiceStatus.DRAFT:
            raise InvalidStateError(
                "An invoice cannot be moved back to draft", invoice_id=invoice_id, status=current.status
            )
        blocked = [InvoiceStatus.CANCELLED.value]
        if status is InvoiceStatus.CANCELLED:
            blocked.append(InvoiceStatus.PAID.value)
        if current.status in blocked:
            raise InvalidStateError(
                f"Cannot move a {current.status} invoice to {status.value}",
                invoice_id=invoice_id,
                status=current.status,
            )

        updates: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        updates["paid_at"] = (paid_at or utcnow()) if status is InvoiceStatus.PAID else None

        doc = await self.invoices_collection.find_one_and_update(
            {"_id": invoice_id, "organization_id": organization_id, "status": {"$nin": blocked}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise InvalidStateError(
                f"Invoice changed state before it could move to {status.value}", invoice_id=invoice_id
            )
        if current.status != status.value:
            self.metrics.record_invoice_transition(status.value)
        logger.info("invoice_status_changed", invoice_id=invoice_id, old_status=current.status,
                    new_status=status.value)
        return Invoice.from_mongo(doc)

    async def cancel_invoice(self, invoice_id: str, organization_id: str) -> Invoice:
        return await self.update_invoice_status(invoice_id, organization_id, InvoiceStatus.CANCELLED)

    async def mark_overdue_invoices(self, organization_id: str, as_of: Optional[datetime] = None) -> List[str]:
        """Move every unpaid ``sent`` invoice past its due date to ``overdue``."""
        as_of = as_of or utcnow()
        cursor = self.invoices_collection.find({
            "organization_id": organization_id,
            "status": InvoiceStatus.SENT.value,
            "due_date": {"$lt": as_of},
        })
        marked = []
        for doc in await cursor.to_list(length=None):
            invoice = Invoice.from_mongo(doc)
            if invoice.amount_paid >= invoice.total:
                continue
            try:
                await self.update_invoice_status(invoice.id, organization_id, InvoiceStatus.OVERDUE)
            except InvalidStateError:
                # paid or cancelled concurrently
                continue
            marked.append(invoice.id)
        logger.info("overdue_sweep_completed", organization_id=organization_id, marked=len(marked))
        return marked

    # ------------------------------------------------------------------
    # Payment-driven status
    # ------------------------------------------------------------------
    async def recompute_payment_status(self, invoice_id: str, organization_id: str) -> Invoice:
        """
        Sum completed payments for the invoice and settle its status.

        Runs under the invoice's lock so concurrent completions see each
        other's writes; the status filter on the update keeps a second
        process from flipping the same transition twice.
        """
        async with self.locks.lock(invoice_id):
            for _ in range(3):
                cursor = self.payments_collection.find({
                    "organization_id": organization_id,
                    "invoice_id": invoice_id,
                    "status": PaymentStatus.COMPLETED.value,
                })
                payments = await cursor.to_list(length=None)
                amount_paid = money_sum(p["amount"] for p in payments)

                doc = await self.invoices_collection.find_one({"_id": invoice_id, "organization_id": organization_id})
                if not doc:
                    raise NotFoundError("Invoice not found", invoice_id=invoice_id)
                current_status = doc["status"]
                total = to_decimal(doc["total"])

                updates: Dict[str, Any] = {"amount_paid": amount_paid, "updated_at": utcnow()}
                new_status = current_status
                if current_status != InvoiceStatus.CANCELLED.value:
                    if amount_paid >= total and current_status != InvoiceStatus.PAID.value:
                        new_status = InvoiceStatus.PAID.value
                        updates["paid_at"] = utcnow()
                    elif amount_paid < total and current_status == InvoiceStatus.PAID.value:
                        new_status = InvoiceStatus.SENT.value
                        updates["paid_at"] = None
                updates["status"] = new_status

                updated = await self.invoices_collection.find_one_and_update(
                    {"_id": invoice_id, "organization_id": organization_id, "status": current_status},
                    {"$set": updates},
                    return_document=ReturnDocument.AFTER,
                )
                if updated is None:
                    logger.info("invoice_recompute_raced", invoice_id=invoice_id)
                    continue

                if new_status != current_status:
                    self.metrics.record_invoice_transition(new_status)
                    logger.info(
                        "invoice_status_recomputed",
                        invoice_id=invoice_id,
                        old_status=current_status,
                        new_status=new_status,
                        amount_paid=str(amount_paid),
                        total=str(total),
                    )
                return Invoice.from_mongo(updated)

        raise InvalidStateError("Invoice kept changing during payment reconciliation", invoice_id=invoice_id)

    async def outstanding_balance(self, invoice: Invoice) -> Decimal:
        cursor = self.payments_collection.find({
            "organization_id": invoice.organization_id,
            "invoice_id": invoice.id,
            "status": PaymentStatus.COMPLETED.value,
        })
        paid = money_sum(p["amount"] for p in await cursor.to_list(length=None))
        return max(invoice.total - paid, Decimal("0"))
