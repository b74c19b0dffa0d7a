from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from bms_billing.core.database import INVOICES_COLL
from bms_billing.core.exceptions import (
    CrossOrganizationError,
    DuplicateReferenceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from bms_billing.models.invoice import InvoiceItem, InvoicePatch, InvoiceStatus, InvoiceStatusChange, ItemKind
from bms_billing.test.factories import ORG, OTHER_ORG, invoice_create, utc


def assert_totals_consistent(invoice):
    assert invoice.subtotal == sum((i.amount for i in invoice.items), Decimal("0"))
    assert invoice.total == invoice.subtotal + invoice.tax


class TestCreateInvoice:
    @pytest.mark.asyncio
    async def test_totals_and_defaults(self, invoice_ledger, database):
        invoice = await invoice_ledger.create_invoice(ORG, invoice_create())

        assert invoice.subtotal == Decimal("10500")
        assert invoice.tax == Decimal("0")
        assert invoice.total == Decimal("10500")
        assert invoice.amount_paid == Decimal("0")
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.invoice_number == "INV-2024-001"
        assert_totals_consistent(invoice)

        stored = await database[INVOICES_COLL].find_one({"_id": invoice.id})
        assert stored["organization_id"] == ORG
        assert stored["total"] == Decimal("10500.00")

    @pytest.mark.asyncio
    async def test_tax_added_to_total(self, invoice_ledger):
        invoice = await invoice_ledger.create_invoice(ORG, invoice_create(tax=Decimal("1575")))
        assert invoice.total == Decimal("12075")
        assert_totals_consistent(invoice)

    @pytest.mark.asyncio
    async def test_sequential_numbers_per_year(self, invoice_ledger):
        first = await invoice_ledger.create_invoice(ORG, invoice_create())
        second = await invoice_ledger.create_invoice(ORG, invoice_create())
        next_year = await invoice_ledger.create_invoice(
            ORG, invoice_create(issue_date=utc(2025, 1, 2), due_date=utc(2025, 1, 5))
        )
        assert (first.invoice_number, second.invoice_number) == ("INV-2024-001", "INV-2024-002")
        assert next_year.invoice_number == "INV-2025-001"

    @pytest.mark.asyncio
    async def test_numbers_are_scoped_to_organization(self, invoice_ledger):
        ours = await invoice_ledger.create_invoice(ORG, invoice_create())
        theirs = await invoice_ledger.create_invoice(
            OTHER_ORG, invoice_create(lease_id="lease-x", tenant_id="tenant-x", unit_id="unit-x")
        )
        assert ours.invoice_number == theirs.invoice_number == "INV-2024-001"

    @pytest.mark.asyncio
    async def test_number_collision_is_retried(self, invoice_ledger):
        await invoice_ledger.create_invoice(ORG, invoice_create())
        invoice_ledger.next_invoice_number = AsyncMock(side_effect=[("INV-2024-001", 1), ("INV-2024-002", 2)])

        invoice = await invoice_ledger.create_invoice(ORG, invoice_create())

        assert invoice.invoice_number == "INV-2024-002"
        assert invoice_ledger.next_invoice_number.await_count == 2

    @pytest.mark.asyncio
    async def test_number_collision_exhausts_retries(self, invoice_ledger, settings):
        await invoice_ledger.create_invoice(ORG, invoice_create())
        invoice_ledger.next_invoice_number = AsyncMock(return_value=("INV-2024-001", 1))

        with pytest.raises(InvalidStateError):
            await invoice_ledger.create_invoice(ORG, invoice_create())
        assert invoice_ledger.next_invoice_number.await_count == settings.invoice_number_retry_attempts

    @pytest.mark.asyncio
    async def test_explicit_duplicate_number_rejected(self, invoice_ledger, database):
        await invoice_ledger.create_invoice(ORG, invoice_create(invoice_number="LEGACY-7"))
        with pytest.raises(DuplicateReferenceError):
            await invoice_ledger.create_invoice(ORG, invoice_create(invoice_number="LEGACY-7"))
        assert await database[INVOICES_COLL].count_documents({"invoice_number": "LEGACY-7"}) == 1

    @pytest.mark.asyncio
    async def test_tenant_must_match_lease(self, invoice_ledger):
        with pytest.raises(ValidationError):
            await invoice_ledger.create_invoice(ORG, invoice_create(tenant_id="tenant-2"))

    @pytest.mark.asyncio
    async def test_unit_must_match_lease(self, invoice_ledger):
        with pytest.raises(ValidationError):
            await invoice_ledger.create_invoice(ORG, invoice_create(unit_id="unit-2"))

    @pytest.mark.asyncio
    async def test_lease_of_other_organization(self, invoice_ledger):
        with pytest.raises(CrossOrganizationError):
            await invoice_ledger.create_invoice(
                ORG, invoice_create(lease_id="lease-x", tenant_id="tenant-x", unit_id="unit-x")
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [{"tenant_id": "tenant-x"}, {"unit_id": "unit-x"}])
    async def test_tenant_or_unit_of_other_organization(self, invoice_ledger, database, overrides):
        with pytest.raises(CrossOrganizationError):
            await invoice_ledger.create_invoice(ORG, invoice_create(**overrides))
        assert await database[INVOICES_COLL].count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_unknown_lease(self, invoice_ledger):
        with pytest.raises(NotFoundError):
            await invoice_ledger.create_invoice(ORG, invoice_create(lease_id="lease-404"))

    @pytest.mark.asyncio
    async def test_requires_items(self, invoice_ledger):
        with pytest.raises(ValidationError):
            await invoice_ledger.create_invoice(ORG, invoice_create(items=[]))

    @pytest.mark.asyncio
    async def test_period_end_before_start(self, invoice_ledger):
        with pytest.raises(ValidationError):
            await invoice_ledger.create_invoice(
                ORG, invoice_create(period_start=utc(2024, 6, 30), period_end=utc(2024, 6, 1))
            )

    @pytest.mark.asyncio
    async def test_due_date_before_issue_date(self, invoice_ledger):
        with pytest.raises(ValidationError):
            await invoice_ledger.create_invoice(ORG, invoice_create(due_date=utc(2024, 5, 31)))


class TestUpdateInvoice:
    @pytest.mark.asyncio
    async def test_draft_items_recompute_totals(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.DRAFT)
        patch = InvoicePatch(
            items=[InvoiceItem(description="Monthly Rent", amount=Decimal("9000"), kind=ItemKind.RENT)],
            tax=Decimal("1350"),
        )
        updated = await invoice_ledger.update_invoice(invoice.id, ORG, patch)

        assert updated.subtotal == Decimal("9000")
        assert updated.total == Decimal("10350")
        assert_totals_consistent(updated)

    @pytest.mark.asyncio
    async def test_tax_only_patch_keeps_items(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.DRAFT)
        updated = await invoice_ledger.update_invoice(invoice.id, ORG, InvoicePatch(tax=Decimal("100")))
        assert len(updated.items) == 2
        assert updated.total == Decimal("10600")

    @pytest.mark.asyncio
    async def test_sent_invoice_content_is_frozen(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.SENT)
        with pytest.raises(InvalidStateError):
            await invoice_ledger.update_invoice(invoice.id, ORG, InvoicePatch(tax=Decimal("100")))
        with pytest.raises(InvalidStateError):
            await invoice_ledger.update_invoice(invoice.id, ORG, InvoicePatch(due_date=utc(2024, 7, 1)))

    @pytest.mark.asyncio
    async def test_notes_editable_after_draft(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.SENT)
        updated = await invoice_ledger.update_invoice(invoice.id, ORG, InvoicePatch(notes="Called tenant"))
        assert updated.notes == "Called tenant"
        assert updated.total == invoice.total

    @pytest.mark.asyncio
    async def test_status_change_through_patch(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.DRAFT)
        updated = await invoice_ledger.update_invoice(invoice.id, ORG, InvoicePatch(status=InvoiceStatus.SENT))
        assert updated.status == InvoiceStatus.SENT

    @pytest.mark.asyncio
    async def test_empty_items_rejected(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.DRAFT)
        with pytest.raises(ValidationError):
            await invoice_ledger.update_invoice(invoice.id, ORG, InvoicePatch(items=[]))

    @pytest.mark.asyncio
    async def test_other_organization_cannot_see_invoice(self, invoice_ledger, make_invoice):
        invoice = await make_invoice()
        with pytest.raises(NotFoundError):
            await invoice_ledger.update_invoice(invoice.id, OTHER_ORG, InvoicePatch(notes="x"))

    @pytest.mark.parametrize("field", ["items", "issue_date", "due_date", "period_start", "period_end"])
    def test_required_fields_cannot_be_cleared(self, field):
        with pytest.raises(PydanticValidationError):
            InvoicePatch(**{field: None})

    @pytest.mark.asyncio
    async def test_explicit_nulls_leave_stored_fields_untouched(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.DRAFT)
        patch = InvoicePatch.model_construct(due_date=None, items=None, notes="Rechecked")

        updated = await invoice_ledger.update_invoice(invoice.id, ORG, patch)

        assert updated.notes == "Rechecked"
        current = await invoice_ledger.get_invoice(invoice.id, ORG)
        assert current.due_date == invoice.due_date
        assert len(current.items) == 2
        assert current.total == Decimal("10500")


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_paid_stamps_and_other_status_clears_paid_at(self, invoice_ledger, make_invoice):
        invoice = await make_invoice()
        paid = await invoice_ledger.update_invoice_status(
            invoice.id, ORG, InvoiceStatus.PAID, paid_at=utc(2024, 6, 3, 12)
        )
        assert paid.paid_at == utc(2024, 6, 3, 12)

        reopened = await invoice_ledger.update_invoice_status(invoice.id, ORG, InvoiceStatus.SENT)
        assert reopened.status == InvoiceStatus.SENT
        assert reopened.paid_at is None

    @pytest.mark.asyncio
    async def test_paid_defaults_paid_at_to_now(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.PAID)
        assert invoice.paid_at is not None

    @pytest.mark.asyncio
    async def test_paid_invoice_cannot_be_cancelled(self, invoice_ledger, make_invoice, metrics):
        invoice = await make_invoice(status=InvoiceStatus.PAID)

        with pytest.raises(InvalidStateError):
            await invoice_ledger.cancel_invoice(invoice.id, ORG)

        current = await invoice_ledger.get_invoice(invoice.id, ORG)
        assert current.status == InvoiceStatus.PAID
        assert metrics.registry.get_sample_value(
            "billing_invoice_transitions_total", {"status": "cancelled"}
        ) is None

    @pytest.mark.asyncio
    async def test_cancelled_invoice_is_final(self, invoice_ledger, make_invoice):
        invoice = await make_invoice()
        cancelled = await invoice_ledger.cancel_invoice(invoice.id, ORG)
        assert cancelled.status == InvoiceStatus.CANCELLED

        for status in (InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
            with pytest.raises(InvalidStateError):
                await invoice_ledger.update_invoice_status(invoice.id, ORG, status)

    @pytest.mark.asyncio
    async def test_transition_metrics(self, make_invoice, metrics):
        await make_invoice(status=InvoiceStatus.SENT)
        assert metrics.registry.get_sample_value("billing_invoice_transitions_total", {"status": "draft"}) == 1
        assert metrics.registry.get_sample_value("billing_invoice_transitions_total", {"status": "sent"}) == 1

    @pytest.mark.asyncio
    async def test_draft_invoice_can_be_cancelled(self, invoice_ledger, make_invoice):
        invoice = await make_invoice(status=InvoiceStatus.DRAFT)
        cancelled = await invoice_ledger.cancel_invoice(invoice.id, ORG)
        assert cancelled.status == InvoiceStatus.CANCELLED
        assert cancelled.paid_at is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("start", [InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.OVERDUE])
    async def test_invoice_cannot_return_to_draft(self, invoice_ledger, make_invoice, start):
        invoice = await make_invoice(status=start)

        with pytest.raises(InvalidStateError):
            await invoice_ledger.update_invoice_status(invoice.id, ORG, InvoiceStatus.DRAFT)

        assert (await invoice_ledger.get_invoice(invoice.id, ORG)).status == start
        with pytest.raises(InvalidStateError):
            await invoice_ledger.update_invoice(invoice.id, ORG, InvoicePatch(items=[
                InvoiceItem(description="Monthly Rent", amount=Decimal("1.00"), kind=ItemKind.RENT)
            ]))

    def test_draft_is_not_a_requestable_status(self):
        with pytest.raises(PydanticValidationError):
            InvoicePatch(status=InvoiceStatus.DRAFT)
        with pytest.raises(PydanticValidationError):
            InvoiceStatusChange(status="draft")


class TestOverdue:
    @pytest.mark.asyncio
    async def test_sweep_marks_only_unpaid_sent_invoices_past_due(self, invoice_ledger, make_invoice):
        late = await make_invoice(status=InvoiceStatus.SENT)
        draft = await make_invoice(status=InvoiceStatus.DRAFT)
        not_yet_due = await make_invoice(status=InvoiceStatus.SENT, due_date=utc(2024, 6, 20))
        paid = await make_invoice(status=InvoiceStatus.PAID)

        marked = await invoice_ledger.mark_overdue_invoices(ORG, as_of=utc(2024, 6, 10))

        assert marked == [late.id]
        assert (await invoice_ledger.get_invoice(late.id, ORG)).status == InvoiceStatus.OVERDUE
        assert (await invoice_ledger.get_invoice(late.id, ORG)).paid_at is None
        for other in (draft, not_yet_due, paid):
            assert (await invoice_ledger.get_invoice(other.id, ORG)).status == other.status

    @pytest.mark.asyncio
    async def test_find_overdue_invoices(self, invoice_ledger, make_invoice):
        late = await make_invoice(status=InvoiceStatus.SENT)
        await make_invoice(status=InvoiceStatus.SENT, due_date=utc(2024, 6, 20))

        found = await invoice_ledger.find_overdue_invoices(ORG, as_of=utc(2024, 6, 10))
        assert [i.id for i in found] == [late.id]
        assert await invoice_ledger.find_overdue_invoices(OTHER_ORG, as_of=utc(2024, 6, 10)) == []


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_by_tenant_and_lease(self, invoice_ledger, make_invoice):
        invoice = await make_invoice()
        assert [i.id for i in await invoice_ledger.list_invoices_by_tenant(ORG, "tenant-1")] == [invoice.id]
        assert [i.id for i in await invoice_ledger.list_invoices_by_lease(ORG, "lease-1")] == [invoice.id]
        assert await invoice_ledger.list_invoices_by_tenant(ORG, "tenant-2") == []
        assert await invoice_ledger.list_invoices_by_tenant(OTHER_ORG, "tenant-1") == []

    @pytest.mark.asyncio
    async def test_get_invoice_scoped_to_organization(self, invoice_ledger, make_invoice):
        invoice = await make_invoice()
        with pytest.raises(NotFoundError):
            await invoice_ledger.get_invoice(invoice.id, OTHER_ORG)
