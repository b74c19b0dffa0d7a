# services/invoice_generation.py - Periodic invoice generation from active leases

import calendar
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from bms_billing.core.exceptions import BillingError, ValidationError
from bms_billing.core.money import round_whole, to_decimal
from bms_billing.core.serialization import ensure_utc, utcnow
from bms_billing.models.invoice import (
    InvoiceCreate,
    InvoiceGenerationResult,
    InvoiceItem,
    InvoiceStatus,
    ItemKind,
)
from bms_billing.models.rent import RentPolicy, UnitAttributes
from bms_billing.services.directory import DirectoryService
from bms_billing.services.invoice_ledger import InvoiceLedger
from bms_billing.services.rent_calculator import resolve_rent

logger = structlog.get_logger(__name__)

CYCLE_MONTHS = {"monthly": 1, "quarterly": 3, "annually": 12}


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def days_in_billing_cycle(billing_cycle: str, period_start: datetime) -> int:
    months = CYCLE_MONTHS.get(billing_cycle)
    if months is None:
        return 30
    return (add_months(period_start, months) - period_start).days


def prorate(amount: Decimal, total_days: int, actual_days: int) -> Decimal:
    if total_days <= 0 or actual_days <= 0:
        return Decimal("0")
    return round_whole(to_decimal(amount) * actual_days / total_days)


def calculate_due_date(issue_date: datetime, due_day: int) -> datetime:
    """The lease's due day in the issue month, or the next month if that day already passed."""
    def on_day(dt: datetime) -> datetime:
        return dt.replace(day=min(due_day, calendar.monthrange(dt.year, dt.month)[1]))

    due = on_day(issue_date)
    if due < issue_date.replace(hour=0, minute=0, second=0, microsecond=0):
        due = on_day(add_months(issue_date.replace(day=1), 1))
    return due


def charges_for_cycle(charges: Optional[List[Dict[str, Any]]], billing_cycle: str) -> List[Dict[str, Any]]:
    """Recurring charges billed on the lease's cycle; one-time charges never recur."""
    return [c for c in charges or [] if c.get("frequency") == billing_cycle]


class InvoiceGenerator:
    """Builds draft invoices for every active lease of an organization"""

    def __init__(self, invoice_ledger: InvoiceLedger, directory: DirectoryService):
        self.invoice_ledger = invoice_ledger
        self.directory = directory

    async def _invoice_exists(self, organization_id: str, lease_id: str, period_start: datetime,
                              period_end: datetime) -> bool:
        doc = await self.invoice_ledger.invoices_collection.find_one({
            "organization_id": organization_id,
            "lease_id": lease_id,
            "period_start": period_start,
            "period_end": period_end,
            "status": {"$ne": InvoiceStatus.CANCELLED.value},
        })
        return doc is not None

    async def _rent_amount(self, lease: Dict[str, Any], organization_id: str) -> Decimal:
        """Contracted lease rent, or the unit's policy price when the lease carries none."""
        if lease.get("rent_amount") is not None:
            return to_decimal(lease["rent_amount"])

        unit = await self.directory.get_unit(lease["unit_id"], organization_id)
        building = await self.directory.find_building(unit.get("building_id"), organization_id)
        policy = None
        if building and building.get("rent_policy"):
            policy = RentPolicy.model_validate(building["rent_policy"])
        quote = resolve_rent(policy, UnitAttributes.model_validate(unit))
        if quote is None:
            raise ValidationError("Lease has no rent amount and the unit cannot be priced")
        return quote.total

    def _items(self, lease: Dict[str, Any], rent: Decimal, period_start: datetime,
               period_end: datetime, partial: bool) -> List[InvoiceItem]:
        cycle = lease.get("billing_cycle") or "monthly"
        total_days = days_in_billing_cycle(cycle, period_start)
        actual_days = (period_end.date() - period_start.date()).days + 1

        def amount(value) -> Decimal:
            return prorate(value, total_days, actual_days) if partial else to_decimal(value)

        items = [InvoiceItem(description=f"{cycle.capitalize()} Rent", amount=amount(rent), kind=ItemKind.RENT)]
        for charge in charges_for_cycle(lease.get("additional_charges"), cycle):
            items.append(InvoiceItem(description=charge["name"], amount=amount(charge["amount"]),
                                     kind=ItemKind.CHARGE))
        return items

    async def generate_invoices_for_leases(
        self,
        organization_id: str,
        period_start: datetime,
        period_end: datetime,
        force: bool = False,
        issue_date: Optional[datetime] = None,
    ) -> List[InvoiceGenerationResult]:
        """
        One draft invoice per active lease for the period. Leases starting or
        ending inside the period are prorated by days. A failure on one lease
        is reported in its result and does not stop the others.
        """
        period_start, period_end = ensure_utc(period_start), ensure_utc(period_end)
        if period_end <= period_start:
            raise ValidationError("Period end date must be after period start date")
        issue_date = ensure_utc(issue_date) if issue_date else utcnow()

        results: List[InvoiceGenerationResult] = []
        for lease in await self.directory.list_active_leases(organization_id):
            lease_id = lease["_id"]
            try:
                lease_start = ensure_utc(lease["start_date"]) if lease.get("start_date") else period_start
                lease_end = ensure_utc(lease["end_date"]) if lease.get("end_date") else None

                actual_start = max(period_start, lease_start)
                actual_end = min(period_end, lease_end) if lease_end else period_end
                partial = actual_start != period_start or actual_end != period_end

                if lease_end and lease_end < period_start:
                    results.append(InvoiceGenerationResult(lease_id=lease_id, success=False,
                                                           skipped=True, error="Lease has already ended"))
                    continue
                if lease_start > period_end:
                    results.append(InvoiceGenerationResult(lease_id=lease_id, success=False,
                                                           skipped=True, error="Lease hasn't started yet"))
                    continue
                if not force and await self._invoice_exists(organization_id, lease_id, actual_start, actual_end):
                    results.append(InvoiceGenerationResult(lease_id=lease_id, success=False, skipped=True,
                                                           error="Invoice already exists for this period"))
                    continue

                rent = await self._rent_amount(lease, organization_id)
                invoice = await self.invoice_ledger.create_invoice(
                    organization_id,
                    InvoiceCreate(
                        lease_id=lease_id,
                        tenant_id=lease["tenant_id"],
                        unit_id=lease["unit_id"],
                        issue_date=issue_date,
                        due_date=calculate_due_date(issue_date, int(lease.get("due_day") or 1)),
                        period_start=actual_start,
                        period_end=actual_end,
                        items=self._items(lease, rent, actual_start, actual_end, partial),
                        tax=Decimal("0"),
                    ),
                )
                results.append(InvoiceGenerationResult(
                    lease_id=lease_id, success=True, invoice_id=invoice.id, invoice_number=invoice.invoice_number,
                ))
            except BillingError as e:
                results.append(InvoiceGenerationResult(lease_id=lease_id, success=False, error=e.message))
            except Exception as e:
                logger.exception("invoice_generation_failed", lease_id=lease_id)
                results.append(InvoiceGenerationResult(lease_id=lease_id, success=False, error=str(e)))

        logger.info(
            "invoice_generation_completed",
            organization_id=organization_id,
            leases=len(results),
            created=sum(1 for r in results if r.success),
        )
        return results
