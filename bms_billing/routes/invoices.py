from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from bms_billing.models.invoice import (
    InvoiceCreate,
    InvoiceGenerationRequest,
    InvoicePatch,
    InvoiceStatus,
    InvoiceStatusChange,
)
from bms_billing.routes.deps import CallerContext, get_caller_context, get_container, respond

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("")
async def create_invoice(
    body: InvoiceCreate,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    invoice = await container.invoice_ledger.create_invoice(ctx.organization_id, body)
    return respond(invoice, status_code=201)


@router.get("")
async def list_invoices(
    tenant_id: Optional[str] = None,
    lease_id: Optional[str] = None,
    status: Optional[InvoiceStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    invoices = await container.invoice_ledger.list_invoices(
        ctx.organization_id, tenant_id=tenant_id, lease_id=lease_id, status=status, limit=limit
    )
    return respond(invoices)


# --------------------------
# Batch operations
# --------------------------
@router.post("/generate")
async def generate_invoices(
    body: InvoiceGenerationRequest,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    results = await container.invoice_generator.generate_invoices_for_leases(
        ctx.organization_id, body.period_start, body.period_end, force=body.force
    )
    return respond({
        "results": results,
        "created": sum(1 for r in results if r.success),
        "total": len(results),
    })


@router.post("/overdue-sweep")
async def overdue_sweep(
    as_of: Optional[datetime] = None,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    marked = await container.invoice_ledger.mark_overdue_invoices(ctx.organization_id, as_of)
    return respond({"marked": marked, "count": len(marked)})


# --------------------------
# Single invoice
# --------------------------
@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    return respond(await container.invoice_ledger.get_invoice(invoice_id, ctx.organization_id))


@router.patch("/{invoice_id}")
async def update_invoice(
    invoice_id: str,
    body: InvoicePatch,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    return respond(await container.invoice_ledger.update_invoice(invoice_id, ctx.organization_id, body))


@router.post("/{invoice_id}/status")
async def change_invoice_status(
    invoice_id: str,
    body: InvoiceStatusChange,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    invoice = await container.invoice_ledger.update_invoice_status(
        invoice_id, ctx.organization_id, body.status, paid_at=body.paid_at
    )
    return respond(invoice)


@router.post("/{invoice_id}/cancel")
async def cancel_invoice(
    invoice_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    return respond(await container.invoice_ledger.cancel_invoice(invoice_id, ctx.organization_id))
