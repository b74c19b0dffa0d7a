from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from bms_billing.models.payment import (
    DisputeRequest,
    PaymentCreate,
    PaymentMethod,
    PaymentPatch,
    PaymentStatus,
    ReconcileRequest,
    ReconciliationStatus,
    RefundRequest,
)
from bms_billing.routes.deps import CallerContext, get_caller_context, get_container, respond

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("")
async def create_payment(
    body: PaymentCreate,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    payment = await container.payment_ledger.create_payment(ctx.organization_id, body, created_by=ctx.user_id)
    return respond(payment, status_code=201)


@router.get("")
async def list_payments(
    invoice_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    ledger = container.payment_ledger
    if invoice_id:
        return respond(await ledger.list_payments_by_invoice(ctx.organization_id, invoice_id))
    if tenant_id:
        return respond(await ledger.list_payments_by_tenant(ctx.organization_id, tenant_id, status=status))
    raise HTTPException(status_code=400, detail="invoice_id or tenant_id is required")


# --------------------------
# Reconciliation (declared before /{payment_id})
# --------------------------
@router.get("/reconciliation")
async def payments_for_reconciliation(
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.PENDING,
    method: Optional[PaymentMethod] = None,
    limit: int = Query(50, ge=1, le=500),
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    payments = await container.payment_ledger.list_payments_for_reconciliation(
        ctx.organization_id,
        reconciliation_status=reconciliation_status,
        method=method.value if method else None,
        limit=limit,
    )
    return respond(payments)


@router.post("/reconciliation/bulk")
async def reconcile_payments(
    body: ReconcileRequest,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    result = await container.payment_ledger.reconcile_payments(
        ctx.organization_id,
        body.payment_ids,
        bank_statement_reference=body.bank_statement_reference,
        notes=body.notes,
        reconciled_by=ctx.user_id,
        status=body.status,
    )
    return respond(result)


# --------------------------
# Single payment
# --------------------------
@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    return respond(await container.payment_ledger.get_payment(payment_id, ctx.organization_id))


@router.patch("/{payment_id}")
async def update_payment(
    payment_id: str,
    body: PaymentPatch,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    return respond(await container.payment_ledger.update_payment(payment_id, ctx.organization_id, body))


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    body: Optional[RefundRequest] = None,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    reason = body.reason if body else None
    return respond(await container.payment_ledger.refund_payment(payment_id, ctx.organization_id, reason))


@router.post("/{payment_id}/dispute")
async def dispute_payment(
    payment_id: str,
    body: Optional[DisputeRequest] = None,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    payment = await container.payment_ledger.dispute_payment(
        payment_id, ctx.organization_id, notes=body.notes if body else None, disputed_by=ctx.user_id
    )
    return respond(payment)
