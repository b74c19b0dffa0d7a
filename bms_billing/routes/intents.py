from fastapi import APIRouter, Depends

from bms_billing.models.payment_intent import PaymentIntentCreate
from bms_billing.routes.deps import CallerContext, get_caller_context, get_container, require_tenant, respond

router = APIRouter(prefix="/payments/intents", tags=["payment-intents"])


@router.post("")
async def create_payment_intent(
    body: PaymentIntentCreate,
    ctx: CallerContext = Depends(require_tenant),
    container=Depends(get_container),
):
    """Tenant-initiated: the tenant comes from the caller context, never the body."""
    response = await container.intent_service.create_and_initiate_payment(
        ctx.organization_id, ctx.tenant_id, body
    )
    return respond(response, status_code=201)


@router.get("/{intent_id}")
async def get_payment_intent(
    intent_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    return respond(await container.intent_service.get_intent(intent_id, ctx.organization_id))


@router.post("/{intent_id}/cancel")
async def cancel_payment_intent(
    intent_id: str,
    ctx: CallerContext = Depends(get_caller_context),
    container=Depends(get_container),
):
    return respond(await container.intent_service.cancel_intent(intent_id, ctx.organization_id))
