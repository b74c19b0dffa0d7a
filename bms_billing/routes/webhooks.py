from fastapi import APIRouter, Depends, Request

from bms_billing.core.exceptions import NotFoundError
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.routes.deps import get_container, respond

router = APIRouter(prefix="/webhooks/payments", tags=["webhooks"])


def _provider(name: str) -> PaymentProvider:
    try:
        return PaymentProvider(name.lower())
    except ValueError:
        raise NotFoundError(f"Unknown payment provider: {name}", provider=name)


@router.post("/{provider}")
async def payment_callback(provider: str, request: Request, container=Depends(get_container)):
    """
    Provider callback. The raw body is handed over untouched because the
    signature is computed over the exact bytes the provider sent.

    200 covers completed, already_processed and failed; errors map through
    the BillingError handler (401 signature, 404 unknown provider/intent,
    400 malformed body).
    """
    key = _provider(provider)
    raw_body = await request.body()
    outcome = await container.webhook_reconciler.handle_callback(key, raw_body, request.headers)
    return respond(outcome.as_dict())


@router.get("/{provider}")
async def payment_callback_status(provider: str):
    key = _provider(provider)
    return respond({"message": "Webhook endpoint is active", "provider": key.value})
