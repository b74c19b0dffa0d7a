from fastapi import APIRouter

from bms_billing.models.rent import RentQuoteRequest
from bms_billing.routes.deps import respond
from bms_billing.services.rent_calculator import calculate_rent

router = APIRouter(prefix="/rent", tags=["rent"])


@router.post("/quote")
async def rent_quote(body: RentQuoteRequest):
    return respond(calculate_rent(body.policy, body.unit))
