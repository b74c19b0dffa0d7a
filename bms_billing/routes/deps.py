from dataclasses import dataclass, field
from typing import Any, List, Optional

from fastapi import Header, HTTPException, Request

from bms_billing.core.serialization import MongoORJSONResponse


@dataclass
class CallerContext:
    """Identity resolved by the upstream auth layer; billing trusts it as given."""
    organization_id: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)


async def get_caller_context(
    x_organization_id: Optional[str] = Header(None),
    x_tenant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_roles: Optional[str] = Header(None),
) -> CallerContext:
    if not x_organization_id:
        raise HTTPException(status_code=401, detail="Missing organization context")
    return CallerContext(
        organization_id=x_organization_id,
        tenant_id=x_tenant_id or None,
        user_id=x_user_id or None,
        roles=[r.strip() for r in (x_roles or "").split(",") if r.strip()],
    )


async def require_tenant(
    x_organization_id: Optional[str] = Header(None),
    x_tenant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_roles: Optional[str] = Header(None),
) -> CallerContext:
    ctx = await get_caller_context(x_organization_id, x_tenant_id, x_user_id, x_roles)
    if not ctx.tenant_id:
        raise HTTPException(status_code=403, detail="Tenant context required")
    return ctx


def get_container(request: Request):
    """Services wired by the application lifespan (see ``bms_billing.main``)."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Billing services not initialized")
    return container


def respond(content: Any, status_code: int = 200) -> MongoORJSONResponse:
    # bypasses jsonable_encoder so Decimal amounts render as exact strings
    return MongoORJSONResponse(content=content, status_code=status_code)
