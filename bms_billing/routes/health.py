from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from bms_billing.routes.deps import get_container, respond

router = APIRouter(tags=["health"])


# --------------------------
# Metrics Endpoint
# --------------------------
@router.get("/metrics")
async def get_metrics(container=Depends(get_container)):
    return Response(generate_latest(container.metrics.registry), media_type=CONTENT_TYPE_LATEST)


# --------------------------
# Health Check
# --------------------------
@router.get("/health")
async def health_check(container=Depends(get_container)):
    database = {"status": "not_configured"}
    if container.health_check is not None:
        database = await container.health_check()
    healthy = database.get("status") in ("healthy", "not_configured")
    return respond(
        {"status": "ok" if healthy else "degraded", "database": database},
        status_code=200 if healthy else 503,
    )
