from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from bms_billing.core.serialization import new_id, utcnow

logger = structlog.get_logger(__name__)


class NotificationOutbox:
    """
    Queues tenant-facing billing events for the notification service.

    Delivery (email/SMS/in-app) happens elsewhere; billing only appends to the
    outbox collection. Callers treat failures here as non-fatal.
    """

    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"

    def __init__(self, outbox_collection):
        self.outbox_collection = outbox_collection

    async def enqueue(self, event_type: str, organization_id: str, tenant_id: str,
                      payload: Dict[str, Any]) -> str:
        event_id = new_id()
        await self.outbox_collection.insert_one({
            "_id": event_id,
            "type": event_type,
            "organization_id": organization_id,
            "tenant_id": tenant_id,
            "payload": payload,
            "status": "queued",
            "created_at": utcnow(),
        })
        logger.info("notification_queued", event_type=event_type, event_id=event_id, tenant_id=tenant_id)
        return event_id

    async def payment_completed(self, organization_id: str, tenant_id: str, payment_id: str,
                                amount: Decimal, invoice_id: Optional[str] = None,
                                receipt_url: Optional[str] = None) -> str:
        return await self.enqueue(self.PAYMENT_COMPLETED, organization_id, tenant_id, {
            "payment_id": payment_id,
            "invoice_id": invoice_id,
            "amount": str(amount),
            "receipt_url": receipt_url,
        })

    async def payment_failed(self, organization_id: str, tenant_id: str, intent_id: str,
                             reason: Optional[str] = None) -> str:
        return await self.enqueue(self.PAYMENT_FAILED, organization_id, tenant_id, {
            "intent_id": intent_id,
            "reason": reason,
        })
