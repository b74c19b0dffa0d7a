"""
Read-only view of the organization/tenant/lease/unit store.

These collections are owned by other services; billing only reads them to
validate that everything an invoice or payment references belongs to the
caller's organization.
"""

from typing import Any, Dict, List, Optional

import structlog
from bson import ObjectId

from bms_billing.core.exceptions import CrossOrganizationError, NotFoundError

logger = structlog.get_logger(__name__)


def id_query(entity_id: str) -> Dict[str, Any]:
    """Match an `_id` stored either as a string or as an ObjectId."""
    if ObjectId.is_valid(entity_id):
        return {"_id": {"$in": [entity_id, ObjectId(entity_id)]}}
    return {"_id": entity_id}


def _clean(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc["_id"] = str(doc["_id"])
    for key in ("organization_id", "tenant_id", "unit_id", "building_id"):
        if doc.get(key) is not None:
            doc[key] = str(doc[key])
    return doc


class DirectoryService:
    """Organization-scoped lookups of tenants, leases, units and buildings"""

    def __init__(self, tenants_collection, leases_collection, units_collection, buildings_collection):
        self.tenants_collection = tenants_collection
        self.leases_collection = leases_collection
        self.units_collection = units_collection
        self.buildings_collection = buildings_collection

    async def _find_owned(self, collection, kind: str, entity_id: str, organization_id: str) -> Dict[str, Any]:
        doc = await collection.find_one(id_query(entity_id))
        if not doc:
            raise NotFoundError(f"{kind.capitalize()} not found", **{f"{kind}_id": entity_id})
        doc = _clean(doc)
        if doc.get("organization_id") != organization_id:
            logger.warning(
                "cross_organization_reference",
                kind=kind,
                entity_id=entity_id,
                organization_id=organization_id,
            )
            raise CrossOrganizationError(
                f"{kind.capitalize()} does not belong to the same organization",
                **{f"{kind}_id": entity_id},
            )
        return doc

    async def get_tenant(self, tenant_id: str, organization_id: str) -> Dict[str, Any]:
        return await self._find_owned(self.tenants_collection, "tenant", tenant_id, organization_id)

    async def get_lease(self, lease_id: str, organization_id: str) -> Dict[str, Any]:
        return await self._find_owned(self.leases_collection, "lease", lease_id, organization_id)

    async def get_unit(self, unit_id: str, organization_id: str) -> Dict[str, Any]:
        return await self._find_owned(self.units_collection, "unit", unit_id, organization_id)

    async def get_building(self, building_id: str, organization_id: str) -> Dict[str, Any]:
        return await self._find_owned(self.buildings_collection, "building", building_id, organization_id)

    async def find_building(self, building_id: Optional[str], organization_id: str) -> Optional[Dict[str, Any]]:
        if not building_id:
            return None
        try:
            return await self.get_building(building_id, organization_id)
        except NotFoundError:
            return None

    async def list_active_leases(self, organization_id: str) -> List[Dict[str, Any]]:
        cursor = self.leases_collection.find({"organization_id": organization_id, "status": "active"})
        return [_clean(doc) for doc in await cursor.to_list(length=None)]
