from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any

import orjson
import structlog
from bson import ObjectId
from bson.decimal128 import Decimal128
from pydantic import AfterValidator, BaseModel, BeforeValidator
from starlette.responses import JSONResponse

logger = structlog.get_logger(__name__)


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(v: Any) -> Any:
    """Plain dates become midnight UTC; naive datetimes are taken as UTC."""
    if isinstance(v, date) and not isinstance(v, datetime):
        return datetime(v.year, v.month, v.day, tzinfo=timezone.utc)
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


UTCDateTime = Annotated[datetime, BeforeValidator(ensure_utc), AfterValidator(ensure_utc)]


class MongoModel(BaseModel):
    """Base for documents persisted in Mongo: `_id` aliased to `id`."""

    model_config = {
        "populate_by_name": True,
        "arbitrary_types_allowed": True,
        "extra": "ignore",
        "use_enum_values": True,
        "validate_default": True,
    }

    def to_mongo(self) -> dict:
        """Return clean dict for Mongo inserts/updates."""
        return self.model_dump(by_alias=True)

    @classmethod
    def from_mongo(cls, doc: dict | None):
        if not doc:
            return None
        return cls.model_validate(doc)


def normalize_bson(obj: Any) -> Any:
    """Recursively convert ObjectId, Decimal, datetime and enums to JSON-safe types."""
    if isinstance(obj, BaseModel):
        obj = obj.model_dump(by_alias=False)
    if isinstance(obj, dict):
        return {str(k): normalize_bson(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [normalize_bson(i) for i in obj]
    if isinstance(obj, ObjectId):
        return str(obj)
    if isinstance(obj, Decimal128):
        obj = obj.to_decimal()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return obj


class MongoORJSONResponse(JSONResponse):
    """JSON response that accepts BSON documents and pydantic models as content."""
    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        try:
            return orjson.dumps(normalize_bson(content))
        except TypeError as e:
            logger.warning("response_normalization_failed", error=str(e))
            return orjson.dumps(content, default=str)
