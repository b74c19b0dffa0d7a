# Async MongoDB connection manager, billing indexes and the unique-insert seam

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError

from bms_billing.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

INVOICES_COLL = "invoices"
PAYMENTS_COLL = "payments"
PAYMENT_INTENTS_COLL = "payment_intents"
NOTIFICATIONS_COLL = "billing_notifications"
TENANTS_COLL = "tenants"
LEASES_COLL = "leases"
UNITS_COLL = "units"
BUILDINGS_COLL = "buildings"

_HAS_STRING_REFERENCE = {"reference_number": {"$type": "string"}}

BILLING_INDEXES: Dict[str, list] = {
    INVOICES_COLL: [
        {"keys": [("organization_id", 1), ("invoice_number", 1)], "unique": True,
         "name": "unique_org_invoice_number"},
        {"keys": [("organization_id", 1), ("invoice_year", 1), ("invoice_sequence", -1)],
         "name": "org_year_sequence"},
        {"keys": [("organization_id", 1), ("tenant_id", 1), ("status", 1)], "name": "org_tenant_status"},
        {"keys": [("organization_id", 1), ("lease_id", 1), ("status", 1)], "name": "org_lease_status"},
        {"keys": [("due_date", 1)], "name": "due_date"},
    ],
    PAYMENTS_COLL: [
        # idempotency boundary for provider callbacks
        {"keys": [("organization_id", 1), ("reference_number", 1)], "unique": True,
         "partialFilterExpression": _HAS_STRING_REFERENCE, "name": "unique_org_reference_number"},
        {"keys": [("organization_id", 1), ("invoice_id", 1), ("status", 1)], "name": "org_invoice_status"},
        {"keys": [("organization_id", 1), ("tenant_id", 1), ("status", 1)], "name": "org_tenant_status"},
        {"keys": [("organization_id", 1), ("reconciliation_status", 1), ("status", 1)],
         "name": "org_reconciliation_status"},
        {"keys": [("provider_transaction_id", 1)], "sparse": True, "name": "provider_transaction_id"},
    ],
    PAYMENT_INTENTS_COLL: [
        {"keys": [("reference_number", 1)], "unique": True,
         "partialFilterExpression": _HAS_STRING_REFERENCE, "name": "unique_reference_number"},
        {"keys": [("organization_id", 1), ("tenant_id", 1), ("status", 1)], "name": "org_tenant_status"},
        {"keys": [("organization_id", 1), ("invoice_id", 1)], "sparse": True, "name": "org_invoice"},
        {"keys": [("expires_at", 1)], "name": "expires_at"},
    ],
    NOTIFICATIONS_COLL: [
        {"keys": [("organization_id", 1), ("tenant_id", 1), ("created_at", -1)], "name": "org_tenant_created"},
    ],
}


class DecimalCodec(TypeCodec):
    """Store Python Decimal as BSON Decimal128 and read it back as Decimal."""
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value: Decimal) -> Decimal128:
        return Decimal128(value)

    def transform_bson(self, value: Decimal128) -> Decimal:
        return value.to_decimal()


CODEC_OPTIONS = CodecOptions(
    tz_aware=True,
    tzinfo=timezone.utc,
    type_registry=TypeRegistry([DecimalCodec()]),
)


class InsertOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


async def insert_or_conflict(collection, document: dict) -> InsertOutcome:
    """
    Insert relying on the collection's unique indexes.

    A unique-constraint violation is reported as ``InsertOutcome.ALREADY_EXISTS``
    instead of raising, so callers never do a read-then-write existence check.
    """
    try:
        await collection.insert_one(document)
    except DuplicateKeyError as e:
        logger.info(
            "insert_conflict",
            collection=getattr(collection, "name", "?"),
            key=getattr(e, "details", {}).get("keyValue") if getattr(e, "details", None) else None,
        )
        return InsertOutcome.ALREADY_EXISTS
    return InsertOutcome.CREATED


# =====================================
# CONFIGURATION
# =====================================

@dataclass
class AsyncDatabaseConfig:
    """Async MongoDB configuration"""
    mongo_uri: str
    database_name: str
    max_pool_size: int = 100
    min_pool_size: int = 10
    server_selection_timeout_ms: int = 5000
    connect_timeout_ms: int = 5000
    socket_timeout_ms: int = 20000
    retry_writes: bool = True

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AsyncDatabaseConfig":
        settings = settings or get_settings()
        return cls(
            mongo_uri=settings.mongo_uri,
            database_name=settings.mongo_database,
            max_pool_size=settings.mongo_max_pool_size,
            min_pool_size=settings.mongo_min_pool_size,
        )

    def validate(self) -> None:
        if not self.mongo_uri:
            raise ValueError("MongoDB URI cannot be empty")
        if not self.database_name:
            raise ValueError("Database name cannot be empty")
        if self.max_pool_size < self.min_pool_size:
            raise ValueError("max_pool_size must be >= min_pool_size")


# =====================================
# ASYNC DATABASE MANAGER
# =====================================

class AsyncDatabaseManager:
    """
    Async singleton MongoDB connection manager.
    Collections handed out carry the Decimal codec so money round-trips exactly.
    """

    _instance: Optional["AsyncDatabaseManager"] = None
    _lock: asyncio.Lock = None
    _client: Optional[AsyncIOMotorClient] = None
    _database: Optional[AsyncIOMotorDatabase] = None
    _config: Optional[AsyncDatabaseConfig] = None
    _initialized: bool = False

    def __new__(cls) -> "AsyncDatabaseManager":
        if cls._instance is None:
            cls._instance = super(AsyncDatabaseManager, cls).__new__(cls)
            cls._lock = asyncio.Lock()
        return cls._instance

    async def initialize(self, config: Optional[AsyncDatabaseConfig] = None) -> None:
        """
        Initialize the connection pool. Should be called once at app startup.

        Raises:
            ConnectionFailure: If unable to reach the server
            ValueError: If the configuration is invalid
        """
        async with self._lock:
            if self._initialized:
                logger.warning("database_already_initialized")
                return

            config = config or AsyncDatabaseConfig.from_settings()
            config.validate()
            self._config = config

            try:
                self._client = AsyncIOMotorClient(
                    config.mongo_uri,
                    maxPoolSize=config.max_pool_size,
                    minPoolSize=config.min_pool_size,
                    serverSelectionTimeoutMS=config.server_selection_timeout_ms,
                    connectTimeoutMS=config.connect_timeout_ms,
                    socketTimeoutMS=config.socket_timeout_ms,
                    retryWrites=config.retry_writes,
                    uuidRepresentation="standard",
                )
                await asyncio.wait_for(
                    self._client.server_info(),
                    timeout=config.server_selection_timeout_ms / 1000,
                )
                self._database = self._client.get_database(
                    config.database_name, codec_options=CODEC_OPTIONS
                )
                self._initialized = True
                logger.info(
                    "database_connected",
                    database=config.database_name,
                    pool=f"{config.min_pool_size}-{config.max_pool_size}",
                )
            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                logger.error("database_connection_failed", error=str(e))
                await self._cleanup()
                raise ConnectionFailure(f"Could not connect to MongoDB: {e}") from e
            except asyncio.TimeoutError as e:
                logger.error("database_connection_timeout")
                await self._cleanup()
                raise ConnectionFailure("MongoDB connection timeout") from e

    async def _cleanup(self) -> None:
        if self._client:
            self._client.close()
        self._client = None
        self._database = None
        self._config = None
        self._initialized = False

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if not self._initialized or self._database is None:
            raise RuntimeError(
                "AsyncDatabaseManager not initialized. Call `await initialize()` first."
            )
        return self._database

    def get_collection(self, name: str) -> AsyncIOMotorCollection:
        return self.database.get_collection(name, codec_options=CODEC_OPTIONS)

    async def health_check(self) -> Dict[str, Any]:
        """Ping the server and report latency"""
        if not self._initialized:
            return {
                "status": "unhealthy",
                "error": "Database not initialized",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        try:
            start_time = datetime.now()
            await asyncio.wait_for(self._client.admin.command("ping"), timeout=5.0)
            latency = (datetime.now() - start_time).total_seconds() * 1000
            return {
                "status": "healthy",
                "latency_ms": round(latency, 2),
                "database": self._config.database_name if self._config else "unknown",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except asyncio.TimeoutError:
            logger.error("database_health_check_timeout")
            return {
                "status": "unhealthy",
                "error": "Health check timeout",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error("database_health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": f"Connection error: {e}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    async def close(self) -> None:
        logger.info("database_closing")
        async with self._lock:
            await self._cleanup()

    async def create_indexes(self, indexes_config: Dict[str, list]) -> None:
        """
        Create indexes for collections.

        Unlike the other helpers this propagates failures: the unique indexes
        are what make payment idempotency hold, so startup must not continue
        without them.
        """
        for collection_name, indexes in indexes_config.items():
            collection = self.get_collection(collection_name)
            for index_def in indexes:
                options = dict(index_def)
                keys = options.pop("keys")
                await collection.create_index(keys, **options)
                logger.info("index_ensured", collection=collection_name, name=options.get("name"))


# Global async database manager instance
db_manager = AsyncDatabaseManager()


async def ensure_indexes(indexes_config: Optional[Dict[str, list]] = None) -> None:
    await db_manager.create_indexes(indexes_config or BILLING_INDEXES)
