# main.py - FastAPI application factory and service wiring

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bms_billing.core.config import Settings, get_settings
from bms_billing.core.database import (
    BUILDINGS_COLL,
    INVOICES_COLL,
    LEASES_COLL,
    NOTIFICATIONS_COLL,
    PAYMENT_INTENTS_COLL,
    PAYMENTS_COLL,
    TENANTS_COLL,
    UNITS_COLL,
    AsyncDatabaseConfig,
    db_manager,
    ensure_indexes,
)
from bms_billing.core.exceptions import BillingError
from bms_billing.core.locks import KeyedLock
from bms_billing.core.logging_config import configure_logging
from bms_billing.core.serialization import MongoORJSONResponse
from bms_billing.metrics.metrics import MetricsCollector, get_metrics
from bms_billing.providers.provider_selector import ProviderRegistry
from bms_billing.routes import health, intents, invoices, payments, rent, webhooks
from bms_billing.services.directory import DirectoryService
from bms_billing.services.invoice_generation import InvoiceGenerator
from bms_billing.services.invoice_ledger import InvoiceLedger
from bms_billing.services.notifications import NotificationOutbox
from bms_billing.services.payment_intents import PaymentIntentService
from bms_billing.services.payment_ledger import PaymentLedger
from bms_billing.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)


@dataclass
class BillingContainer:
    """Every service the routes use, built once per process."""
    settings: Settings
    metrics: MetricsCollector
    directory: DirectoryService
    invoice_ledger: InvoiceLedger
    payment_ledger: PaymentLedger
    providers: ProviderRegistry
    intent_service: PaymentIntentService
    notifications: NotificationOutbox
    webhook_reconciler: WebhookReconciler
    invoice_generator: InvoiceGenerator
    health_check: Optional[Callable[[], Awaitable[dict]]] = None


def build_container(
    database,
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    metrics: Optional[MetricsCollector] = None,
    providers: Optional[ProviderRegistry] = None,
    health_check: Optional[Callable[[], Awaitable[dict]]] = None,
) -> BillingContainer:
    """Wire the ledgers, orchestrator and reconciler over one database handle."""
    metrics = metrics or get_metrics()
    directory = DirectoryService(
        tenants_collection=database.get_collection(TENANTS_COLL),
        leases_collection=database.get_collection(LEASES_COLL),
        units_collection=database.get_collection(UNITS_COLL),
        buildings_collection=database.get_collection(BUILDINGS_COLL),
    )
    invoice_ledger = InvoiceLedger(
        invoices_collection=database.get_collection(INVOICES_COLL),
        payments_collection=database.get_collection(PAYMENTS_COLL),
        directory=directory,
        settings=settings,
        locks=KeyedLock(),
        metrics=metrics,
    )
    payment_ledger = PaymentLedger(
        payments_collection=database.get_collection(PAYMENTS_COLL),
        invoice_ledger=invoice_ledger,
        directory=directory,
        settings=settings,
        metrics=metrics,
    )
    providers = providers or ProviderRegistry(settings, http_client=http_client, metrics=metrics)
    intent_service = PaymentIntentService(
        intents_collection=database.get_collection(PAYMENT_INTENTS_COLL),
        payment_ledger=payment_ledger,
        invoice_ledger=invoice_ledger,
        directory=directory,
        providers=providers,
        settings=settings,
    )
    notifications = NotificationOutbox(database.get_collection(NOTIFICATIONS_COLL))
    return BillingContainer(
        settings=settings,
        metrics=metrics,
        directory=directory,
        invoice_ledger=invoice_ledger,
        payment_ledger=payment_ledger,
        providers=providers,
        intent_service=intent_service,
        notifications=notifications,
        webhook_reconciler=WebhookReconciler(
            intent_service=intent_service,
            payment_ledger=payment_ledger,
            providers=providers,
            notifications=notifications,
            metrics=metrics,
        ),
        invoice_generator=InvoiceGenerator(invoice_ledger, directory),
        health_check=health_check,
    )


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        level = logger.error if exc.status_code >= 500 else logger.info
        level("billing_error", path=request.url.path, code=exc.code, detail=exc.message, **exc.context)
        return MongoORJSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, method=request.method)
        return MongoORJSONResponse(status_code=500, content={"error": "internal_error"})


def create_app(settings: Optional[Settings] = None, container: Optional[BillingContainer] = None) -> FastAPI:
    """
    Build the billing API.

    With ``container`` given the app serves those services as-is and never
    touches MongoDB; otherwise the lifespan connects, ensures the billing
    indexes and wires the services itself.
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        if container is not None:
            app.state.container = container
            yield
            return

        logger.info("billing_starting", app=settings.app_name)
        await db_manager.initialize(AsyncDatabaseConfig.from_settings(settings))
        await ensure_indexes()
        http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        app.state.container = build_container(
            db_manager.database,
            settings,
            http_client=http_client,
            health_check=db_manager.health_check,
        )
        logger.info("billing_started")
        try:
            yield
        finally:
            await http_client.aclose()
            await db_manager.close()
            logger.info("billing_stopped")

    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan,
        default_response_class=MongoORJSONResponse,
    )
    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(rent.router)
    app.include_router(invoices.router)
    # intents before payments so /payments/intents is never read as a payment id
    app.include_router(intents.router)
    app.include_router(payments.router)
    app.include_router(webhooks.router)
    return app
