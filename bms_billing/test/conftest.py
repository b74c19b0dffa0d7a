from decimal import Decimal

import pytest
from prometheus_client import CollectorRegistry

from bms_billing.core.config import Settings
from bms_billing.core.database import (
    BILLING_INDEXES,
    BUILDINGS_COLL,
    LEASES_COLL,
    TENANTS_COLL,
    UNITS_COLL,
)
from bms_billing.main import build_container
from bms_billing.metrics.metrics import MetricsCollector
from bms_billing.models.invoice import InvoiceStatus
from bms_billing.providers.provider_selector import ProviderRegistry
from bms_billing.test.factories import CHAPA_WEBHOOK_SECRET, ORG, OTHER_ORG, invoice_create, utc
from bms_billing.test.fakes import FakeDatabase


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        public_base_url="https://billing.test",
        default_currency="ETB",
        intent_ttl_minutes=30,
        provider_initiate_timeout_seconds=0.2,
        chapa_secret_key=None,
        chapa_webhook_secret=CHAPA_WEBHOOK_SECRET,
        telebirr_app_id=None,
        cbe_birr_merchant_id=None,
        hellocash_principal=None,
        bank_transfer_account_name="Acme Towers PLC",
        bank_transfer_account_number=None,
    )


@pytest.fixture
def metrics():
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def database():
    db = FakeDatabase()
    db.apply_indexes(BILLING_INDEXES)

    db[TENANTS_COLL].docs.extend([
        {"_id": "tenant-1", "organization_id": ORG, "first_name": "Abebe", "last_name": "Kebede",
         "email": "abebe@example.com", "primary_phone": "+251911000001"},
        {"_id": "tenant-2", "organization_id": ORG, "first_name": "Sara", "last_name": "Tesfaye",
         "email": "sara@example.com"},
        {"_id": "tenant-x", "organization_id": OTHER_ORG, "first_name": "Other", "last_name": "Org"},
    ])
    db[BUILDINGS_COLL].docs.extend([
        {"_id": "bldg-1", "organization_id": ORG, "name": "Bole Towers",
         "rent_policy": {"base_rate_per_sqm": "500", "decrement_per_floor": "10",
                         "ground_floor_multiplier": "1.2", "min_rate_per_sqm": "300"}},
    ])
    db[UNITS_COLL].docs.extend([
        {"_id": "unit-1", "organization_id": ORG, "building_id": "bldg-1", "floor": 3, "area": Decimal("40")},
        {"_id": "unit-2", "organization_id": ORG, "building_id": "bldg-1", "floor": 1, "area": Decimal("50")},
        {"_id": "unit-x", "organization_id": OTHER_ORG, "floor": 2, "area": Decimal("30")},
    ])
    db[LEASES_COLL].docs.extend([
        {"_id": "lease-1", "organization_id": ORG, "tenant_id": "tenant-1", "unit_id": "unit-1",
         "status": "active", "rent_amount": Decimal("10000"), "billing_cycle": "monthly", "due_day": 5,
         "start_date": utc(2024, 1, 1),
         "additional_charges": [
             {"name": "Service charge", "amount": Decimal("500"), "frequency": "monthly"},
             {"name": "Key deposit", "amount": Decimal("1000"), "frequency": "one_time"},
         ]},
        {"_id": "lease-2", "organization_id": ORG, "tenant_id": "tenant-2", "unit_id": "unit-2",
         "status": "active", "billing_cycle": "monthly", "due_day": 10, "start_date": utc(2024, 3, 11)},
        {"_id": "lease-x", "organization_id": OTHER_ORG, "tenant_id": "tenant-x", "unit_id": "unit-x",
         "status": "active", "rent_amount": Decimal("5000"), "billing_cycle": "monthly", "due_day": 1},
    ])
    return db


@pytest.fixture
def providers(settings, metrics):
    return ProviderRegistry(settings, metrics=metrics)


@pytest.fixture
def container(database, settings, metrics, providers):
    return build_container(database, settings, metrics=metrics, providers=providers)


@pytest.fixture
def invoice_ledger(container):
    return container.invoice_ledger


@pytest.fixture
def payment_ledger(container):
    return container.payment_ledger


@pytest.fixture
def intent_service(container):
    return container.intent_service


@pytest.fixture
def reconciler(container):
    return container.webhook_reconciler


@pytest.fixture
def make_invoice(invoice_ledger):
    """Create an invoice for lease-1 and optionally move it out of draft."""
    async def _make(status: InvoiceStatus = InvoiceStatus.SENT, **overrides):
        invoice = await invoice_ledger.create_invoice(ORG, invoice_create(**overrides))
        if status != InvoiceStatus.DRAFT:
            invoice = await invoice_ledger.update_invoice_status(invoice.id, ORG, status)
        return invoice
    return _make
