import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from bms_billing.core.config import Settings
from bms_billing.core.exceptions import ProviderConfigurationError, ProviderVerificationError, ValidationError
from bms_billing.models.callbacks import (
    BankTransferCallback,
    CbeBirrCallback,
    ChapaCallback,
    HelloCashCallback,
    TelebirrCallback,
    parse_callback,
)
from bms_billing.models.payment_intent import PaymentProvider
from bms_billing.providers import PROVIDERS, ProviderRegistry, get_provider
from bms_billing.providers.chapa import ChapaProvider
from bms_billing.providers.hellocash import HelloCashProvider
from bms_billing.providers.telebirr import TelebirrProvider


def live_settings(**overrides) -> Settings:
    data = dict(
        _env_file=None,
        public_base_url="https://billing.test",
        chapa_secret_key="CHASECK_TEST-abc",
        chapa_webhook_secret=None,
        telebirr_app_id="app-1",
        telebirr_app_key="key-1",
        hellocash_principal="principal-1",
        hellocash_token="token-1",
        provider_retry_attempts=2,
    )
    data.update(overrides)
    return Settings(**data)


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestChapaSignature:
    def test_valid_signature(self, settings, metrics):
        provider = ChapaProvider(settings, metrics=metrics)
        body = b'{"tx_ref":"BMS-CHAPA-1"}'
        signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()
        assert provider.verify_signature(body, signature)
        assert provider.verify_signature(body, signature.upper())

    def test_invalid_or_missing_signature(self, settings, metrics):
        provider = ChapaProvider(settings, metrics=metrics)
        assert not provider.verify_signature(b"{}", "0" * 64)
        assert not provider.verify_signature(b"{}", None)
        assert not provider.verify_signature(b"{}", "not-hex-é")

    def test_falls_back_to_secret_key(self, metrics):
        provider = ChapaProvider(live_settings(), metrics=metrics)
        body = b"{}"
        signature = hmac.new(b"CHASECK_TEST-abc", body, hashlib.sha256).hexdigest()
        assert provider.verify_signature(body, signature)

    def test_fails_closed_without_any_secret(self, metrics):
        provider = ChapaProvider(live_settings(chapa_secret_key=None), metrics=metrics)
        body = b"{}"
        signature = hmac.new(b"", body, hashlib.sha256).hexdigest()
        assert not provider.verify_signature(body, signature)

    def test_only_chapa_requires_signature(self, providers):
        required = {key for key in PROVIDERS if providers.get(key).requires_signature}
        assert required == {PaymentProvider.CHAPA}
        assert providers.get(PaymentProvider.TELEBIRR).verify_signature(b"{}", None)


class TestChapaLive:
    @pytest.mark.asyncio
    async def test_initiate(self, metrics):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "success", "data": {"checkout_url": "https://checkout.chapa.co/x"}})

        async with client_for(handler) as client:
            provider = ChapaProvider(live_settings(), http_client=client, metrics=metrics)
            result = await provider.initiate_payment(
                Decimal("10500.00"), "ETB", "BMS-CHAPA-1",
                {"tenant_id": "tenant-1", "payer": {"email": "abebe@example.com", "phone": "+251911000001"}},
            )

        assert result.redirect_url == "https://checkout.chapa.co/x"
        assert seen["url"] == "https://api.chapa.co/v1/transaction/initialize"
        assert seen["auth"] == "Bearer CHASECK_TEST-abc"
        assert seen["body"]["tx_ref"] == "BMS-CHAPA-1"
        assert seen["body"]["amount"] == "10500.00"
        assert seen["body"]["callback_url"] == "https://billing.test/webhooks/payments/chapa"
        assert metrics.registry.get_sample_value(
            "billing_provider_calls_total", {"provider": "chapa", "operation": "initiate", "outcome": "ok"}
        ) == 1

    @pytest.mark.asyncio
    async def test_verify_success(self, metrics):
        def handler(request):
            return httpx.Response(200, json={"status": "success", "data": {
                "status": "success", "amount": "10500", "currency": "ETB", "reference": "CHK-1"}})

        async with client_for(handler) as client:
            result = await ChapaProvider(live_settings(), http_client=client, metrics=metrics).verify_payment(
                "BMS-CHAPA-1"
            )

        assert result.success
        assert result.amount == Decimal("10500")
        assert result.transaction_id == "CHK-1"
        assert result.amount_confirmed

    @pytest.mark.asyncio
    async def test_verify_reports_pending_as_failure(self, metrics):
        def handler(request):
            return httpx.Response(200, json={"status": "success", "data": {"status": "pending", "amount": "1"}})

        async with client_for(handler) as client:
            result = await ChapaProvider(live_settings(), http_client=client, metrics=metrics).verify_payment("R")

        assert not result.success
        assert result.error == "Transaction status: pending"

    @pytest.mark.asyncio
    async def test_http_error_raises(self, metrics):
        async with client_for(lambda request: httpx.Response(500, json={"message": "down"})) as client:
            with pytest.raises(ProviderVerificationError):
                await ChapaProvider(live_settings(), http_client=client, metrics=metrics).verify_payment("R")
        assert metrics.registry.get_sample_value(
            "billing_provider_calls_total", {"provider": "chapa", "operation": "verify", "outcome": "http_error"}
        ) == 1

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, metrics):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(ProviderVerificationError):
                await ChapaProvider(live_settings(), http_client=client, metrics=metrics).verify_payment("R")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_live_mode_without_client(self, metrics):
        with pytest.raises(ProviderVerificationError):
            await ChapaProvider(live_settings(), metrics=metrics).verify_payment("R")


class TestOtherAdapters:
    @pytest.mark.asyncio
    async def test_telebirr_order(self, metrics):
        def handler(request):
            assert request.headers["X-APP-Key"] == "key-1"
            return httpx.Response(200, json={"code": 0, "data": {"toPayUrl": "https://pay.telebirr/x", "prepayId": "P1"}})

        async with client_for(handler) as client:
            result = await TelebirrProvider(live_settings(), http_client=client, metrics=metrics).initiate_payment(
                Decimal("100.00"), "ETB", "BMS-TELEBIRR-1", {}
            )
        assert result.redirect_url == "https://pay.telebirr/x"
        assert result.metadata["prepay_id"] == "P1"

    @pytest.mark.asyncio
    async def test_hellocash_needs_payer_phone(self, metrics):
        provider = HelloCashProvider(live_settings(), metrics=metrics)
        with pytest.raises(ProviderVerificationError):
            await provider.initiate_payment(Decimal("100.00"), "ETB", "BMS-HELLOCASH-1", {"payer": {}})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", list(PROVIDERS))
    async def test_sandbox_initiation(self, providers, key):
        result = await providers.get(key).initiate_payment(Decimal("10.00"), "ETB", f"REF-{key.value}", {
            "payer": {"phone": "+251911000001"},
        })
        assert result.reference_number == f"REF-{key.value}"
        assert result.redirect_url or result.instructions
        assert "payer" not in result.metadata

    @pytest.mark.asyncio
    async def test_sandbox_verification_without_callback(self, providers):
        result = await providers.get(PaymentProvider.CHAPA).verify_payment("REF")
        assert not result.success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", list(PROVIDERS))
    async def test_sandbox_amount_is_unconfirmed(self, providers, key):
        payload = {
            PaymentProvider.CHAPA: {"tx_ref": "R1", "status": "success", "amount": "10"},
            PaymentProvider.TELEBIRR: {"outTradeNo": "R1", "tradeStatus": "SUCCESS", "totalAmount": "10"},
            PaymentProvider.CBE_BIRR: {"transactionId": "R1", "status": "paid", "amount": "10"},
            PaymentProvider.HELLOCASH: {"paymentReference": "R1", "status": "SUCCESS", "amount": "10"},
            PaymentProvider.BANK_TRANSFER: {"reference": "R1", "status": "completed", "amount": "10"},
        }[key]
        result = await providers.get(key).verify_payment("R1", parse_callback(key, payload))
        assert result.success
        assert result.amount == Decimal("10")
        assert not result.amount_confirmed


class TestRegistry:
    def test_factory_resolves_names(self, settings, metrics):
        assert isinstance(get_provider("CHAPA", settings, metrics=metrics), ChapaProvider)
        assert isinstance(get_provider(PaymentProvider.TELEBIRR, settings, metrics=metrics), TelebirrProvider)

    def test_unknown_provider(self, settings, providers):
        with pytest.raises(ProviderConfigurationError):
            get_provider("paypal", settings)
        with pytest.raises(ProviderConfigurationError):
            providers.get("paypal")
        assert "paypal" not in providers
        assert "chapa" in providers

    def test_overrides(self, settings, metrics):
        custom = ChapaProvider(live_settings(), metrics=metrics)
        registry = ProviderRegistry(settings, metrics=metrics, overrides={PaymentProvider.CHAPA: custom})
        assert registry.get("chapa") is custom
        assert not registry.get("chapa").sandbox
        assert registry.get("telebirr").sandbox


class TestCallbackParsing:
    @pytest.mark.parametrize("provider,payload,variant", [
        (PaymentProvider.CHAPA, {"tx_ref": "R1", "status": "success"}, ChapaCallback),
        (PaymentProvider.TELEBIRR, {"outTradeNo": "R1", "tradeStatus": "Completed"}, TelebirrCallback),
        (PaymentProvider.CBE_BIRR, {"transactionId": "R1", "status": "paid"}, CbeBirrCallback),
        (PaymentProvider.HELLOCASH, {"paymentReference": "R1", "status": "SUCCESS"}, HelloCashCallback),
        (PaymentProvider.BANK_TRANSFER, {"reference": "R1", "status": "completed", "amount": "5"}, BankTransferCallback),
    ])
    def test_variant_per_provider(self, provider, payload, variant):
        callback = parse_callback(provider, payload)
        assert isinstance(callback, variant)
        assert callback.reference_number == "R1"
        assert callback.reports_success

    def test_provider_field_in_body_is_ignored(self):
        callback = parse_callback(PaymentProvider.CHAPA, {"tx_ref": "R1", "provider": "telebirr"})
        assert isinstance(callback, ChapaCallback)

    @pytest.mark.parametrize("payload", [{}, {"tx_ref": ""}, {"outTradeNo": "R1"}, "R1", None])
    def test_missing_reference(self, payload):
        with pytest.raises(ValidationError):
            parse_callback(PaymentProvider.CHAPA, payload)

    def test_failure_status(self):
        callback = parse_callback(PaymentProvider.HELLOCASH, {"paymentReference": "R1", "status": "DENIED"})
        assert not callback.reports_success
