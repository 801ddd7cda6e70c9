"""
Web layer tests: webhook receiver responses and error mapping.
"""
import asyncio

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient

from config import Settings
from server import create_app, status_code_for
from settlement.errors import (
    InvalidSignatureError,
    NotFoundError,
    ProviderError,
    SettlementError,
    ValidationError,
)

from tests.helpers.webhook_payloads import (
    flutterwave_event,
    flutterwave_signature,
    monnify_event,
    monnify_signature,
)


@pytest.fixture
def client(service):
    app = create_app(settings=Settings(), settlement_service=service)
    with TestClient(app) as test_client:
        yield test_client


def pending_reference(service, charge_factory, payer, provider="flutterwave"):
    async def setup():
        charge = await charge_factory(amount=10000)
        result = await service.initialize_payment(charge.charge_id, payer.user_id, provider, 10000, "card")
        return charge, result.reference

    return asyncio.run(setup())


class TestWebhookReceiver:

    def test_processed_event(self, client, service, charge_factory, resident_a, repository):
        charge, reference = pending_reference(service, charge_factory, resident_a)
        payload = flutterwave_event(reference, 100.00)

        response = client.post(
            "/api/webhooks/flutterwave",
            content=payload,
            headers={"flutterwave-signature": flutterwave_signature(payload), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert repository.charges[charge.charge_id].status == "paid"

    def test_replay_returns_duplicate(self, client, service, charge_factory, resident_a):
        _, reference = pending_reference(service, charge_factory, resident_a)
        payload = flutterwave_event(reference, 100.00)
        headers = {"flutterwave-signature": flutterwave_signature(payload)}

        client.post("/api/webhooks/flutterwave", content=payload, headers=headers)
        response = client.post("/api/webhooks/flutterwave", content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_legacy_verif_hash_header(self, client, service, charge_factory, resident_a):
        _, reference = pending_reference(service, charge_factory, resident_a)
        payload = flutterwave_event(reference, 100.00)

        response = client.post("/api/webhooks/flutterwave", content=payload,
                               headers={"verif-hash": "flw-webhook-secret"})
        assert response.status_code == 200

    def test_monnify_header(self, client, service, charge_factory, resident_a):
        _, reference = pending_reference(service, charge_factory, resident_a, provider="monnify")
        payload = monnify_event(reference, 100.00)

        response = client.post("/api/webhooks/monnify", content=payload,
                               headers={"monnify-signature": monnify_signature(payload)})
        assert response.status_code == 200
        assert response.json()["payment_status"] == "completed"

    def test_bad_signature_is_401(self, client, service, charge_factory, resident_a, repository):
        charge, reference = pending_reference(service, charge_factory, resident_a)
        payload = flutterwave_event(reference, 100.00)

        response = client.post("/api/webhooks/flutterwave", content=payload,
                               headers={"flutterwave-signature": "bm90IGEgc2lnbmF0dXJl"})

        assert response.status_code == 401
        assert response.json()["error"] == "InvalidSignatureError"
        assert repository.charges[charge.charge_id].paid_by == []

    def test_missing_signature_is_401(self, client):
        response = client.post("/api/webhooks/flutterwave", content=flutterwave_event("ref", 1.0))
        assert response.status_code == 401

    def test_unknown_reference_is_404(self, client):
        payload = flutterwave_event("no-such-reference-0001", 100.00)
        response = client.post("/api/webhooks/flutterwave", content=payload,
                               headers={"flutterwave-signature": flutterwave_signature(payload)})
        assert response.status_code == 404

    def test_unknown_provider_is_404(self, client):
        response = client.post("/api/webhooks/paystack", content=b"{}")
        assert response.status_code == 404

    def test_malformed_payload_is_500_for_retry(self, client):
        payload = b'{"event": "charge.completed", "data": {}}'
        response = client.post("/api/webhooks/flutterwave", content=payload,
                               headers={"flutterwave-signature": flutterwave_signature(payload)})
        assert response.status_code == 500

    def test_ignored_event(self, client):
        payload = flutterwave_event("ref", 1.0, event="transfer.completed")
        response = client.post("/api/webhooks/flutterwave", content=payload,
                               headers={"flutterwave-signature": flutterwave_signature(payload)})
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"


class TestHealth:

    def test_health_lists_providers(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert sorted(body["providers"]) == ["flutterwave", "monnify", "stripe"]


class TestErrorMapping:

    @pytest.mark.parametrize("error,expected", [
        (InvalidSignatureError("stripe"), 401),
        (NotFoundError("Payment", "ref-1"), 404),
        (ValidationError("Malformed flutterwave webhook payload"), 500),
        (ProviderError("stripe", "down"), 500),
        (SettlementError("boom"), 500),
    ])
    def test_status_codes(self, error, expected):
        assert status_code_for(error) == expected

    def test_handler_renders_error_body(self, service):
        app = create_app(settings=Settings(), settlement_service=service)
        router = APIRouter()

        @router.get("/boom")
        async def boom():
            raise ValidationError("Invalid payment provider: paystack", field="provider")

        app.include_router(router)
        response = TestClient(app).get("/boom")

        assert response.status_code == 500
        assert response.json() == {
            "detail": "Invalid payment provider: paystack",
            "error": "ValidationError",
            "field": "provider",
        }
