"""
HTTP tests for the payments and fraud ledger routers.
"""
import uuid

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from motor_pagos.api.dependencies import get_orchestrator
from motor_pagos.infrastructure.database.session import get_db
from motor_pagos.main import app

from conftest import KNOWN_DEVICE, KNOWN_IP, VALID_CARD, make_token

KNOWN_HEADERS = {"X-Device-ID": KNOWN_DEVICE, "X-Forwarded-For": KNOWN_IP}
SUSPICIOUS_HEADERS = {"X-Device-ID": "device-never-seen", "X-Forwarded-For": "198.51.100.99"}


@pytest_asyncio.fixture
async def client(session_factory, orchestrator):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def _auth(user_id: uuid.UUID, role: str = "user", **headers) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}", **headers}


def _card_payload(order_id: uuid.UUID, **overrides) -> dict:
    payload = {
        "order_id":         str(order_id),
        "card_number":      VALID_CARD,
        "card_holder_name": "Ana Pérez",
        "expiry_month":     12,
        "expiry_year":      2099,
        "cvv":              "123",
    }
    payload.update(overrides)
    return payload


class TestPaymentsApi:

    async def test_initiate_then_verify(self, client, seed_checkout) -> None:
        checkout = await seed_checkout()

        response = await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id),
            headers=_auth(checkout.user_id, **KNOWN_HEADERS),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["otp_required"] is True
        assert body["masked_card"] == "**** **** **** 1111"
        assert body["risk_score"] == 0
        assert "dev_otp" in body
        assert "4111111111111111" not in response.text

        response = await client.post(
            "/v1/payments/verify-otp",
            json={"transaction_id": body["transaction_id"], "otp_code": body["dev_otp"]},
            headers=_auth(checkout.user_id),
        )
        assert response.status_code == 200
        settled = response.json()
        assert settled["success"] is True
        assert settled["transaction"]["status"] == "approved"
        assert settled["order"]["status"] == "confirmed"
        assert settled["order"]["id"] == str(checkout.order_id)

        response = await client.get(
            f"/v1/payments/transactions/{body['transaction_id']}",
            headers=_auth(checkout.user_id),
        )
        assert response.status_code == 200
        snapshot = response.json()
        assert snapshot["status"] == "approved"
        assert snapshot["otp_verified"] is True
        assert snapshot["gateway_transaction_id"] == settled["transaction"]["gateway_transaction_id"]
        assert "encrypted_card_number" not in snapshot

    async def test_blocked_payment_is_forbidden(self, client, seed_checkout) -> None:
        checkout = await seed_checkout(recent_transactions=5)

        response = await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id),
            headers=_auth(checkout.user_id, **SUSPICIOUS_HEADERS),
        )
        assert response.status_code == 403
        body = response.json()
        assert body["risk_score"] == 3
        assert body["flags"] == ["unusual_location", "new_device", "velocity_check"]
        assert "transaction_id" in body

        response = await client.get(
            f"/v1/payments/transactions/{body['transaction_id']}",
            headers=_auth(checkout.user_id),
        )
        assert response.json()["status"] == "declined"

    async def test_wrong_otp_reports_attempts(self, client, seed_checkout) -> None:
        checkout = await seed_checkout()
        started = (await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id),
            headers=_auth(checkout.user_id, **KNOWN_HEADERS),
        )).json()
        wrong = "".join(str((int(d) + 1) % 10) for d in started["dev_otp"])

        response = await client.post(
            "/v1/payments/verify-otp",
            json={"transaction_id": started["transaction_id"], "otp_code": wrong},
            headers=_auth(checkout.user_id),
        )
        assert response.status_code == 400
        assert response.json()["attempts_remaining"] == 2

    async def test_unknown_order_is_404(self, client, seed_checkout) -> None:
        checkout = await seed_checkout()
        response = await client.post(
            "/v1/payments/initiate",
            json=_card_payload(uuid.uuid4()),
            headers=_auth(checkout.user_id, **KNOWN_HEADERS),
        )
        assert response.status_code == 404

    async def test_invalid_card_is_422(self, client, seed_checkout) -> None:
        checkout = await seed_checkout()
        response = await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id, card_number="4111-abcd-1111"),
            headers=_auth(checkout.user_id),
        )
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "Datos de pago inválidos."
        assert body["details"][0]["field"] == "card_number"
        assert "4111-abcd-1111" not in response.text

    async def test_expired_card_is_422(self, client, seed_checkout) -> None:
        checkout = await seed_checkout()
        response = await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id, expiry_month=1, expiry_year=2020),
            headers=_auth(checkout.user_id),
        )
        assert response.status_code == 422

    async def test_invalid_token_is_401(self, client, seed_checkout) -> None:
        checkout = await seed_checkout()
        response = await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id),
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test_cannot_read_foreign_transaction(self, client, seed_checkout) -> None:
        checkout = await seed_checkout()
        started = (await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id),
            headers=_auth(checkout.user_id, **KNOWN_HEADERS),
        )).json()

        response = await client.get(
            f"/v1/payments/transactions/{started['transaction_id']}",
            headers=_auth(uuid.uuid4()),
        )
        assert response.status_code == 404


class TestFraudLogsApi:

    async def test_admin_lists_and_reviews(self, client, seed_checkout) -> None:
        checkout = await seed_checkout(recent_transactions=5)
        await client.post(
            "/v1/payments/initiate",
            json=_card_payload(checkout.order_id),
            headers=_auth(checkout.user_id, **SUSPICIOUS_HEADERS),
        )
        admin = _auth(uuid.uuid4(), role="admin")

        response = await client.get("/v1/fraud-logs", params={"reviewed": "false"}, headers=admin)
        assert response.status_code == 200
        page = response.json()
        assert page["total"] == 1
        log = page["logs"][0]
        assert log["action"] == "flagged"
        assert log["device_info"]["ip"] == "198.51.100.99"

        response = await client.post(
            f"/v1/fraud-logs/{log['id']}/review",
            json={"notes": "Cliente de viaje, confirmado por teléfono"},
            headers=admin,
        )
        assert response.status_code == 200
        assert response.json()["reviewed"] is True

        response = await client.get("/v1/fraud-logs", params={"reviewed": "false"}, headers=admin)
        assert response.json()["total"] == 0

    async def test_review_unknown_log_is_404(self, client) -> None:
        response = await client.post(
            f"/v1/fraud-logs/{uuid.uuid4()}/review",
            json={},
            headers=_auth(uuid.uuid4(), role="admin"),
        )
        assert response.status_code == 404

    async def test_regular_user_is_forbidden(self, client) -> None:
        response = await client.get("/v1/fraud-logs", headers=_auth(uuid.uuid4()))
        assert response.status_code == 403


class TestServiceEndpoints:

    async def test_health(self, client) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["redis"] == "ok"

    async def test_security_headers(self, client) -> None:
        response = await client.get("/health")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
