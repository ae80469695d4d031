"""Dashboard HTTP API over a real store, exercised with FastAPI's TestClient."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.dashboard_routes import create_app
from services.payment_models import Chain, ManualPayment, VerificationResult, VerificationStatus, utc_now
from services.verification_dashboard import VerificationDashboard


def _seed(store, payment_id, status, confidence=0, minutes_ago=0, amount="120"):
    created_at = utc_now() - timedelta(minutes=minutes_ago)
    payment = ManualPayment(
        payment_id=payment_id, user_id=9, amount_usd=Decimal(amount), chain=Chain.POLYGON,
        sender_name="Erin", created_at=created_at, expires_at=created_at + timedelta(hours=72),
    )
    store.create_payment(payment, VerificationResult(verification_status=status, verification_confidence=confidence))


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.submit.return_value = True
    return queue


@pytest.fixture
def client(store, queue):
    _seed(store, "MP_1", VerificationStatus.AUTO_APPROVED, confidence=100, minutes_ago=3)
    _seed(store, "MP_2", VerificationStatus.MANUAL_REVIEW_REQUIRED, confidence=45, minutes_ago=2)
    _seed(store, "MP_3", VerificationStatus.APPROVED, confidence=45, minutes_ago=1)
    return TestClient(create_app(VerificationDashboard(store), queue))


def test_list_payments(client):
    response = client.get("/api/verification/payments")
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 3
    assert [p["payment_id"] for p in body["payments"]] == ["MP_3", "MP_2", "MP_1"]
    first = body["payments"][-1]
    assert first["auto_approved"] is True
    assert first["confidence"] == 100
    assert first["amount_usd"] == 120.0
    assert first["reason"] == "Automatic verification successful"


def test_list_filters_and_pages(client):
    body = client.get("/api/verification/payments", params={"status": "manual_review_required"}).json()
    assert [p["payment_id"] for p in body["payments"]] == ["MP_2"]

    body = client.get("/api/verification/payments", params={"limit": 1, "offset": 1}).json()
    assert [p["payment_id"] for p in body["payments"]] == ["MP_2"]
    assert (body["limit"], body["offset"]) == (1, 1)


def test_list_rejects_bad_parameters(client):
    assert client.get("/api/verification/payments", params={"status": "paid"}).status_code == 400
    assert client.get("/api/verification/payments", params={"limit": 0}).status_code == 422
    assert client.get("/api/verification/payments", params={"offset": -1}).status_code == 422


def test_payment_detail(client):
    body = client.get("/api/verification/payments/MP_2").json()
    assert body["payment_id"] == "MP_2"
    assert body["verification"]["verification_status"] == "manual_review_required"
    assert body["verification"]["verification_confidence"] == 45
    assert set(body["verification"]["verification_checks"]) == {
        "no_duplicates", "transaction_exists", "sender_verified", "recipient_verified",
        "amount_verified", "confirmed", "time_valid",
    }
    assert [e["event_type"] for e in body["history"]] == ["payment_submitted"]


def test_unknown_payment_is_404(client):
    response = client.get("/api/verification/payments/MP_NOPE")
    assert response.status_code == 404
    assert "MP_NOPE" in response.json()["detail"]


def test_stats(client):
    body = client.get("/api/verification/stats").json()
    assert body["total_payments"] == 3
    assert body["auto_approved"] == 1
    assert body["manual_review"] == 1
    assert body["approved"] == 1
    assert body["auto_approval_rate"] == 33.3
    assert body["avg_confidence"] == 63.3
    assert len(body["recent_payments"]) == 3


def test_reverify_queues_open_payment(client, queue):
    response = client.post("/api/verification/payments/MP_2/reverify")
    assert response.status_code == 202
    assert response.json() == {"payment_id": "MP_2", "queued": True, "status": "manual_review_required"}
    queue.submit.assert_called_once_with("MP_2")


def test_reverify_decided_payment_is_not_queued(client, queue):
    response = client.post("/api/verification/payments/MP_3/reverify")
    assert response.status_code == 202
    assert response.json()["queued"] is False
    queue.submit.assert_not_called()


def test_reverify_expired_payment_conflicts(store, client):
    _seed(store, "MP_X", VerificationStatus.EXPIRED, minutes_ago=5)
    assert client.post("/api/verification/payments/MP_X/reverify").status_code == 409
    assert client.post("/api/verification/payments/MP_NOPE/reverify").status_code == 404


def test_reverify_without_workers(store):
    app = create_app(VerificationDashboard(store), queue=None)
    assert TestClient(app).post("/api/verification/payments/MP_1/reverify").status_code == 503


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_reverify_submits_on_the_event_loop(store, queue):
    loops = []

    def submit(payment_id):
        # Raises RuntimeError when called from a threadpool worker
        loops.append(asyncio.get_running_loop())
        return True

    queue.submit.side_effect = submit
    _seed(store, "MP_OPEN", VerificationStatus.MANUAL_REVIEW_REQUIRED)
    client = TestClient(create_app(VerificationDashboard(store), queue))

    response = client.post("/api/verification/payments/MP_OPEN/reverify")

    assert response.status_code == 202
    assert response.json()["queued"] is True
    assert len(loops) == 1
