"""HTTP contract of the gift API."""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from giftflow.common.rate_limit import RateLimiter
from giftflow.services.vouchers.api import create_app


@pytest.fixture
def limiter(rdb):
    return RateLimiter(rdb, window_seconds=60, max_requests=10, high_value_max_requests=3, high_value_threshold=1000)


@pytest.fixture
def client(submission, consumer, limiter):
    app = create_app(submission, rate_limiter=limiter, consumer=consumer, run_outbox_relay=False)
    with TestClient(app) as test_client:
        yield test_client


def test_gift_voucher_success(client):
    resp = client.post("/api/vouchers/gift", json={"recipientEmail": "a@b.com", "amount": 100})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["status"] == "PENDING"
    assert body["data"]["isHighValue"] is False
    assert body["data"]["idempotent"] is False
    assert body["data"]["idempotencyKey"]
    assert resp.headers["X-RateLimit-Limit"] == "10"

    fetched = client.get(f"/api/vouchers/{body['data']['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["recipientEmail"] == "a@b.com"


def test_idempotent_replay_returns_200_and_same_id(client):
    payload = {"walletAddress": "0xabc", "amount": 10, "idempotencyKey": str(uuid4())}

    first = client.post("/api/vouchers/gift", json=payload).json()["data"]
    second = client.post("/api/vouchers/gift", json=payload)

    assert second.status_code == 200
    assert second.json()["data"]["id"] == first["id"]
    assert second.json()["data"]["idempotent"] is True


def test_validation_failure_is_400_with_field_detail(client):
    resp = client.post("/api/vouchers/gift", json={"amount": 2000})

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    fields = {f["field"] for f in body["error"]["fields"]}
    assert fields == {"recipient", "confirmHighValue"}


def test_high_value_confirmed(client):
    resp = client.post(
        "/api/vouchers/gift",
        json={"recipientEmail": "a@b.com", "amount": 2000, "confirmHighValue": True},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["isHighValue"] is True


def test_invalid_json_is_400(client):
    resp = client.post("/api/vouchers/gift", content=b"{nope", headers={"content-type": "application/json"})

    assert resp.status_code == 400


def test_nan_amount_is_400_not_500(client, queue):
    resp = client.post(
        "/api/vouchers/gift",
        content=b'{"recipientEmail": "a@b.com", "amount": NaN}',
        headers={"content-type": "application/json"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["fields"] == [{"field": "amount", "message": "Amount must be a finite number"}]
    assert queue.depth()["ready"] == 0


def test_server_failure_is_opaque_500(client, submission, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("connection to db-primary:5432 refused")

    monkeypatch.setattr(submission.repository, "create", explode)

    resp = client.post("/api/vouchers/gift", json={"recipientEmail": "a@b.com", "amount": 10})

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Failed to process voucher gift"}


def test_resend_while_key_in_flight_is_409(client, idempotency):
    key = str(uuid4())
    idempotency.reserve(key, "voucher-being-created")

    resp = client.post("/api/vouchers/gift", json={"recipientEmail": "a@b.com", "amount": 10, "idempotencyKey": key})

    assert resp.status_code == 409
    assert resp.json()["success"] is False
    assert resp.headers["Retry-After"] == "1"


def test_rate_limit_returns_429(client):
    payload = {"recipientEmail": "a@b.com", "amount": 1500, "confirmHighValue": True}
    codes = [
        client.post("/api/vouchers/gift", json=payload, headers={"x-client-id": "c-1"}).status_code
        for _ in range(4)
    ]

    assert codes == [200, 200, 200, 429]


def test_unknown_voucher_is_404(client):
    assert client.get("/api/vouchers/missing").status_code == 404


def test_simulate_process_voucher(client, submission):
    created = client.post("/api/vouchers/gift", json={"walletAddress": "0xabc", "amount": 10}).json()["data"]

    resp = client.post(
        "/api/simulate/process-voucher",
        json={"voucherId": created["id"], "walletAddress": "0xabc", "amount": 10},
    )

    assert resp.status_code == 200
    assert submission.get_voucher(created["id"]).status == "SENT"


def test_api_key_enforced_when_configured(submission):
    app = create_app(submission, api_key="secret", run_outbox_relay=False)
    with TestClient(app) as test_client:
        denied = test_client.post("/api/vouchers/gift", json={"recipientEmail": "a@b.com", "amount": 10})
        allowed = test_client.post(
            "/api/vouchers/gift",
            json={"recipientEmail": "a@b.com", "amount": 10},
            headers={"x-api-key": "secret"},
        )

    assert denied.status_code == 401
    assert allowed.status_code == 200


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    assert "gift_requests_total" in client.get("/metrics").text


def test_outbox_relay_runs_with_the_api(submission, monkeypatch):
    started = []

    async def relay(interval_seconds: float = 0.5):
        started.append(interval_seconds)

    monkeypatch.setattr(submission, "outbox_publisher", relay)
    app = create_app(submission, run_outbox_relay=True)
    with TestClient(app) as test_client:
        test_client.get("/health")

    assert started == [0.5]
