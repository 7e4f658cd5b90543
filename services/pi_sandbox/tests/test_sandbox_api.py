"""API tests for the Pi Platform sandbox.

The service modules are imported from the service directory the way
uvicorn runs them, against a throwaway SQLite database.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

SERVICE_DIR = Path(__file__).resolve().parents[1]
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / f'pi_sandbox_test_{os.getpid()}.db'}"
)
os.environ.setdefault("PI_SANDBOX_API_KEY", "sandbox-key")
sys.path.insert(0, str(SERVICE_DIR))

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
import repo  # noqa: E402

AUTH = {"Authorization": "Key sandbox-key"}


@pytest.fixture
def client():
    repo.Base.metadata.drop_all(repo.engine)
    repo.Base.metadata.create_all(repo.engine)
    with TestClient(main.app) as c:
        yield c


def create(client, uid="seller-1", amount=105):
    body = {"payment": {"amount": amount, "memo": "Payment for phone order #1", "metadata": {"orderId": "1"}, "uid": uid}}
    return client.post("/v2/payments", json=body, headers=AUTH)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert r.headers["X-Request-ID"]


def test_api_key_is_required(client):
    r = client.post("/v2/payments", json={"payment": {"amount": 1, "memo": "m", "uid": "u"}})
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"


def test_a2u_lifecycle(client):
    r = create(client)
    assert r.status_code == 200
    payment = r.json()
    pid = payment["identifier"]
    assert payment["amount"] == 105.0
    assert payment["direction"] == "app_to_user"
    assert payment["transaction"] is None

    txid = client.post(f"/v2/payments/{pid}/submit", headers=AUTH).json()["txid"]
    assert client.post(f"/v2/payments/{pid}/submit", headers=AUTH).json()["txid"] == txid

    fetched = client.get(f"/v2/payments/{pid}", headers=AUTH).json()
    assert fetched["transaction"]["txid"] == txid

    done = client.post(f"/v2/payments/{pid}/complete", json={"txid": txid}, headers=AUTH)
    assert done.status_code == 200
    assert done.json()["status"]["developer_completed"] is True


def test_complete_twice_reports_already_completed(client):
    pid = create(client).json()["identifier"]
    txid = client.post(f"/v2/payments/{pid}/submit", headers=AUTH).json()["txid"]
    client.post(f"/v2/payments/{pid}/complete", json={"txid": txid}, headers=AUTH)

    again = client.post(f"/v2/payments/{pid}/complete", json={"txid": txid}, headers=AUTH)
    assert again.status_code == 400
    assert again.json()["error"] == "already_completed"


def test_a2u_complete_requires_matching_txid(client):
    pid = create(client).json()["identifier"]
    client.post(f"/v2/payments/{pid}/submit", headers=AUTH)
    r = client.post(f"/v2/payments/{pid}/complete", json={"txid": "forged"}, headers=AUTH)
    assert r.status_code == 400
    assert r.json()["error"] == "txid_mismatch"


def test_ongoing_payment_blocks_new_a2u(client):
    create(client, uid="seller-2")
    r = create(client, uid="seller-2")
    assert r.status_code == 400
    assert r.json()["error"] == "ongoing_payment_found"


def test_unknown_payment_is_not_found(client):
    r = client.post("/v2/payments/nope/complete", json={"txid": "t"}, headers=AUTH)
    assert r.status_code == 404
    assert r.json()["error"] == "payment_not_found"


def test_buyer_payment_approve_then_complete(client):
    r = client.post("/v2/payments/u2a-1/approve", json={"uid": "buyer-1", "amount": "106.05"}, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["direction"] == "user_to_app"
    assert r.json()["status"]["developer_approved"] is True

    done = client.post("/v2/payments/u2a-1/complete", json={"txid": "buyer-tx"}, headers=AUTH)
    assert done.status_code == 200
    assert done.json()["transaction"]["txid"] == "buyer-tx"


def test_invalid_amount_is_rejected(client):
    r = create(client, amount=0)
    assert r.status_code == 422
