import httpx
import pytest

from apps.settlement import adapters
from apps.settlement.domain import GatewayError
from apps.settlement.models import (
    ChatModel, DonationModel, MessageModel, OrderModel, PiUser, SettlementIntentModel,
)

COMPLETE_URL = "/api/pi/payments/complete/"


def purchase_body(payment_id="pay-api-1", txid="tx-api-1", **overrides):
    purchase = {
        "userId": "buyer-uid-0001",
        "sellerId": "seller-uid-0001",
        "listingType": "phone",
        "listingId": 42,
        "productPrice": 100,
        "logisticsFee": 5,
        "platformFee": 1.05,
        "shippingDetails": {
            "fullName": "Ada Obi",
            "address": "12 Marina Rd",
            "city": "Lagos",
            "state": "Lagos",
            "zipCode": "100001",
            "country": "Nigeria",
            "phone": "+2348000000000",
        },
        "metadata": {"username": "ada"},
    }
    purchase.update(overrides)
    return {"paymentId": payment_id, "txid": txid, "purchaseData": purchase}


def post(client, body, **extra):
    return client.post(COMPLETE_URL, data=body, content_type="application/json", **extra)


@pytest.mark.django_db
def test_complete_payment_settles_purchase(client):
    r = post(client, purchase_body())
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "Payment completed successfully"
    assert body["replayed"] is False

    order = body["order"]
    assert order["status"] == "completed"
    assert order["amount"] == "106.05"
    assert order["platform_fee"] == "1.05"
    assert order["listing_id"] == "42"
    assert order["seller_payment_id"] and order["seller_txid"]
    assert order["shipping_address"]["zipCode"] == "100001"

    row = OrderModel.objects.get()
    assert row.pi_payment_id == "pay-api-1"
    assert row.status == OrderModel.Status.COMPLETED
    assert row.completed_at is not None
    assert SettlementIntentModel.objects.get(payment_id="pay-api-1").state == "settled"


@pytest.mark.django_db
def test_complete_payment_creates_placeholder_users(client):
    post(client, purchase_body())
    buyer = PiUser.objects.get(user_uid="buyer-uid-0001")
    seller = PiUser.objects.get(user_uid="seller-uid-0001")
    assert buyer.pi_username == "ada" and buyer.role == "reader"
    assert seller.pi_username == "seller_seller-u" and seller.role == "seller"


@pytest.mark.django_db
def test_complete_payment_sends_logistics_message(client):
    r = post(client, purchase_body())
    order_id = r.json()["order"]["id"]

    chat = ChatModel.objects.get(listing_type="order", listing_id=order_id)
    assert chat.unread_count == 1
    msg = MessageModel.objects.get(chat=chat)
    assert msg.message_type == "logistics"
    assert "Ada Obi" in msg.content
    assert "Platform fee (1.05) has been collected" in msg.content
    assert f"Order ID: {order_id}" in msg.content


@pytest.mark.django_db
def test_a2u_failure_still_answers_success(client, monkeypatch):
    def fail_submit(self, payment_id):
        raise GatewayError("insufficient_balance", "wallet is empty", 400)

    monkeypatch.setattr(adapters.PiGatewayStub, "submit_payment", fail_submit)
    r = post(client, purchase_body())
    assert r.status_code == 200
    order = r.json()["order"]
    assert order["status"] == "a2u_failed"
    assert "wallet is empty" in order["notes"]
    assert order["seller_payment_id"] is None

    assert OrderModel.objects.filter(status="a2u_failed").count() == 1


@pytest.mark.django_db
def test_messaging_failure_does_not_fail_request(client, monkeypatch):
    from apps.settlement import repository

    def broken(self, buyer, seller, order):
        raise RuntimeError("chat table locked")

    monkeypatch.setattr(repository.ChatMessenger, "send_logistics", broken)
    r = post(client, purchase_body())
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "completed"


@pytest.mark.django_db
def test_replay_returns_same_order(client):
    r1 = post(client, purchase_body())
    r2 = post(client, purchase_body())
    assert r2.status_code == 200
    assert r2.json()["replayed"] is True
    assert r2.json()["order"]["id"] == r1.json()["order"]["id"]
    assert OrderModel.objects.count() == 1


@pytest.mark.django_db
def test_payment_id_reuse_with_other_payload_conflicts(client):
    post(client, purchase_body())
    r = post(client, purchase_body(productPrice=90))
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_CONFLICT"
    assert OrderModel.objects.count() == 1


@pytest.mark.django_db
def test_gateway_rejection_returns_402(client, monkeypatch):
    def reject(self, payment_id, txid):
        raise GatewayError("payment_not_found", "unknown payment", 404)

    monkeypatch.setattr(adapters.PiGatewayStub, "complete_payment", reject)
    r = post(client, purchase_body())
    assert r.status_code == 402
    assert r.json()["detail"] == "PAYMENT_NOT_COMPLETED"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_unreachable_network_returns_503(client, monkeypatch):
    def down(self, payment_id, txid):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(adapters.PiGatewayStub, "complete_payment", down)
    r = post(client, purchase_body())
    assert r.status_code == 503
    assert r.json()["detail"] == "UPSTREAM_UNAVAILABLE"
    assert SettlementIntentModel.objects.get(payment_id="pay-api-1").state == "opened"


@pytest.mark.django_db
def test_persistence_failure_returns_500(client, monkeypatch):
    from apps.settlement import repository

    def broken(self, order):
        raise LookupError("orders table missing")

    monkeypatch.setattr(repository.OrderRepository, "insert_paid", broken)
    r = post(client, purchase_body())
    assert r.status_code == 500
    assert r.json()["detail"] == "SETTLEMENT_FAILED"
    assert SettlementIntentModel.objects.get(payment_id="pay-api-1").state == "finalized"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "body",
    [
        {"txid": "tx"},
        {"paymentId": "", "txid": "tx"},
        purchase_body(shippingDetails={"fullName": "A"}),
        purchase_body(productPrice=-1),
        purchase_body(totalAmount=200),
    ],
)
def test_invalid_payload_returns_400(client, body):
    r = post(client, body)
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"
    assert r.json()["success"] is False
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_unsupported_shipping_country_returns_400(client):
    body = purchase_body()
    body["purchaseData"]["shippingDetails"]["country"] = "Ghana"
    r = post(client, body)
    assert r.status_code == 400
    assert "Shipping is not available" in r.json()["message"]


@pytest.mark.django_db
def test_donation_is_recorded(client):
    body = {
        "paymentId": "don-api-1",
        "txid": "tx-don-1",
        "donationData": {"userId": "donor-uid-0001", "amount": "3.14", "memo": "keep it up"},
    }
    r = post(client, body)
    assert r.status_code == 200
    assert "order" not in r.json()
    assert r.json()["donation"]["amount"] == "3.14"
    assert DonationModel.objects.get().pi_payment_id == "don-api-1"


@pytest.mark.django_db
def test_payment_without_payload_is_finalized(client):
    r = post(client, {"paymentId": "pay-bare", "txid": "tx-bare"})
    assert r.status_code == 200
    assert "order" not in r.json() and "donation" not in r.json()
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_request_id_is_echoed(client):
    r = post(client, purchase_body(), HTTP_X_REQUEST_ID="req-123")
    assert r.headers["X-Request-ID"] == "req-123"


@pytest.mark.django_db
def test_oversized_body_is_rejected(client):
    body = purchase_body()
    body["purchaseData"]["metadata"]["blob"] = "x" * (300 * 1024)
    r = post(client, body)
    assert r.status_code == 413
    assert r.json()["detail"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.django_db
def test_completed_write_failure_leaves_order_a2u_failed(client, monkeypatch):
    from django.db import OperationalError

    from apps.settlement import repository

    def locked(self, order_id, seller_payment_id, seller_txid):
        raise OperationalError("database is locked")

    monkeypatch.setattr(repository.OrderRepository, "mark_completed", locked)
    r = post(client, purchase_body())
    assert r.status_code == 200
    order = r.json()["order"]
    assert order["status"] == "a2u_failed"
    assert "database is locked" in order["notes"]
    assert "A2U payment " in order["notes"] and "txid " in order["notes"]
    assert OrderModel.objects.get().status == "a2u_failed"


@pytest.mark.django_db
def test_runtime_persistence_failure_returns_500(client, monkeypatch):
    from apps.settlement import repository

    def broken(self, order):
        raise RuntimeError("orders insert failed")

    monkeypatch.setattr(repository.OrderRepository, "insert_paid", broken)
    r = post(client, purchase_body())
    assert r.status_code == 500
    assert r.json()["detail"] == "SETTLEMENT_FAILED"


@pytest.mark.django_db
def test_open_circuit_returns_503(client, monkeypatch):
    from apps.settlement.http_adapters import CircuitOpenError

    def refused(self, payment_id, txid):
        raise CircuitOpenError("CIRCUIT_OPEN")

    monkeypatch.setattr(adapters.PiGatewayStub, "complete_payment", refused)
    r = post(client, purchase_body())
    assert r.status_code == 503
    assert r.json()["detail"] == "UPSTREAM_UNAVAILABLE"


@pytest.mark.django_db
def test_corrected_txid_after_rejection_is_accepted(client, monkeypatch):
    original = adapters.PiGatewayStub.complete_payment

    def picky(self, payment_id, txid):
        if txid == "tx-wrong":
            raise GatewayError("invalid_txid", "transaction does not match payment", 400)
        return original(self, payment_id, txid)

    monkeypatch.setattr(adapters.PiGatewayStub, "complete_payment", picky)
    r1 = post(client, purchase_body(txid="tx-wrong"))
    assert r1.status_code == 402
    assert SettlementIntentModel.objects.get(payment_id="pay-api-1").state == "rejected"

    r2 = post(client, purchase_body(txid="tx-right"))
    assert r2.status_code == 200
    assert r2.json()["order"]["txid"] == "tx-right"
    assert SettlementIntentModel.objects.get(payment_id="pay-api-1").state == "settled"


@pytest.mark.django_db
def test_reserialized_amounts_replay(client):
    r1 = post(client, purchase_body(productPrice=100))
    r2 = post(client, purchase_body(productPrice=100.0))
    assert r2.status_code == 200
    assert r2.json()["replayed"] is True
    assert r2.json()["order"]["id"] == r1.json()["order"]["id"]


@pytest.mark.django_db
@pytest.mark.parametrize("price", ["1e20", "0.12345678"])
def test_amount_beyond_column_precision_is_rejected_before_settlement(client, price):
    r = post(client, purchase_body(productPrice=price))
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"
    assert SettlementIntentModel.objects.count() == 0
