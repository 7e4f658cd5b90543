import uuid
from decimal import Decimal

import pytest

from apps.settlement.models import OrderModel, PiUser


def make_order(status="paid", payment_id=None, product="10", logistics="2", fee="0.12"):
    buyer, _ = PiUser.objects.get_or_create(user_uid="buyer-1", defaults={"pi_username": "buyer"})
    seller, _ = PiUser.objects.get_or_create(
        user_uid="seller-1", defaults={"pi_username": "seller", "role": "seller"},
    )
    p, l, f = Decimal(product), Decimal(logistics), Decimal(fee)
    return OrderModel.objects.create(
        buyer=buyer,
        seller=seller,
        listing_type="laptop",
        listing_id="7",
        amount=p + l + f,
        product_price=p,
        logistics_fee=l,
        platform_fee=f,
        pi_payment_id=payment_id or uuid.uuid4().hex,
        txid="tx",
        status=status,
        shipping_address={"fullName": "Ada", "country": "Nigeria"},
    )


@pytest.mark.django_db
def test_ping(client):
    r = client.get("/api/orders/ping/")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


@pytest.mark.django_db
def test_retrieve_order(client):
    o = make_order(status="completed")
    r = client.get(f"/api/orders/{o.id}/")
    assert r.status_code == 200
    body = r.json()
    assert body["id"] == str(o.id)
    assert body["amount"] == "12.12"
    assert body["buyer_id"] == "buyer-1"
    assert body["seller_id"] == "seller-1"
    assert body["status"] == "completed"


@pytest.mark.django_db
def test_retrieve_unknown_order_returns_404(client):
    r = client.get(f"/api/orders/{uuid.uuid4()}/")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_list_orders_paginates(client):
    for _ in range(3):
        make_order()
    r = client.get("/api/orders/?page=1&page_size=2")
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 3
    assert body["page"] == 1
    assert body["page_size"] == 2
    assert len(body["results"]) == 2

    r2 = client.get("/api/orders/?page=2&page_size=2")
    assert len(r2.json()["results"]) == 1


@pytest.mark.django_db
def test_list_orders_filters_by_status(client):
    make_order(status="completed")
    failed = make_order(status="a2u_failed")
    r = client.get("/api/orders/?status=a2u_failed")
    assert r.status_code == 200
    ids = [o["id"] for o in r.json()["results"]]
    assert ids == [str(failed.id)]


@pytest.mark.django_db
def test_list_orders_rejects_unknown_status(client):
    r = client.get("/api/orders/?status=lost")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_STATUS"


@pytest.mark.django_db
def test_list_orders_rejects_bad_pagination(client):
    r = client.get("/api/orders/?page=abc")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAGINATION"


@pytest.mark.django_db
def test_list_orders_caps_page_size(client):
    make_order()
    r = client.get("/api/orders/?page_size=1000")
    assert r.json()["page_size"] == 100
