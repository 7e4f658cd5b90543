from decimal import Decimal

import pytest
from pydantic import ValidationError

from apps.settlement.domain import (
    DonationSettlement, OrderStatus, PurchaseSettlement, can_transition, platform_fee_for,
)
from apps.settlement.schemas import CompletePaymentDTO

SHIPPING = {
    "fullName": "Ada Obi",
    "address": "12 Marina Rd",
    "city": "Lagos",
    "state": "Lagos",
    "zipCode": "100001",
    "country": "NG",
    "phone": "+2348000000000",
}


def purchase(**overrides):
    data = {
        "userId": "buyer-1",
        "sellerId": "seller-1",
        "listingType": "phone",
        "listingId": 9,
        "productPrice": "100",
        "logisticsFee": "5",
        "platformFee": "1.05",
        "shippingDetails": dict(SHIPPING),
    }
    data.update(overrides)
    return data


def test_purchase_payload_maps_to_domain():
    dto = CompletePaymentDTO.model_validate({"paymentId": "p", "txid": "t", "purchaseData": purchase()})
    s = dto.to_settlement()
    assert isinstance(s, PurchaseSettlement)
    assert s.listing_id == "9"
    assert s.prices.total == Decimal("106.05")
    assert s.prices.seller_payout == Decimal("105")
    assert s.shipping.zip_code == "100001"
    assert s.buyer_username is None


def test_total_amount_must_match_breakdown():
    ok = purchase(totalAmount="106.05")
    CompletePaymentDTO.model_validate({"paymentId": "p", "txid": "t", "purchaseData": ok})
    with pytest.raises(ValidationError):
        CompletePaymentDTO.model_validate(
            {"paymentId": "p", "txid": "t", "purchaseData": purchase(totalAmount="105")}
        )


def test_country_outside_fulfilment_area_is_rejected():
    data = purchase(shippingDetails={**SHIPPING, "country": "Kenya"})
    with pytest.raises(ValidationError):
        CompletePaymentDTO.model_validate({"paymentId": "p", "txid": "t", "purchaseData": data})


def test_allowed_countries_follow_settings(settings):
    settings.SHIPPING_ALLOWED_COUNTRIES = ["kenya"]
    data = purchase(shippingDetails={**SHIPPING, "country": "Kenya"})
    dto = CompletePaymentDTO.model_validate({"paymentId": "p", "txid": "t", "purchaseData": data})
    assert dto.purchase_data.shipping_details.country == "Kenya"


def test_purchase_and_donation_are_exclusive():
    body = {
        "paymentId": "p",
        "txid": "t",
        "purchaseData": purchase(),
        "donationData": {"userId": "u", "amount": 1},
    }
    with pytest.raises(ValidationError):
        CompletePaymentDTO.model_validate(body)


def test_donation_payload_maps_to_domain():
    dto = CompletePaymentDTO.model_validate({
        "paymentId": "p",
        "txid": "t",
        "donationData": {"userId": "u", "amount": "0.5", "metadata": {"username": "kay"}},
    })
    s = dto.to_settlement()
    assert isinstance(s, DonationSettlement)
    assert s.amount == Decimal("0.5")
    assert s.username == "kay"


def test_donation_amount_must_be_positive():
    with pytest.raises(ValidationError):
        CompletePaymentDTO.model_validate(
            {"paymentId": "p", "txid": "t", "donationData": {"userId": "u", "amount": 0}}
        )


def test_bare_payment_has_no_settlement():
    assert CompletePaymentDTO.model_validate({"paymentId": "p", "txid": "t"}).to_settlement() is None


@pytest.mark.parametrize(
    "product,logistics,expected",
    [("100", "5", "1.05"), ("250", "0", "2.50"), ("0.5", "0", "0.01"), ("19.99", "3.01", "0.23")],
)
def test_platform_fee_rounds_half_up_to_cents(product, logistics, expected):
    assert platform_fee_for(Decimal(product), Decimal(logistics)) == Decimal(expected)


def test_order_state_machine():
    assert can_transition(OrderStatus.PAID, OrderStatus.COMPLETED)
    assert can_transition("paid", "a2u_failed")
    assert can_transition(OrderStatus.A2U_FAILED, OrderStatus.COMPLETED)
    assert not can_transition(OrderStatus.COMPLETED, OrderStatus.A2U_FAILED)
    assert not can_transition(OrderStatus.CANCELLED, OrderStatus.PAID)
    assert not can_transition(OrderStatus.PENDING, OrderStatus.COMPLETED)
