"""Pydantic schemas for the settlement API.

This module exposes the request schema of the payment-completion endpoint,
which validates the untyped purchase and donation payloads once at the
boundary and converts them into the domain's tagged settlement types, and
the read schemas returned by the order endpoints.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from django.conf import settings
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from .domain import (
    DonationSettlement, Order, PriceBreakdown, PurchaseSettlement, ShippingAddress, Settlement,
)


def _allowed_countries() -> set[str]:
    return {c.strip().lower() for c in getattr(settings, "SHIPPING_ALLOWED_COUNTRIES", ["nigeria", "ng"])}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class ShippingDetailsIn(_CamelModel):
    """Shipping address of a purchase.

    Fields are checked for presence only, except ``country`` which must be
    one of the fulfilment countries configured in
    ``settings.SHIPPING_ALLOWED_COUNTRIES``.
    """

    full_name: str = Field(alias="fullName", min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(alias="zipCode", min_length=1)
    country: str = Field(min_length=1)
    phone: str = Field(min_length=1)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        if v.lower() not in _allowed_countries():
            raise ValueError("Shipping is not available to this country")
        return v

    def to_domain(self) -> ShippingAddress:
        return ShippingAddress(
            full_name=self.full_name,
            address=self.address,
            city=self.city,
            state=self.state,
            zip_code=self.zip_code,
            country=self.country,
            phone=self.phone,
        )


class PartyMetadataIn(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    username: Optional[str] = None


class PurchaseDataIn(_CamelModel):
    """Purchase payload sent alongside a completed buyer payment.

    Attributes:
        user_id: Pi uid of the buyer.
        seller_id: Pi uid of the seller.
        listing_type: Kind of listing (e.g. ``phone``, ``laptop``).
        listing_id: Listing reference.
        product_price, logistics_fee, platform_fee: Non-negative price
            breakdown computed by the client, within the precision of the
            order columns (20 digits, 7 decimal places).
        total_amount: Optional total; must equal the breakdown sum.
    """

    user_id: str = Field(alias="userId", min_length=1)
    seller_id: str = Field(alias="sellerId", min_length=1)
    listing_type: str = Field(alias="listingType", min_length=1)
    listing_id: str = Field(alias="listingId", min_length=1)
    product_price: Decimal = Field(alias="productPrice", ge=0, max_digits=20, decimal_places=7)
    logistics_fee: Decimal = Field(alias="logisticsFee", ge=0, max_digits=20, decimal_places=7)
    platform_fee: Decimal = Field(alias="platformFee", ge=0, max_digits=20, decimal_places=7)
    total_amount: Optional[Decimal] = Field(default=None, alias="totalAmount", ge=0, max_digits=20, decimal_places=7)
    shipping_details: ShippingDetailsIn = Field(alias="shippingDetails")
    metadata: PartyMetadataIn = Field(default_factory=PartyMetadataIn)

    @field_validator("listing_id", mode="before")
    @classmethod
    def coerce_listing_id(cls, v):
        return str(v) if isinstance(v, int) else v

    @model_validator(mode="after")
    def validate_total(self) -> "PurchaseDataIn":
        expected = self.product_price + self.logistics_fee + self.platform_fee
        if self.total_amount is not None and self.total_amount != expected:
            raise ValueError("totalAmount does not match productPrice + logisticsFee + platformFee")
        return self

    def to_domain(self) -> PurchaseSettlement:
        return PurchaseSettlement(
            buyer_uid=self.user_id,
            seller_uid=self.seller_id,
            listing_type=self.listing_type,
            listing_id=self.listing_id,
            prices=PriceBreakdown(
                product_price=self.product_price,
                logistics_fee=self.logistics_fee,
                platform_fee=self.platform_fee,
            ),
            shipping=self.shipping_details.to_domain(),
            buyer_username=self.metadata.username,
        )


class DonationDataIn(_CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    amount: Decimal = Field(gt=0, max_digits=20, decimal_places=7)
    memo: Optional[str] = None
    metadata: dict = Field(default_factory=dict)

    def to_domain(self) -> DonationSettlement:
        return DonationSettlement(
            user_uid=self.user_id,
            amount=self.amount,
            memo=self.memo,
            metadata=self.metadata,
            username=self.metadata.get("username"),
        )


class CompletePaymentDTO(_CamelModel):
    """Body of the payment-completion endpoint.

    At most one of ``purchase_data`` and ``donation_data`` may be present.
    """

    payment_id: str = Field(alias="paymentId", min_length=1)
    txid: str = Field(min_length=1)
    purchase_data: Optional[PurchaseDataIn] = Field(default=None, alias="purchaseData")
    donation_data: Optional[DonationDataIn] = Field(default=None, alias="donationData")

    @model_validator(mode="after")
    def validate_single_payload(self) -> "CompletePaymentDTO":
        if self.purchase_data is not None and self.donation_data is not None:
            raise ValueError("Send either purchaseData or donationData, not both")
        return self

    def to_settlement(self) -> Settlement | None:
        if self.purchase_data is not None:
            return self.purchase_data.to_domain()
        if self.donation_data is not None:
            return self.donation_data.to_domain()
        return None


class OrderReadDTO(BaseModel):
    """Read model of an order as returned by the API."""

    id: UUID
    status: str
    buyer_id: str
    seller_id: str
    listing_type: str
    listing_id: str
    amount: Decimal
    product_price: Decimal
    logistics_fee: Decimal
    platform_fee: Decimal
    pi_payment_id: Optional[str] = None
    txid: Optional[str] = None
    seller_payment_id: Optional[str] = None
    seller_txid: Optional[str] = None
    shipping_address: Optional[dict] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_serializer("amount", "product_price", "logistics_fee", "platform_fee")
    def serialize_money(self, v: Decimal) -> str:
        # strip storage padding: 106.0500000 -> 106.05
        return format(v.normalize(), "f")

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            status=order.status.value,
            buyer_id=order.buyer.uid,
            seller_id=order.seller.uid,
            listing_type=order.listing_type,
            listing_id=order.listing_id,
            amount=order.amount,
            product_price=order.prices.product_price,
            logistics_fee=order.prices.logistics_fee,
            platform_fee=order.prices.platform_fee,
            pi_payment_id=order.pi_payment_id,
            txid=order.txid,
            seller_payment_id=order.seller_payment_id,
            seller_txid=order.seller_txid,
            shipping_address=order.shipping.as_payload(),
            notes=order.notes,
            created_at=order.created_at,
            completed_at=order.completed_at,
        )


class DonationReadDTO(BaseModel):
    id: int
    user_id: str
    amount: Decimal
    pi_payment_id: str
    txid: str
    status: str
    memo: Optional[str] = None

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return format(v.normalize(), "f")
