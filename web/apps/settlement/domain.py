"""Domain models, ports and service for payment settlement.

This module contains the dataclasses used as DTOs for orders, donations and
settlement inputs, protocol definitions (ports) for external dependencies
such as the Pi payment gateway, the order store and the messaging layer, and
the domain service that settles a buyer payment and pays the seller.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Protocol, Optional, Union

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEFAULT_PLATFORM_FEE_RATE = Decimal("0.01")


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle of a marketplace order.

    The settlement path starts at PAID and ends at COMPLETED or A2U_FAILED.
    PENDING, SHIPPED, DELIVERED and CANCELLED are driven by seller and
    operator tooling outside the settlement pipeline.
    """

    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    A2U_FAILED = "a2u_failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({
        OrderStatus.SHIPPED, OrderStatus.COMPLETED, OrderStatus.A2U_FAILED, OrderStatus.CANCELLED,
    }),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.A2U_FAILED: frozenset({OrderStatus.SHIPPED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(src: OrderStatus | str, dst: OrderStatus | str) -> bool:
    """Return True when the order state machine allows ``src -> dst``."""
    return OrderStatus(dst) in ORDER_TRANSITIONS[OrderStatus(src)]


class PartyRole(str, Enum):
    READER = "reader"
    SELLER = "seller"
    ADMIN = "admin"


class IntentState(str, Enum):
    """Progress of a settlement attempt keyed by the buyer payment id.

    OPENED is written before the gateway is asked to complete the buyer
    payment, FINALIZED once the gateway accepted it and SETTLED once the
    order or donation is stored. REJECTED records a completion the gateway
    refused. An intent stuck in OPENED or FINALIZED may mark money taken
    on-chain with no local record.
    """

    OPENED = "opened"
    FINALIZED = "finalized"
    SETTLED = "settled"
    REJECTED = "rejected"


# Past these states the fingerprint of a payment id is binding.
LOCKED_INTENT_STATES = frozenset({IntentState.FINALIZED, IntentState.SETTLED})


# ---- Errors ----
class GatewayError(Exception):
    """Raised when the payment network rejects a call.

    Attributes:
        code: Short error code reported by the network (e.g. ``not_found``).
        status_code: HTTP status returned by the network, if any.
    """

    def __init__(self, code: str, message: str = "", status_code: int | None = None):
        super().__init__(message or code)
        self.code = code
        self.status_code = status_code


class PaymentAlreadyCompleted(GatewayError):
    """The payment was completed by an earlier call; safe to treat as success."""

    def __init__(self, message: str = "already_completed", status_code: int | None = None):
        super().__init__("already_completed", message, status_code)


# ---- Entities / DTOs ----
def platform_fee_for(product_price: Decimal, logistics_fee: Decimal,
                     rate: Decimal = DEFAULT_PLATFORM_FEE_RATE) -> Decimal:
    """Compute the platform fee a buyer is charged for a purchase.

    The fee is ``rate`` of the product price plus logistics fee, rounded
    half-up to two decimal places. Callers compute it before the payment is
    created; settlement stores whatever breakdown it receives.
    """
    base = Decimal(product_price) + Decimal(logistics_fee)
    return (base * Decimal(rate)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    """Commercial terms of a purchase.

    Attributes:
        product_price: Listing price.
        logistics_fee: Shipping fee charged by the seller.
        platform_fee: Fee retained by the platform.
    """

    product_price: Decimal
    logistics_fee: Decimal
    platform_fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.product_price + self.logistics_fee + self.platform_fee

    @property
    def seller_payout(self) -> Decimal:
        # platform fee is retained, never forwarded
        return self.product_price + self.logistics_fee


@dataclass(frozen=True)
class ShippingAddress:
    full_name: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: str

    def as_payload(self) -> dict:
        """Return the address in the camelCase shape it was submitted with."""
        return {
            "fullName": self.full_name,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
            "phone": self.phone,
        }

    @classmethod
    def from_payload(cls, data: dict) -> "ShippingAddress":
        return cls(
            full_name=data.get("fullName", ""),
            address=data.get("address", ""),
            city=data.get("city", ""),
            state=data.get("state", ""),
            zip_code=data.get("zipCode", ""),
            country=data.get("country", ""),
            phone=data.get("phone", ""),
        )


@dataclass(frozen=True)
class PurchaseSettlement:
    """A buyer purchase to settle after the buyer payment cleared."""

    buyer_uid: str
    seller_uid: str
    listing_type: str
    listing_id: str
    prices: PriceBreakdown
    shipping: ShippingAddress
    buyer_username: Optional[str] = None


@dataclass(frozen=True)
class DonationSettlement:
    """A donation to record after the donor payment cleared. No payout."""

    user_uid: str
    amount: Decimal
    memo: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    username: Optional[str] = None


Settlement = Union[PurchaseSettlement, DonationSettlement]


@dataclass(frozen=True)
class Party:
    """A buyer, seller or donor known to the marketplace."""

    id: int
    uid: str
    username: str
    role: PartyRole


@dataclass
class Order:
    """Container for order data.

    ``amount`` always equals the sum of the price breakdown; it is derived
    once here and stored as-is by the order store.
    """

    id: object | None
    buyer: Party
    seller: Party
    listing_type: str
    listing_id: str
    prices: PriceBreakdown
    shipping: ShippingAddress
    pi_payment_id: Optional[str] = None
    txid: Optional[str] = None
    status: OrderStatus = OrderStatus.PAID
    seller_payment_id: Optional[str] = None
    seller_txid: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def amount(self) -> Decimal:
        return self.prices.total


@dataclass
class Donation:
    id: object | None
    donor: Party
    amount: Decimal
    pi_payment_id: str
    txid: str
    status: str = "completed"
    memo: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class A2UPaymentSpec:
    """Application-to-user payment request sent to the gateway."""

    amount: Decimal
    memo: str
    metadata: dict
    uid: str


@dataclass
class SettlementIntent:
    payment_id: str
    txid: str
    state: IntentState = IntentState.OPENED
    order_id: object | None = None
    donation_id: object | None = None


@dataclass
class SettlementResult:
    """Outcome of a settlement call.

    Attributes:
        payment_id: Buyer-side payment id.
        order: The stored order for purchases, or None.
        donation: The stored donation for donations, or None.
        replayed: True when the call matched an earlier settlement and no
            new side effects were performed.
    """

    payment_id: str
    order: Optional[Order] = None
    donation: Optional[Donation] = None
    replayed: bool = False


def _canonical(value):
    # 100 and 100.0 are the same amount
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def settlement_fingerprint(txid: str, settlement: Optional[Settlement]) -> dict:
    """Build a JSON-serializable payload identifying a settlement request.

    Amounts are compared by value, so re-serialized decimals such as
    ``100`` and ``100.0`` produce the same fingerprint.
    """
    body: dict = {"txid": txid, "kind": None, "data": None}
    if settlement is not None:
        body["kind"] = type(settlement).__name__
        body["data"] = _canonical(asdict(settlement))
    return json.loads(json.dumps(body, sort_keys=True, default=str))


def payload_hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


# ---- Ports (DIP) ----
class PaymentGatewayPort(Protocol):
    """Port describing the payment network operations used by settlement.

    Every call may raise ``GatewayError`` when the network rejects it, or a
    transport error when the network is unreachable. ``complete_payment``
    raises ``PaymentAlreadyCompleted`` when the payment was completed before.
    """

    def create_payment(self, spec: A2UPaymentSpec) -> str:
        raise NotImplementedError()

    def submit_payment(self, payment_id: str) -> str:
        raise NotImplementedError()

    def complete_payment(self, payment_id: str, txid: str) -> dict:
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Port describing order persistence.

    ``insert_paid`` returns ``(order, created)``; when an order already
    exists for the same buyer payment id the stored order is returned with
    ``created=False``. The ``mark_*`` updates only apply to orders that are
    still PAID and otherwise return the order unchanged.
    """

    def insert_paid(self, order: Order) -> tuple[Order, bool]:
        raise NotImplementedError()

    def mark_completed(self, order_id, seller_payment_id: str, seller_txid: str) -> Order:
        raise NotImplementedError()

    def mark_a2u_failed(self, order_id, notes: str) -> Order:
        raise NotImplementedError()

    def get(self, order_id) -> Order:
        raise NotImplementedError()


class PartyDirectoryPort(Protocol):
    def ensure(self, uid: str, role: PartyRole, username: str | None = None) -> Party:
        """Return the party for ``uid``, creating a placeholder when missing."""
        raise NotImplementedError()


class DonationStorePort(Protocol):
    def record(self, donation: Donation) -> tuple[Donation, bool]:
        raise NotImplementedError()

    def get(self, donation_id) -> Donation:
        raise NotImplementedError()


class MessagingPort(Protocol):
    def send_logistics(self, buyer: Party, seller: Party, order: Order) -> None:
        raise NotImplementedError()


class IntentLogPort(Protocol):
    """Port describing the settlement intent log.

    ``open`` returns ``(existing, intent)`` and raises
    ``ValueError("IDEMPOTENCY_CONFLICT")`` when the payment id was already
    finalized or settled with a different payload. An OPENED or REJECTED
    intent is re-keyed to the new txid and payload instead.
    """

    def open(self, payment_id: str, txid: str, payload: dict) -> tuple[bool, SettlementIntent]:
        raise NotImplementedError()

    def mark(self, payment_id: str, state: IntentState, order_id=None, donation_id=None) -> SettlementIntent:
        raise NotImplementedError()


# ---- Domain service ----
class SettlementService:
    """Domain service that settles cleared buyer payments.

    The service finalizes the buyer payment with the gateway, records the
    order (or donation), pays the seller through an A2U payment and
    reconciles the order status with the payout outcome. Ports are injected
    so tests and local development can substitute the gateway and stores.
    """

    def __init__(
        self,
        gateway: PaymentGatewayPort,
        orders: OrderStorePort,
        parties: PartyDirectoryPort,
        intents: IntentLogPort,
        messenger: MessagingPort | None = None,
        donations: DonationStorePort | None = None,
    ):
        self.gateway = gateway
        self.orders = orders
        self.parties = parties
        self.intents = intents
        self.messenger = messenger
        self.donations = donations

    def complete_settlement(self, payment_id: str, txid: str,
                            settlement: Settlement | None = None) -> SettlementResult:
        """Settle a buyer payment that cleared on the payment network.

        Finalization and persistence errors propagate to the caller. A2U
        payout and messaging errors are absorbed: the payout outcome is
        recorded on the order and messaging failures are only logged.

        Args:
            payment_id: Gateway id of the buyer payment.
            txid: Blockchain transaction id of the buyer payment.
            settlement: Purchase or donation details, or None to only
                finalize the payment.

        Returns:
            SettlementResult describing the stored order or donation.

        Raises:
            ValueError: 'MISSING_PAYMENT_REFERENCE' when an id is empty,
                'IDEMPOTENCY_CONFLICT' when the payment id was settled with a
                different payload.
            GatewayError: When the gateway rejects the buyer payment.
        """
        if not payment_id or not txid:
            raise ValueError("MISSING_PAYMENT_REFERENCE")

        existing, intent = self.intents.open(payment_id, txid, settlement_fingerprint(txid, settlement))
        if existing and intent.state == IntentState.SETTLED:
            logger.info("settlement replayed", extra={"payment_id": payment_id})
            return self._replay(intent)

        # 1) Finalize buyer payment
        try:
            self._finalize_buyer_payment(payment_id, txid)
        except GatewayError:
            # nothing was taken; a corrected retry may reuse the payment id
            self.intents.mark(payment_id, IntentState.REJECTED)
            raise
        self.intents.mark(payment_id, IntentState.FINALIZED)

        # 2-5) Record and pay out
        if isinstance(settlement, PurchaseSettlement):
            result = self._settle_purchase(payment_id, txid, settlement)
            self.intents.mark(payment_id, IntentState.SETTLED, order_id=result.order.id)
        elif isinstance(settlement, DonationSettlement):
            result = self._settle_donation(payment_id, txid, settlement)
            self.intents.mark(payment_id, IntentState.SETTLED, donation_id=result.donation.id)
        else:
            logger.info("no settlement payload, payment finalized only", extra={"payment_id": payment_id})
            result = SettlementResult(payment_id=payment_id)
            self.intents.mark(payment_id, IntentState.SETTLED)
        return result

    def _finalize_buyer_payment(self, payment_id: str, txid: str) -> None:
        try:
            self.gateway.complete_payment(payment_id, txid)
        except PaymentAlreadyCompleted:
            logger.warning("buyer payment already completed, continuing", extra={"payment_id": payment_id})
            return
        logger.info("buyer payment completed", extra={"payment_id": payment_id, "txid": txid})

    def _settle_purchase(self, payment_id: str, txid: str, purchase: PurchaseSettlement) -> SettlementResult:
        buyer = self.parties.ensure(
            purchase.buyer_uid, PartyRole.READER,
            purchase.buyer_username or f"user_{purchase.buyer_uid[:8]}",
        )
        seller = self.parties.ensure(purchase.seller_uid, PartyRole.SELLER, f"seller_{purchase.seller_uid[:8]}")

        draft = Order(
            id=None,
            buyer=buyer,
            seller=seller,
            listing_type=purchase.listing_type,
            listing_id=purchase.listing_id,
            prices=purchase.prices,
            shipping=purchase.shipping,
            pi_payment_id=payment_id,
            txid=txid,
            status=OrderStatus.PAID,
        )
        order, created = self.orders.insert_paid(draft)
        if not created:
            logger.warning(
                "order already recorded for payment, skipping payout",
                extra={"payment_id": payment_id, "order_id": str(order.id)},
            )
            return SettlementResult(payment_id=payment_id, order=order, replayed=True)

        order = self._pay_seller(order, purchase)
        self._notify_buyer(buyer, seller, order)
        return SettlementResult(payment_id=payment_id, order=order)

    def _pay_seller(self, order: Order, purchase: PurchaseSettlement) -> Order:
        """Run the A2U create/submit/complete chain and record its outcome."""
        spec = A2UPaymentSpec(
            amount=order.prices.seller_payout,
            memo=f"Payment for {order.listing_type} order #{order.id}",
            metadata={
                "orderId": str(order.id),
                "buyerId": purchase.buyer_uid,
                "sellerId": purchase.seller_uid,
                "listingType": purchase.listing_type,
                "listingId": purchase.listing_id,
                "type": "seller_payment",
            },
            uid=purchase.seller_uid,
        )
        a2u_payment_id = a2u_txid = None
        try:
            a2u_payment_id = self.gateway.create_payment(spec)
            a2u_txid = self.gateway.submit_payment(a2u_payment_id)
            try:
                self.gateway.complete_payment(a2u_payment_id, a2u_txid)
            except PaymentAlreadyCompleted:
                pass
            completed = self.orders.mark_completed(order.id, a2u_payment_id, a2u_txid)
        except Exception as e:
            logger.exception(
                "seller payout failed",
                extra={"order_id": str(order.id), "seller_payment_id": a2u_payment_id, "seller_txid": a2u_txid},
            )
            notes = f"A2U payment failed: {e}"
            if a2u_payment_id:
                # seller may already hold the funds; keep what is needed to reconcile
                notes += f" (A2U payment {a2u_payment_id}, txid {a2u_txid or 'none'})"
            return self._record_payout_failure(order, notes)

        logger.info(
            "seller paid",
            extra={"order_id": str(order.id), "seller_payment_id": a2u_payment_id, "amount": str(spec.amount)},
        )
        return completed

    def _record_payout_failure(self, order: Order, notes: str) -> Order:
        try:
            return self.orders.mark_a2u_failed(order.id, notes)
        except Exception:
            logger.exception("payout failure not recorded", extra={"order_id": str(order.id), "notes": notes})
            return order

    def _notify_buyer(self, buyer: Party, seller: Party, order: Order) -> None:
        if self.messenger is None:
            return
        try:
            self.messenger.send_logistics(buyer, seller, order)
        except Exception:
            logger.exception("logistics message not sent", extra={"order_id": str(order.id)})

    def _settle_donation(self, payment_id: str, txid: str, donation: DonationSettlement) -> SettlementResult:
        if self.donations is None:
            raise ValueError("DONATIONS_UNSUPPORTED")
        donor = self.parties.ensure(
            donation.user_uid, PartyRole.READER,
            donation.username or f"user_{donation.user_uid[:8]}",
        )
        stored, created = self.donations.record(Donation(
            id=None,
            donor=donor,
            amount=donation.amount,
            pi_payment_id=payment_id,
            txid=txid,
            memo=donation.memo,
            metadata=dict(donation.metadata),
        ))
        return SettlementResult(payment_id=payment_id, donation=stored, replayed=not created)

    def _replay(self, intent: SettlementIntent) -> SettlementResult:
        result = SettlementResult(payment_id=intent.payment_id, replayed=True)
        if intent.order_id is not None:
            result.order = self.orders.get(intent.order_id)
        if intent.donation_id is not None and self.donations is not None:
            result.donation = self.donations.get(intent.donation_id)
        return result
