"""Repository layer for settlement persistence.

This module contains the Django ORM implementations of the settlement
ports: orders, parties, donations and the logistics messenger. The
repositories map between ORM rows and the domain dataclasses so the domain
layer stays decoupled from Django ORM details.
"""

import logging

from django.db import transaction, IntegrityError
from django.db.models import F
from django.utils import timezone

from .domain import (
    Order, OrderStatus, Donation, Party, PartyRole, PriceBreakdown, ShippingAddress,
)
from .models import OrderModel, PiUser, DonationModel, ChatModel, MessageModel

logger = logging.getLogger(__name__)


def _party(row: PiUser) -> Party:
    return Party(id=row.id, uid=row.user_uid, username=row.pi_username, role=PartyRole(row.role))


def order_from_row(row: OrderModel) -> Order:
    return Order(
        id=row.id,
        buyer=_party(row.buyer),
        seller=_party(row.seller),
        listing_type=row.listing_type,
        listing_id=row.listing_id,
        prices=PriceBreakdown(
            product_price=row.product_price,
            logistics_fee=row.logistics_fee,
            platform_fee=row.platform_fee,
        ),
        shipping=ShippingAddress.from_payload(row.shipping_address or {}),
        pi_payment_id=row.pi_payment_id,
        txid=row.txid,
        status=OrderStatus(row.status),
        seller_payment_id=row.seller_payment_id,
        seller_txid=row.seller_txid,
        notes=row.notes,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


def _donation(row: DonationModel) -> Donation:
    return Donation(
        id=row.id,
        donor=_party(row.donor),
        amount=row.amount,
        pi_payment_id=row.pi_payment_id,
        txid=row.txid,
        status=row.status,
        memo=row.memo,
        metadata=row.metadata or {},
        created_at=row.created_at,
    )


class PartyDirectory:
    """Looks up marketplace users by Pi uid, creating placeholders on demand."""

    def ensure(self, uid: str, role: PartyRole, username: str | None = None) -> Party:
        row, created = PiUser.objects.get_or_create(
            user_uid=uid,
            defaults={
                "pi_username": username or f"user_{uid[:8]}",
                "role": PartyRole(role).value,
                "pi_authenticated_at": timezone.now(),
            },
        )
        if created:
            logger.info("placeholder user created", extra={"user_uid": uid, "role": row.role})
        return _party(row)


class OrderRepository:
    """Repository that persists Order domain objects using Django ORM.

    Inserts are de-duplicated by the unique ``pi_payment_id`` column and
    status updates are single conditional UPDATE statements that only apply
    while the order is still PAID.
    """

    def insert_paid(self, order: Order) -> tuple[Order, bool]:
        """Persist a new PAID order, or return the one already stored.

        Args:
            order: Domain order to persist; ``id`` is ignored.

        Returns:
            tuple[Order, bool]: The stored order and True when this call
            created it, False when an order for the same buyer payment id
            already existed.
        """
        try:
            # Savepoint: an IntegrityError only rolls back this block.
            with transaction.atomic():
                row = OrderModel.objects.create(
                    buyer_id=order.buyer.id,
                    seller_id=order.seller.id,
                    listing_type=order.listing_type,
                    listing_id=order.listing_id,
                    amount=order.amount,
                    product_price=order.prices.product_price,
                    logistics_fee=order.prices.logistics_fee,
                    platform_fee=order.prices.platform_fee,
                    pi_payment_id=order.pi_payment_id,
                    txid=order.txid,
                    status=OrderStatus.PAID.value,
                    shipping_address=order.shipping.as_payload(),
                )
        except IntegrityError:
            existing = None
            if order.pi_payment_id:
                existing = (
                    OrderModel.objects.select_related("buyer", "seller")
                    .filter(pi_payment_id=order.pi_payment_id)
                    .first()
                )
            if existing is None:
                raise
            return order_from_row(existing), False
        return self.get(row.id), True

    def get(self, order_id) -> Order:
        return order_from_row(OrderModel.objects.select_related("buyer", "seller").get(id=order_id))

    def mark_completed(self, order_id, seller_payment_id: str, seller_txid: str) -> Order:
        return self._transition(
            order_id,
            status=OrderStatus.COMPLETED.value,
            seller_payment_id=seller_payment_id,
            seller_txid=seller_txid,
            completed_at=timezone.now(),
        )

    def mark_a2u_failed(self, order_id, notes: str) -> Order:
        return self._transition(order_id, status=OrderStatus.A2U_FAILED.value, notes=notes)

    def _transition(self, order_id, **fields) -> Order:
        updated = (
            OrderModel.objects
            .filter(id=order_id, status=OrderStatus.PAID.value)
            .update(updated_at=timezone.now(), **fields)
        )
        if not updated:
            logger.warning(
                "order no longer paid, status update skipped",
                extra={"order_id": str(order_id), "target_status": fields.get("status")},
            )
        return self.get(order_id)


class DonationRepository:
    def record(self, donation: Donation) -> tuple[Donation, bool]:
        try:
            with transaction.atomic():
                row = DonationModel.objects.create(
                    donor_id=donation.donor.id,
                    amount=donation.amount,
                    pi_payment_id=donation.pi_payment_id,
                    txid=donation.txid,
                    status=donation.status,
                    memo=donation.memo,
                    metadata=donation.metadata,
                )
        except IntegrityError:
            existing = DonationModel.objects.select_related("donor").filter(
                pi_payment_id=donation.pi_payment_id
            ).first()
            if existing is None:
                raise
            return _donation(existing), False
        return self.get(row.id), True

    def get(self, donation_id) -> Donation:
        return _donation(DonationModel.objects.select_related("donor").get(id=donation_id))


LOGISTICS_TEMPLATE = """Order Logistics Details

Shipping Address:
{full_name}
{address}
{city}, {state} {zip_code}
{country}
Phone: {phone}

Payment Status:
{payout_line}
Platform fee ({fee}) has been collected
Order is ready for processing

Next Steps:
1. Seller will prepare your order for shipment
2. You'll receive tracking information once shipped
3. Contact seller for any questions about your order

Order ID: {order_id}"""


def render_logistics_message(order: Order) -> str:
    """Render the buyer-facing logistics message for a settled order."""
    if order.status == OrderStatus.COMPLETED:
        payout_line = "Payment received and seller has been paid"
    else:
        payout_line = "Payment received; seller payout is pending review"
    s = order.shipping
    return LOGISTICS_TEMPLATE.format(
        full_name=s.full_name,
        address=s.address,
        city=s.city,
        state=s.state,
        zip_code=s.zip_code,
        country=s.country,
        phone=s.phone,
        payout_line=payout_line,
        fee=format(order.prices.platform_fee.normalize(), "f"),
        order_id=order.id,
    )


class ChatMessenger:
    """Posts the logistics message into the buyer/seller order chat."""

    last_message = "Order placed - logistics details sent"

    def send_logistics(self, buyer: Party, seller: Party, order: Order) -> None:
        now = timezone.now()
        with transaction.atomic():
            chat, _ = ChatModel.objects.get_or_create(
                sender_id=buyer.id,
                receiver_id=seller.id,
                listing_type="order",
                listing_id=str(order.id),
                defaults={"last_message": self.last_message, "last_message_at": now},
            )
            MessageModel.objects.create(
                chat=chat,
                sender_id=seller.id,
                receiver_id=buyer.id,
                content=render_logistics_message(order),
                message_type="logistics",
            )
            ChatModel.objects.filter(id=chat.id).update(
                last_message=self.last_message,
                last_message_at=now,
                unread_count=F("unread_count") + 1,
            )
