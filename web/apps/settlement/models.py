import uuid
from django.db import models


class PiUser(models.Model):
    """Marketplace identity keyed by the Pi Network user uid."""

    class Role(models.TextChoices):
        READER = "reader"
        SELLER = "seller"
        ADMIN = "admin"

    user_uid = models.CharField(max_length=128, unique=True)
    pi_username = models.CharField(max_length=128)
    role = models.CharField(max_length=16, choices=Role.choices, default=Role.READER)
    pi_authenticated_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "pi_users"


class OrderModel(models.Model):
    # UUID PK exposed in the API and in A2U memos
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        COMPLETED = "completed"
        A2U_FAILED = "a2u_failed"
        CANCELLED = "cancelled"

    buyer = models.ForeignKey(PiUser, on_delete=models.PROTECT, related_name="purchases")
    seller = models.ForeignKey(PiUser, on_delete=models.PROTECT, related_name="sales")
    listing_type = models.CharField(max_length=32)
    listing_id = models.CharField(max_length=64)

    amount = models.DecimalField(max_digits=20, decimal_places=7)
    product_price = models.DecimalField(max_digits=20, decimal_places=7)
    logistics_fee = models.DecimalField(max_digits=20, decimal_places=7, default=0)
    platform_fee = models.DecimalField(max_digits=20, decimal_places=7, default=0)

    # one order per buyer payment; NULL for orders created outside settlement
    pi_payment_id = models.CharField(max_length=64, unique=True, null=True, blank=True)
    txid = models.CharField(max_length=128, null=True, blank=True)
    seller_payment_id = models.CharField(max_length=64, null=True, blank=True)
    seller_txid = models.CharField(max_length=128, null=True, blank=True)

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    shipping_address = models.JSONField(null=True, blank=True)
    notes = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["status"], name="orders_status_idx")]


class DonationModel(models.Model):
    donor = models.ForeignKey(PiUser, on_delete=models.PROTECT, related_name="donations")
    amount = models.DecimalField(max_digits=20, decimal_places=7)
    pi_payment_id = models.CharField(max_length=64, unique=True)
    txid = models.CharField(max_length=128)
    status = models.CharField(max_length=16, default="completed")
    memo = models.TextField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "donations"
        ordering = ["-created_at"]


class ChatModel(models.Model):
    sender = models.ForeignKey(PiUser, on_delete=models.CASCADE, related_name="chats_started")
    receiver = models.ForeignKey(PiUser, on_delete=models.CASCADE, related_name="chats_received")
    listing_type = models.CharField(max_length=32)
    listing_id = models.CharField(max_length=64)
    last_message = models.TextField(blank=True, default="")
    last_message_at = models.DateTimeField(null=True, blank=True)
    unread_count = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "chats"


class MessageModel(models.Model):
    chat = models.ForeignKey(ChatModel, on_delete=models.CASCADE, related_name="messages")
    sender = models.ForeignKey(PiUser, on_delete=models.CASCADE, related_name="+")
    receiver = models.ForeignKey(PiUser, on_delete=models.CASCADE, related_name="+")
    content = models.TextField()
    message_type = models.CharField(max_length=16, default="text")
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "messages"


class SettlementIntentModel(models.Model):
    """Pre-commit record written before a buyer payment is finalized."""

    class State(models.TextChoices):
        OPENED = "opened"
        FINALIZED = "finalized"
        SETTLED = "settled"
        REJECTED = "rejected"

    payment_id = models.CharField(max_length=64, primary_key=True)
    txid = models.CharField(max_length=128)
    request_hash = models.CharField(max_length=64)
    state = models.CharField(max_length=16, choices=State.choices, default=State.OPENED)
    order_id = models.UUIDField(null=True, blank=True)
    donation_id = models.BigIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "settlement_intents"
