import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="PiUser",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("user_uid", models.CharField(max_length=128, unique=True)),
                ("pi_username", models.CharField(max_length=128)),
                ("role", models.CharField(
                    choices=[("reader", "Reader"), ("seller", "Seller"), ("admin", "Admin")],
                    default="reader", max_length=16,
                )),
                ("pi_authenticated_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={"db_table": "pi_users"},
        ),
        migrations.CreateModel(
            name="SettlementIntentModel",
            fields=[
                ("payment_id", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("txid", models.CharField(max_length=128)),
                ("request_hash", models.CharField(max_length=64)),
                ("state", models.CharField(
                    choices=[("opened", "Opened"), ("finalized", "Finalized"), ("settled", "Settled")],
                    default="opened", max_length=16,
                )),
                ("order_id", models.UUIDField(blank=True, null=True)),
                ("donation_id", models.BigIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"db_table": "settlement_intents"},
        ),
        migrations.CreateModel(
            name="OrderModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("listing_type", models.CharField(max_length=32)),
                ("listing_id", models.CharField(max_length=64)),
                ("amount", models.DecimalField(decimal_places=7, max_digits=20)),
                ("product_price", models.DecimalField(decimal_places=7, max_digits=20)),
                ("logistics_fee", models.DecimalField(decimal_places=7, default=0, max_digits=20)),
                ("platform_fee", models.DecimalField(decimal_places=7, default=0, max_digits=20)),
                ("pi_payment_id", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("txid", models.CharField(blank=True, max_length=128, null=True)),
                ("seller_payment_id", models.CharField(blank=True, max_length=64, null=True)),
                ("seller_txid", models.CharField(blank=True, max_length=128, null=True)),
                ("status", models.CharField(
                    choices=[
                        ("pending", "Pending"), ("paid", "Paid"), ("shipped", "Shipped"),
                        ("delivered", "Delivered"), ("completed", "Completed"),
                        ("a2u_failed", "A2U Failed"), ("cancelled", "Cancelled"),
                    ],
                    default="pending", max_length=16,
                )),
                ("shipping_address", models.JSONField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("buyer", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="purchases", to="settlement.piuser",
                )),
                ("seller", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="sales", to="settlement.piuser",
                )),
            ],
            options={
                "db_table": "orders",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status"], name="orders_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="DonationModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=7, max_digits=20)),
                ("pi_payment_id", models.CharField(max_length=64, unique=True)),
                ("txid", models.CharField(max_length=128)),
                ("status", models.CharField(default="completed", max_length=16)),
                ("memo", models.TextField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("donor", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT, related_name="donations", to="settlement.piuser",
                )),
            ],
            options={"db_table": "donations", "ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="ChatModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("listing_type", models.CharField(max_length=32)),
                ("listing_id", models.CharField(max_length=64)),
                ("last_message", models.TextField(blank=True, default="")),
                ("last_message_at", models.DateTimeField(blank=True, null=True)),
                ("unread_count", models.PositiveIntegerField(default=0)),
                ("sender", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="chats_started", to="settlement.piuser",
                )),
                ("receiver", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="chats_received", to="settlement.piuser",
                )),
            ],
            options={"db_table": "chats"},
        ),
        migrations.CreateModel(
            name="MessageModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("content", models.TextField()),
                ("message_type", models.CharField(default="text", max_length=16)),
                ("is_read", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("chat", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="messages", to="settlement.chatmodel",
                )),
                ("sender", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="+", to="settlement.piuser",
                )),
                ("receiver", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name="+", to="settlement.piuser",
                )),
            ],
            options={"db_table": "messages"},
        ),
    ]
