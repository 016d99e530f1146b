from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone

import tickets.fields
import tickets.models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="TicketType",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=150)),
                ("description", models.TextField(blank=True)),
                ("price", models.PositiveIntegerField()),
                ("is_active", models.BooleanField(default=True)),
                ("includes_onsite", models.BooleanField(default=True)),
                ("includes_online", models.BooleanField(default=False)),
                ("includes_party", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["price", "id"]},
        ),
        migrations.CreateModel(
            name="PromoCode",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(max_length=50, unique=True)),
                ("name", models.CharField(blank=True, max_length=150)),
                ("category", models.CharField(blank=True, max_length=50)),
                ("discount_type", models.CharField(choices=[("free_all", "Free (all)"), ("member_price", "Member price"), ("fixed_price", "Fixed price"), ("free_venue", "Free venue"), ("free_ondemand", "Free on-demand"), ("exclude_party", "Exclude party")], max_length=20)),
                ("fixed_price", models.PositiveIntegerField(blank=True, null=True)),
                ("max_total_uses", models.PositiveIntegerField(blank=True, null=True)),
                ("max_uses_per_user", models.PositiveIntegerField(blank=True, null=True)),
                ("current_uses", models.PositiveIntegerField(default=0)),
                ("valid_from", models.DateTimeField(default=django.utils.timezone.now)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["code"]},
        ),
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_number", models.CharField(default=tickets.models.generate_order_number, editable=False, max_length=20, unique=True)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("paid", "Paid"), ("cancelled", "Cancelled"), ("refunded", "Refunded")], default="pending", max_length=20)),
                ("payment_method", models.CharField(choices=[("card", "Card"), ("bank_transfer", "Bank transfer"), ("invoice", "Invoice")], default="card", max_length=20)),
                ("currency", models.CharField(default=tickets.models.default_currency, max_length=3)),
                ("subtotal", models.PositiveIntegerField(default=0)),
                ("discount", models.PositiveIntegerField(default=0)),
                ("tax", models.PositiveIntegerField(default=0)),
                ("total", models.PositiveIntegerField(default=0)),
                ("stripe_checkout_session_id", models.CharField(blank=True, max_length=255)),
                ("stripe_invoice_id", models.CharField(blank=True, max_length=255)),
                ("stripe_payment_intent_id", tickets.fields.EncryptedCharField(blank=True, max_length=255)),
                ("invoice_url", models.URLField(blank=True, max_length=500)),
                ("invoice_pdf_url", models.URLField(blank=True, max_length=500)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("purchaser", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="orders", to=settings.AUTH_USER_MODEL)),
                ("promo_code", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="orders", to="tickets.promocode")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["status", "-updated_at"], name="ord_status_upd_idx"),
                    models.Index(fields=["purchaser", "-created_at"], name="ord_purchaser_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("discount__lte", models.F("subtotal"))), name="order_discount_within_subtotal"),
                    models.CheckConstraint(condition=models.Q(("total", models.F("subtotal") - models.F("discount") + models.F("tax"))), name="order_total_matches_parts"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("unit_price", models.PositiveIntegerField()),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="items", to="tickets.order")),
                ("ticket_type", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="order_items", to="tickets.tickettype")),
            ],
            options={
                "ordering": ["id"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity__gte", 1)), name="order_item_quantity_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PromoCodeUse",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="promo_code_uses", to="tickets.order")),
                ("promo_code", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="uses", to="tickets.promocode")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="promo_code_uses", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["promo_code", "user"], name="promo_use_code_user_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("order",), name="unique_promo_use_per_order"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Ticket",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("ticket_number", models.CharField(default=tickets.models.generate_ticket_number, editable=False, max_length=20, unique=True)),
                ("status", models.CharField(choices=[("unassigned", "Unassigned"), ("invited", "Invited"), ("assigned", "Assigned")], default="unassigned", max_length=20)),
                ("invite_email", models.EmailField(blank=True, max_length=254)),
                ("invite_token", models.CharField(blank=True, max_length=128, null=True, unique=True)),
                ("invite_sent_at", models.DateTimeField(blank=True, null=True)),
                ("assigned_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("attendee", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="assigned_tickets", to=settings.AUTH_USER_MODEL)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="tickets", to="tickets.order")),
                ("order_item", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="tickets", to="tickets.orderitem")),
                ("purchaser", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="purchased_tickets", to=settings.AUTH_USER_MODEL)),
                ("ticket_type", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="tickets", to="tickets.tickettype")),
            ],
            options={
                "ordering": ["id"],
                "indexes": [
                    models.Index(fields=["purchaser", "status"], name="tkt_purchaser_status_idx"),
                    models.Index(fields=["attendee"], name="tkt_attendee_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("attendee__isnull", True), ("invite_token__isnull", True), ("status", "unassigned")),
                            models.Q(("attendee__isnull", True), ("invite_token__isnull", False), ("status", "invited")),
                            models.Q(("attendee__isnull", False), ("invite_token__isnull", True), ("status", "assigned")),
                            _connector="OR",
                        ),
                        name="ticket_status_matches_assignment",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderAuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("action", models.CharField(max_length=100)),
                ("message", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("actor", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="order_audit_logs", to=settings.AUTH_USER_MODEL)),
                ("order", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="tickets.order")),
                ("ticket", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to="tickets.ticket")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["-created_at"], name="ordlog_created_idx"),
                    models.Index(fields=["action", "-created_at"], name="ordlog_action_created_idx"),
                ],
            },
        ),
    ]
