from uuid import uuid4

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from .fields import EncryptedCharField


def generate_order_number() -> str:
    return f"ORD-{uuid4().hex[:12].upper()}"


def generate_ticket_number() -> str:
    return f"TKT-{uuid4().hex[:12].upper()}"


def default_currency() -> str:
    return settings.TICKET_CURRENCY


class TicketType(models.Model):
    name = models.CharField(max_length=150)
    description = models.TextField(blank=True)
    price = models.PositiveIntegerField()
    is_active = models.BooleanField(default=True)  # pyright: ignore[reportArgumentType]
    includes_onsite = models.BooleanField(default=True)  # pyright: ignore[reportArgumentType]
    includes_online = models.BooleanField(default=False)  # pyright: ignore[reportArgumentType]
    includes_party = models.BooleanField(default=False)  # pyright: ignore[reportArgumentType]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["price", "id"]

    def __str__(self) -> str:
        return str(self.name)


class PromoCode(models.Model):
    class DiscountType(models.TextChoices):
        FREE_ALL = "free_all", "Free (all)"
        MEMBER_PRICE = "member_price", "Member price"
        FIXED_PRICE = "fixed_price", "Fixed price"
        FREE_VENUE = "free_venue", "Free venue"
        FREE_ONDEMAND = "free_ondemand", "Free on-demand"
        EXCLUDE_PARTY = "exclude_party", "Exclude party"

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=150, blank=True)
    category = models.CharField(max_length=50, blank=True)
    discount_type = models.CharField(max_length=20, choices=DiscountType.choices)
    fixed_price = models.PositiveIntegerField(null=True, blank=True)
    max_total_uses = models.PositiveIntegerField(null=True, blank=True)
    max_uses_per_user = models.PositiveIntegerField(null=True, blank=True)
    current_uses = models.PositiveIntegerField(default=0)  # type: ignore[arg-type]
    valid_from = models.DateTimeField(default=timezone.now)
    valid_until = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)  # pyright: ignore[reportArgumentType]
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["code"]

    def save(self, *args, **kwargs):
        self.code = (self.code or "").strip().upper()
        super().save(*args, **kwargs)

    def clean(self):
        if self.discount_type == self.DiscountType.FIXED_PRICE and self.fixed_price is None:
            raise ValidationError({"fixed_price": "Fixed price promo codes need a price."})

    def __str__(self) -> str:
        return str(self.code)


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PAID = "paid", "Paid"
        CANCELLED = "cancelled", "Cancelled"
        REFUNDED = "refunded", "Refunded"

    class PaymentMethod(models.TextChoices):
        CARD = "card", "Card"
        BANK_TRANSFER = "bank_transfer", "Bank transfer"
        INVOICE = "invoice", "Invoice"

    order_number = models.CharField(
        max_length=20,
        unique=True,
        default=generate_order_number,
        editable=False,
    )
    purchaser = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="orders",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    payment_method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.CARD,
    )
    promo_code = models.ForeignKey(
        PromoCode,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )
    currency = models.CharField(max_length=3, default=default_currency)
    subtotal = models.PositiveIntegerField(default=0)  # type: ignore[arg-type]
    discount = models.PositiveIntegerField(default=0)  # type: ignore[arg-type]
    tax = models.PositiveIntegerField(default=0)  # type: ignore[arg-type]
    total = models.PositiveIntegerField(default=0)  # type: ignore[arg-type]
    stripe_checkout_session_id = models.CharField(max_length=255, blank=True)
    stripe_invoice_id = models.CharField(max_length=255, blank=True)
    stripe_payment_intent_id = EncryptedCharField(max_length=255, blank=True)
    invoice_url = models.URLField(max_length=500, blank=True)
    invoice_pdf_url = models.URLField(max_length=500, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status", "-updated_at"], name="ord_status_upd_idx"),
            models.Index(fields=["purchaser", "-created_at"], name="ord_purchaser_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(discount__lte=F("subtotal")),
                name="order_discount_within_subtotal",
            ),
            models.CheckConstraint(
                condition=Q(total=F("subtotal") - F("discount") + F("tax")),
                name="order_total_matches_parts",
            ),
        ]

    def __str__(self) -> str:
        return str(self.order_number)


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    ticket_type = models.ForeignKey(
        TicketType, on_delete=models.PROTECT, related_name="order_items"
    )
    quantity = models.PositiveIntegerField(default=1)  # type: ignore[arg-type]
    unit_price = models.PositiveIntegerField()

    class Meta:
        ordering = ["id"]
        constraints = [
            models.CheckConstraint(
                condition=Q(quantity__gte=1),
                name="order_item_quantity_positive",
            ),
        ]

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def __str__(self) -> str:
        return f"{self.order} - {self.ticket_type} x{self.quantity}"


class PromoCodeUse(models.Model):
    promo_code = models.ForeignKey(PromoCode, on_delete=models.CASCADE, related_name="uses")
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="promo_code_uses",
    )
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="promo_code_uses")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["order"], name="unique_promo_use_per_order"),
        ]
        indexes = [
            models.Index(fields=["promo_code", "user"], name="promo_use_code_user_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.promo_code} - {self.order}"


class Ticket(models.Model):
    class Status(models.TextChoices):
        UNASSIGNED = "unassigned", "Unassigned"
        INVITED = "invited", "Invited"
        ASSIGNED = "assigned", "Assigned"

    ticket_number = models.CharField(
        max_length=20,
        unique=True,
        default=generate_ticket_number,
        editable=False,
    )
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="tickets")
    order_item = models.ForeignKey(
        OrderItem, on_delete=models.PROTECT, related_name="tickets"
    )
    ticket_type = models.ForeignKey(
        TicketType, on_delete=models.PROTECT, related_name="tickets"
    )
    purchaser = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="purchased_tickets",
    )
    attendee = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="assigned_tickets",
    )
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.UNASSIGNED
    )
    invite_email = models.EmailField(blank=True)
    invite_token = models.CharField(max_length=128, unique=True, null=True, blank=True)
    invite_sent_at = models.DateTimeField(null=True, blank=True)
    assigned_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["purchaser", "status"], name="tkt_purchaser_status_idx"),
            models.Index(fields=["attendee"], name="tkt_attendee_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(status="unassigned", attendee__isnull=True, invite_token__isnull=True)
                    | Q(status="invited", attendee__isnull=True, invite_token__isnull=False)
                    | Q(status="assigned", attendee__isnull=False, invite_token__isnull=True)
                ),
                name="ticket_status_matches_assignment",
            ),
        ]

    def __str__(self) -> str:
        return str(self.ticket_number)


class OrderAuditLog(models.Model):
    action = models.CharField(max_length=100)
    message = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="order_audit_logs",
    )
    order = models.ForeignKey(
        Order, on_delete=models.SET_NULL, null=True, blank=True, related_name="audit_logs"
    )
    ticket = models.ForeignKey(
        Ticket, on_delete=models.SET_NULL, null=True, blank=True, related_name="audit_logs"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["-created_at"], name="ordlog_created_idx"),
            models.Index(fields=["action", "-created_at"], name="ordlog_action_created_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Audit log entries are immutable.")
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.action} - {self.created_at:%Y-%m-%d}"
