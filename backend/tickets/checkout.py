"""Cart to order conversion and payment provider hand-off."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from . import payments
from .audit import log_order_event
from .errors import ExternalServiceError, ValidationError
from .models import Order, OrderItem, TicketType
from .pricing import (
    PricedLine,
    build_stripe_line_items,
    calculate_pricing,
    discount_for_promo,
)
from .promotions import validate_promo_code_id
from .services import confirm_order_payment

logger = logging.getLogger(__name__)

COMPANY_FIELDS = ("company_name", "company_address", "company_phone")


@dataclass
class CheckoutResult:
    order: Order
    url: str = ""
    invoice_url: str = ""
    invoice_pdf_url: str = ""


def _resolve_lines(items: Iterable[Mapping[str, Any]]) -> list[PricedLine]:
    items = list(items)
    if not items:
        raise ValidationError("Your cart is empty.")
    for item in items:
        if int(item.get("quantity") or 0) < 1:
            raise ValidationError("Each cart item needs a quantity of at least 1.")

    ticket_type_ids = [item["ticket_type_id"] for item in items]
    ticket_types = {
        ticket_type.pk: ticket_type
        for ticket_type in TicketType.objects.filter(pk__in=ticket_type_ids, is_active=True)
    }
    lines = []
    for item in items:
        ticket_type = ticket_types.get(item["ticket_type_id"])
        if ticket_type is None:
            raise ValidationError(f"Invalid ticket type: {item['ticket_type_id']}")
        lines.append(
            PricedLine(
                ticket_type_id=ticket_type.pk,
                name=ticket_type.name,
                unit_price=ticket_type.price,
                quantity=int(item["quantity"]),
            )
        )
    return lines


def _check_individual_limit(purchaser, lines: list[PricedLine]) -> None:
    if purchaser.is_company:
        return
    held = (
        OrderItem.objects.filter(
            order__purchaser=purchaser,
            order__status__in=[Order.Status.PENDING, Order.Status.PAID],
        ).aggregate(total=Sum("quantity"))["total"]
        or 0
    )
    requested = sum(line.quantity for line in lines)
    if held + requested > settings.INDIVIDUAL_TICKET_LIMIT:
        raise ValidationError(
            f"Individual accounts can purchase at most {settings.INDIVIDUAL_TICKET_LIMIT} ticket(s)."
        )


def _apply_company_info(purchaser, company_info: Mapping[str, str] | None) -> list[str]:
    """Set submitted company details on ``purchaser`` without saving.

    Returns the changed field names; the caller persists them once the
    payment provider has accepted the order.
    """
    if not purchaser.is_company:
        raise ValidationError("Invoice payment is only available for company accounts.")
    company_info = company_info or {}
    update_fields = []
    for field in COMPANY_FIELDS:
        value = (company_info.get(field) or "").strip()
        if value and value != getattr(purchaser, field):
            setattr(purchaser, field, value)
            update_fields.append(field)
    missing = [field for field in COMPANY_FIELDS if not (getattr(purchaser, field) or "").strip()]
    if missing:
        raise ValidationError("Company name, address and phone are required for invoice payment.")
    return update_fields


def _save_company_info(purchaser, changed_fields: list[str]) -> None:
    if changed_fields:
        purchaser.save(update_fields=[*changed_fields, "updated_at"])


def _discard_order(order: Order) -> None:
    with transaction.atomic():
        order.items.all().delete()
        order.delete()


def _start_payment(order: Order, lines: list[PricedLine], pricing, *, purchaser, base_url: str) -> CheckoutResult:
    metadata = {
        "order_id": str(order.pk),
        "user_id": str(purchaser.pk),
        "order_number": order.order_number,
    }
    line_items = build_stripe_line_items(lines, pricing, currency=order.currency)
    success_url = f"{base_url}/mypage/orders/{order.pk}?success=true"
    cancel_url = f"{base_url}/ticket?cancelled=true"

    if order.payment_method == Order.PaymentMethod.INVOICE:
        customer_id = payments.get_or_create_customer(purchaser)
        invoice = payments.create_invoice(
            customer_id=customer_id,
            line_items=line_items,
            currency=order.currency,
            due_date=payments.invoice_due_date(timezone.localdate()),
            metadata=metadata,
        )
        order.stripe_invoice_id = invoice.invoice_id
        order.invoice_url = invoice.hosted_url
        order.invoice_pdf_url = invoice.pdf_url
        order.save(update_fields=["stripe_invoice_id", "invoice_url", "invoice_pdf_url", "updated_at"])
        return CheckoutResult(
            order=order,
            invoice_url=invoice.hosted_url,
            invoice_pdf_url=invoice.pdf_url,
        )

    if order.payment_method == Order.PaymentMethod.BANK_TRANSFER:
        session = payments.create_checkout_session(
            line_items=line_items,
            payment_method_types=["customer_balance"],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_id=payments.get_or_create_customer(purchaser),
            expires_at=payments.bank_transfer_expiry(),
        )
    else:
        session = payments.create_checkout_session(
            line_items=line_items,
            payment_method_types=["card"],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=purchaser.email or None,
        )

    update_fields = ["stripe_checkout_session_id", "updated_at"]
    order.stripe_checkout_session_id = session.session_id
    if session.payment_intent_id:
        order.stripe_payment_intent_id = session.payment_intent_id
        update_fields.append("stripe_payment_intent_id")
    order.save(update_fields=update_fields)
    return CheckoutResult(order=order, url=session.url)


def create_checkout(
    *,
    purchaser,
    items: Iterable[Mapping[str, Any]],
    payment_method: str,
    promo_code_id=None,
    company_info: Mapping[str, str] | None = None,
    base_url: str,
) -> CheckoutResult:
    if payment_method not in Order.PaymentMethod.values:
        raise ValidationError("Unsupported payment method.")

    lines = _resolve_lines(items)

    promo_code = None
    if promo_code_id:
        validation = validate_promo_code_id(promo_code_id, purchaser)
        if not validation.valid:
            raise ValidationError(validation.message)
        promo_code = validation.promo_code

    company_fields = []
    if payment_method == Order.PaymentMethod.INVOICE:
        company_fields = _apply_company_info(purchaser, company_info)

    pricing = calculate_pricing(lines, discount_for_promo(promo_code))

    with transaction.atomic():
        # Serialises concurrent checkouts of the same account for the limit check.
        get_user_model().objects.select_for_update().filter(pk=purchaser.pk).first()
        _check_individual_limit(purchaser, lines)
        order = Order.objects.create(
            purchaser=purchaser,
            status=Order.Status.PENDING,
            payment_method=payment_method,
            promo_code=promo_code,
            currency=settings.TICKET_CURRENCY,
            subtotal=pricing.subtotal,
            discount=pricing.discount,
            tax=pricing.tax,
            total=pricing.total,
        )
        OrderItem.objects.bulk_create(
            [
                OrderItem(
                    order=order,
                    ticket_type_id=line.ticket_type_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
                for line in lines
            ]
        )
        log_order_event(
            "order.created",
            message="Order created at checkout.",
            actor=purchaser,
            order=order,
            metadata={
                "payment_method": payment_method,
                "promo_code": promo_code.code if promo_code else None,
                "subtotal": pricing.subtotal,
                "discount": pricing.discount,
                "tax": pricing.tax,
                "total": pricing.total,
            },
        )

    if pricing.total == 0:
        _save_company_info(purchaser, company_fields)
        confirm_order_payment(order.pk, user_id=purchaser.pk, source="free_checkout")
        order.refresh_from_db()
        return CheckoutResult(order=order, url=f"{base_url}/mypage/orders/{order.pk}?success=true")

    try:
        result = _start_payment(order, lines, pricing, purchaser=purchaser, base_url=base_url)
    except ExternalServiceError:
        logger.warning("Discarding order %s after payment provider failure", order.order_number)
        if company_fields:
            purchaser.refresh_from_db(fields=company_fields)
        _discard_order(order)
        raise
    _save_company_info(purchaser, company_fields)
    return result
