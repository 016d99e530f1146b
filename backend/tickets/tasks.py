from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.core.cache import cache
from django.template.loader import render_to_string
from django.utils import timezone
import stripe

from accounts.email_utils import send_resend_email

from . import payments
from .audit import log_order_event
from .errors import ExternalServiceError
from .models import Order, Ticket
from .services import confirm_order_payment

logger = logging.getLogger(__name__)

HANDLED_STRIPE_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "invoice.paid",
}
SETTLED_SESSION_STATUSES = {"paid", "no_payment_required"}

STRIPE_RECONCILE_BACKOFF_SECONDS = 120
STRIPE_RECONCILE_ERROR_BACKOFF_SECONDS = 300


def _reconcile_not_before_key(order_id: int) -> str:
    return f"stripe:reconcile:not_before:{order_id}"


def _set_reconcile_backoff(order_id: int, seconds: int) -> None:
    if seconds <= 0:
        cache.delete(_reconcile_not_before_key(order_id))
        return
    cache.set(
        _reconcile_not_before_key(order_id),
        timezone.now().timestamp() + seconds,
        timeout=seconds,
    )


def _can_reconcile_now(order_id: int) -> bool:
    not_before = cache.get(_reconcile_not_before_key(order_id))
    if not_before is None:
        return True
    return timezone.now().timestamp() >= float(not_before)


def _as_str(value) -> str:
    return value if isinstance(value, str) else ""


@shared_task
def process_stripe_webhook_event(event_payload: dict) -> bool:
    """Apply a verified Stripe event. Returns whether an order was confirmed."""
    event_type = event_payload.get("event_type")
    if event_type not in HANDLED_STRIPE_EVENTS:
        logger.info("Ignoring Stripe event %s", event_type)
        return False

    if (
        event_type == "checkout.session.completed"
        and event_payload.get("payment_status") not in SETTLED_SESSION_STATUSES
    ):
        # Bank transfers complete the session before funds arrive.
        logger.info(
            "Checkout session %s completed with payment_status=%s; awaiting funds",
            event_payload.get("id"),
            event_payload.get("payment_status"),
        )
        return False

    metadata = event_payload.get("metadata") or {}
    order_id = metadata.get("order_id")
    user_id = metadata.get("user_id")
    if not order_id or not user_id:
        logger.warning("Stripe event %s for %s has no order metadata; dropped", event_type, event_payload.get("id"))
        return False
    try:
        order_id_int = int(order_id)
    except (TypeError, ValueError):
        logger.warning("Stripe event %s carries invalid order_id %r; dropped", event_type, order_id)
        return False

    object_id = _as_str(event_payload.get("id"))
    order = confirm_order_payment(
        order_id_int,
        user_id=user_id,
        payment_intent_id=_as_str(event_payload.get("payment_intent")),
        checkout_session_id=object_id if event_type.startswith("checkout.session") else "",
        invoice_id=object_id if event_type == "invoice.paid" else "",
        source=event_type,
    )
    return order is not None


def _send_and_record(*, recipient: str, subject: str, template: str, context: dict, order=None, ticket=None) -> bool:
    html = render_to_string(f"tickets/email/{template}.html", context)
    text = render_to_string(f"tickets/email/{template}.txt", context)
    success, error = send_resend_email(recipient, subject, html, text)
    if success:
        logger.info("Sent %s email for %s", template, order or ticket)
        return True
    logger.warning("Failed to send %s email for %s: %s", template, order or ticket, error)
    log_order_event(
        "email.failed",
        message=f"{template} email failed: {error}",
        order=order,
        ticket=ticket,
        metadata={"recipient": recipient, "template": template, "error": error},
    )
    return False


@shared_task
def send_purchase_confirmation_email(order_id: int) -> bool:
    order = (
        Order.objects.select_related("purchaser")
        .prefetch_related("items__ticket_type", "tickets")
        .filter(id=order_id)
        .first()
    )
    if not order or not order.purchaser.email:
        return False
    context = {
        "order": order,
        "purchaser": order.purchaser,
        "items": list(order.items.all()),
        "tickets": list(order.tickets.all()),
        "orders_url": f"{settings.FRONTEND_BASE_URL}/mypage/orders/{order.pk}",
    }
    return _send_and_record(
        recipient=order.purchaser.email,
        subject=f"Order confirmation {order.order_number}",
        template="purchase_confirmation",
        context=context,
        order=order,
    )


@shared_task
def send_invite_email(ticket_id: int, invite_url: str) -> bool:
    ticket = (
        Ticket.objects.select_related("ticket_type", "purchaser", "order")
        .filter(id=ticket_id, status=Ticket.Status.INVITED)
        .first()
    )
    if not ticket or not ticket.invite_email:
        return False
    context = {
        "ticket": ticket,
        "purchaser": ticket.purchaser,
        "invite_url": invite_url,
    }
    return _send_and_record(
        recipient=ticket.invite_email,
        subject=f"{ticket.purchaser.display_name} sent you a conference ticket",
        template="invite",
        context=context,
        order=ticket.order,
        ticket=ticket,
    )


@shared_task
def send_invite_accepted_email(ticket_id: int) -> bool:
    ticket = (
        Ticket.objects.select_related("ticket_type", "purchaser", "attendee", "order")
        .filter(id=ticket_id, status=Ticket.Status.ASSIGNED)
        .first()
    )
    if not ticket or not ticket.purchaser.email:
        return False
    context = {
        "ticket": ticket,
        "purchaser": ticket.purchaser,
        "attendee": ticket.attendee,
    }
    return _send_and_record(
        recipient=ticket.purchaser.email,
        subject=f"Ticket {ticket.ticket_number} was accepted",
        template="invite_accepted",
        context=context,
        order=ticket.order,
        ticket=ticket,
    )


@shared_task
def expire_checkout_session(session_id: str) -> bool:
    if not settings.STRIPE_SECRET_KEY or not session_id:
        return False
    return payments.expire_checkout_session(session_id)


def _provider_settlement(order: Order) -> dict | None:
    """Return confirmation kwargs when Stripe reports the order as paid."""
    if order.payment_method == Order.PaymentMethod.INVOICE:
        invoice = payments.retrieve_invoice(order.stripe_invoice_id)
        if getattr(invoice, "status", None) != "paid":
            return None
        return {"invoice_id": order.stripe_invoice_id}

    session = payments.retrieve_checkout_session(order.stripe_checkout_session_id)
    if getattr(session, "payment_status", None) not in SETTLED_SESSION_STATUSES:
        return None
    return {
        "checkout_session_id": order.stripe_checkout_session_id,
        "payment_intent_id": _as_str(getattr(session, "payment_intent", None)),
    }


@shared_task
def reconcile_pending_stripe_orders(limit: int | None = None) -> int:
    """Confirm pending orders Stripe already considers paid but whose webhook never arrived."""
    if not settings.STRIPE_SECRET_KEY:
        return 0

    reconcile_limit = int(
        limit if limit is not None else getattr(settings, "STRIPE_RECONCILE_BATCH_LIMIT", 100)
    )
    # Bank transfers that have not arrived within the transfer window are left alone.
    transfer_cutoff = timezone.now() - timedelta(days=settings.BANK_TRANSFER_EXPIRY_DAYS)
    pending_orders = list(
        Order.objects.filter(status=Order.Status.PENDING)
        .exclude(stripe_checkout_session_id="", stripe_invoice_id="")
        .exclude(payment_method=Order.PaymentMethod.BANK_TRANSFER, created_at__lt=transfer_cutoff)
        .order_by("-updated_at")[:reconcile_limit]
    )

    reconciled_order_ids: list[int] = []
    for order in pending_orders:
        if not _can_reconcile_now(order.id):
            continue
        try:
            settlement = _provider_settlement(order)
        except (ExternalServiceError, stripe.StripeError):
            _set_reconcile_backoff(order.id, STRIPE_RECONCILE_ERROR_BACKOFF_SECONDS)
            continue
        if settlement is None:
            _set_reconcile_backoff(order.id, STRIPE_RECONCILE_BACKOFF_SECONDS)
            continue

        confirmed = confirm_order_payment(
            order.id,
            user_id=order.purchaser_id,
            source="reconcile",
            **settlement,
        )
        if confirmed is not None:
            reconciled_order_ids.append(order.id)
            _set_reconcile_backoff(order.id, 0)

    if reconciled_order_ids:
        log_order_event(
            "stripe.reconciled",
            message=f"Reconciled {len(reconciled_order_ids)} pending Stripe orders.",
            metadata={"order_ids": reconciled_order_ids},
        )
    return len(reconciled_order_ids)
