from __future__ import annotations

import logging

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Count, F
from django.utils import timezone

from .audit import log_order_event
from .errors import ConflictError, NotFoundError, OrderNotCancellableError
from .models import Order, PromoCode, PromoCodeUse, Ticket

logger = logging.getLogger(__name__)


def issue_tickets_for_order(order: Order, *, actor=None) -> list[Ticket]:
    """Create one unassigned ticket per purchased unit for items that have none yet.

    Running it twice for the same order creates nothing the second time.
    """
    with transaction.atomic():
        locked = Order.objects.select_for_update().filter(pk=order.pk).first()
        if locked is None or locked.status != Order.Status.PAID:
            raise ConflictError("Tickets can only be issued for paid orders.")

        items = locked.items.select_related("ticket_type").annotate(issued=Count("tickets"))
        tickets = []
        for item in items:
            if item.issued:
                continue
            for _ in range(item.quantity):
                tickets.append(
                    Ticket(
                        order=locked,
                        order_item=item,
                        ticket_type=item.ticket_type,
                        purchaser_id=locked.purchaser_id,
                        status=Ticket.Status.UNASSIGNED,
                    )
                )
        if not tickets:
            return []

        Ticket.objects.bulk_create(tickets)
        log_order_event(
            "tickets.issued",
            message=f"Issued {len(tickets)} tickets.",
            actor=actor,
            order=locked,
            metadata={"ticket_numbers": [ticket.ticket_number for ticket in tickets]},
        )
    logger.info("Issued %s tickets for order %s", len(tickets), locked.order_number)
    return tickets


def _record_promo_use(order: Order) -> None:
    if not order.promo_code_id:
        return
    _, created = PromoCodeUse.objects.get_or_create(
        order=order,
        defaults={"promo_code_id": order.promo_code_id, "user_id": order.purchaser_id},
    )
    if created:
        PromoCode.objects.filter(pk=order.promo_code_id).update(
            current_uses=F("current_uses") + 1
        )


def confirm_order_payment(
    order_id,
    *,
    user_id=None,
    payment_intent_id: str = "",
    checkout_session_id: str = "",
    invoice_id: str = "",
    source: str = "webhook",
) -> Order | None:
    """Move a pending order to paid and issue its tickets.

    Returns the order, or ``None`` when the order is gone, belongs to someone
    else or was cancelled in the meantime. Replays of an already applied
    confirmation only fill in missing tickets.
    """
    with transaction.atomic():
        order = Order.objects.select_for_update().filter(pk=order_id).first()
        if order is None:
            logger.warning("Payment confirmation for missing order %s (%s); skipped", order_id, source)
            return None
        if user_id is not None and str(order.purchaser_id) != str(user_id):
            logger.warning(
                "Payment confirmation user %s does not own order %s (%s); skipped",
                user_id,
                order.order_number,
                source,
            )
            return None
        if order.status not in (Order.Status.PENDING, Order.Status.PAID):
            logger.warning(
                "Payment confirmation for order %s in status %s (%s); skipped",
                order.order_number,
                order.status,
                source,
            )
            return None

        newly_paid = order.status == Order.Status.PENDING
        update_fields = []
        if payment_intent_id and order.stripe_payment_intent_id != payment_intent_id:
            order.stripe_payment_intent_id = payment_intent_id
            update_fields.append("stripe_payment_intent_id")
        if checkout_session_id and not order.stripe_checkout_session_id:
            order.stripe_checkout_session_id = checkout_session_id
            update_fields.append("stripe_checkout_session_id")
        if invoice_id and not order.stripe_invoice_id:
            order.stripe_invoice_id = invoice_id
            update_fields.append("stripe_invoice_id")
        if newly_paid:
            order.status = Order.Status.PAID
            order.paid_at = timezone.now()
            update_fields.extend(["status", "paid_at"])
        if update_fields:
            update_fields.append("updated_at")
            order.save(update_fields=update_fields)

        if newly_paid:
            _record_promo_use(order)
            log_order_event(
                "order.paid",
                message="Payment confirmed.",
                order=order,
                metadata={"source": source, "total": order.total},
            )

    if newly_paid:
        logger.info("Order %s marked paid (%s)", order.order_number, source)

    try:
        issue_tickets_for_order(order)
    except (DatabaseError, ConflictError) as exc:
        # The money has moved; the order stays paid and needs manual repair.
        logger.exception("Ticket issuance failed for paid order %s", order.order_number)
        log_order_event(
            "tickets.issue_failed",
            message="Ticket issuance failed after payment.",
            order=order,
            metadata={"source": source, "error": str(exc)},
        )

    if newly_paid:
        from .tasks import send_purchase_confirmation_email

        enqueue_on_commit(send_purchase_confirmation_email, order.pk)
    return order


def enqueue_on_commit(task, *args) -> None:
    """Queue ``task`` once the surrounding transaction commits; broker errors are only logged."""

    def _send():
        try:
            task.delay(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Could not queue %s for %s", task.name, args)

    transaction.on_commit(_send)


def cancel_order(*, actor, order_id) -> str:
    """Hard-delete a pending order owned by ``actor``; returns its order number."""
    with transaction.atomic():
        order = (
            Order.objects.select_for_update()
            .filter(pk=order_id, purchaser_id=actor.pk)
            .first()
        )
        if order is None:
            raise NotFoundError("Order not found.")
        if order.status != Order.Status.PENDING:
            raise OrderNotCancellableError()

        order_number = order.order_number
        session_id = order.stripe_checkout_session_id
        log_order_event(
            "order.cancelled",
            message="Pending order cancelled by purchaser.",
            actor=actor,
            order=order,
            metadata={
                "order_number": order_number,
                "payment_method": order.payment_method,
                "total": order.total,
            },
        )
        order.items.all().delete()
        order.promo_code_uses.all().delete()
        order.delete()

        if session_id and settings.STRIPE_SECRET_KEY:
            from .tasks import expire_checkout_session

            enqueue_on_commit(expire_checkout_session, session_id)

    logger.info("Order %s cancelled by user %s", order_number, actor.pk)
    return order_number
