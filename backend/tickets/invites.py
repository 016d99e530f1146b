"""Ticket transfer from purchaser to attendee.

A ticket moves ``unassigned -> invited -> assigned``. Every transition is a
conditional update on the current status, so concurrent requests for the same
ticket or token leave exactly one winner.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email
from django.db import transaction
from django.utils import timezone

from .audit import log_order_event
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Ticket
from .services import enqueue_on_commit

logger = logging.getLogger(__name__)

INVITE_NOT_FOUND = "This invitation was not found or has already been used."


@dataclass
class InviteResult:
    ticket: Ticket
    invite_url: str


def generate_invite_token() -> str:
    return secrets.token_urlsafe(32)


def build_invite_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/invite/{token}"


def _clean_email(email: str | None) -> str:
    email = (email or "").strip()
    try:
        validate_email(email)
    except DjangoValidationError as exc:
        raise ValidationError("Please enter a valid email address.") from exc
    return email


def _owned_ticket(actor, ticket_id) -> Ticket:
    ticket = (
        Ticket.objects.select_related("ticket_type", "order")
        .filter(pk=ticket_id, purchaser_id=actor.pk)
        .first()
    )
    if ticket is None:
        raise NotFoundError("Ticket not found.")
    return ticket


def _queue_invite_email(ticket: Ticket, invite_url: str) -> None:
    from .tasks import send_invite_email

    enqueue_on_commit(send_invite_email, ticket.pk, invite_url)


def invite_ticket(*, actor, ticket_id, email: str, base_url: str) -> InviteResult:
    email = _clean_email(email)
    ticket = _owned_ticket(actor, ticket_id)
    if ticket.status != Ticket.Status.UNASSIGNED:
        raise ConflictError("This ticket has already been invited or assigned.")

    token = generate_invite_token()
    now = timezone.now()
    with transaction.atomic():
        updated = Ticket.objects.filter(pk=ticket.pk, status=Ticket.Status.UNASSIGNED).update(
            status=Ticket.Status.INVITED,
            invite_email=email,
            invite_token=token,
            invite_sent_at=now,
            updated_at=now,
        )
        if not updated:
            raise ConflictError("This ticket has already been invited or assigned.")
        ticket.refresh_from_db()
        log_order_event(
            "ticket.invited",
            message=f"Invitation sent to {email}.",
            actor=actor,
            order=ticket.order,
            ticket=ticket,
            metadata={"invite_email": email},
        )
        invite_url = build_invite_url(base_url, token)
        _queue_invite_email(ticket, invite_url)

    logger.info("Ticket %s invited", ticket.ticket_number)
    return InviteResult(ticket=ticket, invite_url=invite_url)


def resend_invite(*, actor, ticket_id, email: str | None = None, base_url: str) -> InviteResult:
    """Send the invitation again with a fresh token, optionally to a new address.

    The previous link stops working.
    """
    ticket = _owned_ticket(actor, ticket_id)
    if ticket.status != Ticket.Status.INVITED:
        raise ConflictError("Only pending invitations can be resent.")
    email = _clean_email(email) if email else ticket.invite_email

    token = generate_invite_token()
    now = timezone.now()
    with transaction.atomic():
        updated = Ticket.objects.filter(
            pk=ticket.pk,
            status=Ticket.Status.INVITED,
            invite_token=ticket.invite_token,
        ).update(
            invite_email=email,
            invite_token=token,
            invite_sent_at=now,
            updated_at=now,
        )
        if not updated:
            raise ConflictError("This invitation has changed. Please reload and try again.")
        ticket.refresh_from_db()
        log_order_event(
            "ticket.invited",
            message=f"Invitation resent to {email}.",
            actor=actor,
            order=ticket.order,
            ticket=ticket,
            metadata={"invite_email": email, "resend": True},
        )
        invite_url = build_invite_url(base_url, token)
        _queue_invite_email(ticket, invite_url)

    return InviteResult(ticket=ticket, invite_url=invite_url)


def inspect_invite(token: str) -> Ticket:
    ticket = None
    if token:
        ticket = (
            Ticket.objects.select_related("ticket_type", "purchaser")
            .filter(invite_token=token, status=Ticket.Status.INVITED)
            .first()
        )
    if ticket is None:
        raise NotFoundError(INVITE_NOT_FOUND)
    return ticket


def accept_invite(*, token: str, attendee) -> Ticket:
    ticket = inspect_invite(token)
    now = timezone.now()
    with transaction.atomic():
        updated = Ticket.objects.filter(
            pk=ticket.pk,
            invite_token=token,
            status=Ticket.Status.INVITED,
        ).update(
            status=Ticket.Status.ASSIGNED,
            attendee=attendee,
            assigned_at=now,
            invite_token=None,
            updated_at=now,
        )
        if not updated:
            raise ConflictError("This invitation has already been used.")
        ticket.refresh_from_db()
        attendee.add_role("attendee")
        log_order_event(
            "ticket.assigned",
            message="Invitation accepted.",
            actor=attendee,
            order=ticket.order,
            ticket=ticket,
            metadata={"attendee_id": attendee.pk},
        )

        from .tasks import send_invite_accepted_email

        enqueue_on_commit(send_invite_accepted_email, ticket.pk)

    logger.info("Ticket %s assigned to user %s", ticket.ticket_number, attendee.pk)
    return ticket
