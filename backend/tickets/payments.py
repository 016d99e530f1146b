from __future__ import annotations

import calendar
import json
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any

from django.conf import settings
from django.utils import timezone
import stripe

from .errors import ExternalServiceError, SignatureError

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_MIN_EXPIRY = timedelta(minutes=30)
# A small margin keeps the timestamp inside the 24 hour limit when Stripe receives it.
CHECKOUT_SESSION_MAX_EXPIRY = timedelta(hours=23, minutes=55)


@dataclass
class CheckoutSessionResult:
    session_id: str
    url: str
    payment_intent_id: str = ""


@dataclass
class InvoiceResult:
    invoice_id: str
    hosted_url: str
    pdf_url: str


def configure_stripe() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise ExternalServiceError("Stripe is not configured.")
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION


def _string_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""


def invoice_due_date(order_date) -> datetime:
    """Last calendar day of the month after ``order_date``, end of day in local time."""
    year = order_date.year + (1 if order_date.month == 12 else 0)
    month = 1 if order_date.month == 12 else order_date.month + 1
    last_day = calendar.monthrange(year, month)[1]
    due = datetime.combine(order_date.replace(year=year, month=month, day=last_day), time(23, 59, 59))
    return timezone.make_aware(due)


def get_or_create_customer(user) -> str:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    configure_stripe()
    try:
        customer = stripe.Customer.create(
            email=user.email or None,
            name=user.company_name or user.display_name,
            metadata={"user_id": str(user.pk)},
        )
    except stripe.StripeError as exc:
        logger.error("Stripe customer creation failed for user %s: %s", user.pk, exc)
        raise ExternalServiceError() from exc
    user.stripe_customer_id = customer.id
    user.save(update_fields=["stripe_customer_id", "updated_at"])
    return customer.id


def create_checkout_session(
    *,
    line_items: list[dict],
    payment_method_types: list[str],
    metadata: dict[str, str],
    success_url: str,
    cancel_url: str,
    customer_id: str | None = None,
    customer_email: str | None = None,
    expires_at: datetime | None = None,
) -> CheckoutSessionResult:
    configure_stripe()
    session_kwargs: dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": payment_method_types,
        "line_items": line_items,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
        "locale": "ja",
    }
    if customer_id:
        session_kwargs["customer"] = customer_id
    elif customer_email:
        session_kwargs["customer_email"] = customer_email
    if "customer_balance" in payment_method_types:
        session_kwargs["payment_method_options"] = {
            "customer_balance": {
                "funding_type": "bank_transfer",
                "bank_transfer": {"type": "jp_bank_transfer"},
            }
        }
    if expires_at is not None:
        session_kwargs["expires_at"] = int(expires_at.timestamp())

    try:
        session = stripe.checkout.Session.create(**session_kwargs)
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session creation failed for order %s: %s", metadata.get("order_id"), exc)
        raise ExternalServiceError() from exc

    return CheckoutSessionResult(
        session_id=_string_or_empty(session.id),
        url=_string_or_empty(session.url),
        payment_intent_id=_string_or_empty(getattr(session, "payment_intent", None)),
    )


def create_invoice(
    *,
    customer_id: str,
    line_items: list[dict],
    currency: str,
    due_date: datetime,
    metadata: dict[str, str],
) -> InvoiceResult:
    """Create, fill and finalize a ``send_invoice`` invoice.

    ``line_items`` use the Checkout Session shape so both flows share the
    same pricing output.
    """
    configure_stripe()
    try:
        invoice = stripe.Invoice.create(
            customer=customer_id,
            collection_method="send_invoice",
            due_date=int(due_date.timestamp()),
            currency=currency,
            metadata=metadata,
            pending_invoice_items_behavior="exclude",
        )
        for item in line_items:
            price_data = item["price_data"]
            quantity = item.get("quantity", 1)
            stripe.InvoiceItem.create(
                customer=customer_id,
                invoice=invoice.id,
                currency=currency,
                amount=price_data["unit_amount"] * quantity,
                description=(
                    f"{price_data['product_data']['name']} x{quantity}"
                    if quantity > 1
                    else price_data["product_data"]["name"]
                ),
            )
        finalized = stripe.Invoice.finalize_invoice(invoice.id)
    except stripe.StripeError as exc:
        logger.error("Stripe invoice creation failed for order %s: %s", metadata.get("order_id"), exc)
        raise ExternalServiceError() from exc

    return InvoiceResult(
        invoice_id=_string_or_empty(finalized.id),
        hosted_url=_string_or_empty(finalized.hosted_invoice_url),
        pdf_url=_string_or_empty(finalized.invoice_pdf),
    )


def construct_webhook_event(payload: bytes | str, sig_header: str, secret: str) -> dict:
    """Verify the ``Stripe-Signature`` header and return the decoded event."""
    if not sig_header:
        raise SignatureError("Missing Stripe-Signature header.")
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret)
    except stripe.SignatureVerificationError as exc:
        raise SignatureError("Webhook signature verification failed.") from exc
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise SignatureError("Webhook payload is not valid JSON.") from exc
    if not isinstance(event, dict):
        raise SignatureError("Webhook payload is not an event.")
    return event


def expire_checkout_session(session_id: str) -> bool:
    configure_stripe()
    try:
        stripe.checkout.Session.expire(session_id)
    except stripe.StripeError as exc:
        logger.warning("Could not expire checkout session %s: %s", session_id, exc)
        return False
    return True


def retrieve_checkout_session(session_id: str):
    configure_stripe()
    try:
        return stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as exc:
        logger.warning("Could not retrieve checkout session %s: %s", session_id, exc)
        raise ExternalServiceError() from exc


def retrieve_invoice(invoice_id: str):
    configure_stripe()
    try:
        return stripe.Invoice.retrieve(invoice_id)
    except stripe.StripeError as exc:
        logger.warning("Could not retrieve invoice %s: %s", invoice_id, exc)
        raise ExternalServiceError() from exc


def bank_transfer_expiry(now=None) -> datetime:
    """Checkout Session expiry for bank transfers.

    Stripe accepts ``expires_at`` between 30 minutes and 24 hours ahead, so the
    session lifetime is capped there. The longer ``BANK_TRANSFER_EXPIRY_DAYS``
    window bounds how long reconciliation keeps polling for the transfer.
    """
    now = now or timezone.now()
    window = timedelta(days=settings.BANK_TRANSFER_EXPIRY_DAYS)
    return now + max(min(window, CHECKOUT_SESSION_MAX_EXPIRY), CHECKOUT_SESSION_MIN_EXPIRY)
