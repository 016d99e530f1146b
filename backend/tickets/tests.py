from datetime import date, timedelta
import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import patch

from django.core.cache import cache
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient
from rest_framework.throttling import AnonRateThrottle
from rest_framework.views import APIView
import stripe

from accounts.models import User

from .checkout import create_checkout
from .errors import ConflictError, ExternalServiceError, ValidationError
from .models import (
    Order,
    OrderAuditLog,
    OrderItem,
    PromoCode,
    PromoCodeUse,
    Ticket,
    TicketType,
)
from .payments import bank_transfer_expiry, invoice_due_date
from .pricing import (
    ComponentWaiver,
    FixedPrice,
    FreeAll,
    MemberPrice,
    NoDiscount,
    PricedLine,
    build_stripe_line_items,
    calculate_pricing,
    discount_for_promo,
)
from .promotions import (
    ALREADY_USED,
    EXPIRED,
    INVALID_CODE,
    USAGE_LIMIT_REACHED,
    validate_promo_code,
)
from .services import confirm_order_payment, issue_tickets_for_order
from .tasks import (
    process_stripe_webhook_event,
    reconcile_pending_stripe_orders,
    send_purchase_confirmation_email,
)

BASE_URL = "https://tickets.example.com"


def create_pending_order(purchaser, lines, *, promo_code=None, payment_method=Order.PaymentMethod.CARD):
    """Persist a pending order whose totals match its items."""
    priced = [
        PricedLine(
            ticket_type_id=ticket_type.pk,
            name=ticket_type.name,
            unit_price=ticket_type.price,
            quantity=quantity,
        )
        for ticket_type, quantity in lines
    ]
    pricing = calculate_pricing(priced, discount_for_promo(promo_code))
    order = Order.objects.create(
        purchaser=purchaser,
        payment_method=payment_method,
        promo_code=promo_code,
        subtotal=pricing.subtotal,
        discount=pricing.discount,
        tax=pricing.tax,
        total=pricing.total,
    )
    for ticket_type, quantity in lines:
        OrderItem.objects.create(
            order=order,
            ticket_type=ticket_type,
            quantity=quantity,
            unit_price=ticket_type.price,
        )
    return order


class TicketingTestMixin:
    def setUp(self):
        self.client = APIClient()
        self.individual = User.objects.create_user(
            username="individual",
            email="individual@example.com",
            password="pass12345",
            name="Taro Suzuki",
        )
        self.company = User.objects.create_user(
            username="company",
            email="billing@example.co.jp",
            password="pass12345",
            account_type=User.AccountType.COMPANY,
            company_name="Example KK",
            company_address="1-1 Chiyoda, Tokyo",
            company_phone="03-0000-0000",
        )
        self.conference = TicketType.objects.create(name="Conference", price=30000)
        self.online = TicketType.objects.create(
            name="Online", price=10000, includes_onsite=False, includes_online=True
        )
        self.retired = TicketType.objects.create(name="Early bird", price=20000, is_active=False)


class PricingTests(SimpleTestCase):
    def setUp(self):
        self.single = [PricedLine(ticket_type_id=1, name="Conference", unit_price=30000, quantity=1)]

    def test_plain_order_adds_ten_percent_tax(self):
        pricing = calculate_pricing(self.single, NoDiscount(), tax_rate_percent=10)
        self.assertEqual(
            (pricing.subtotal, pricing.discount, pricing.tax, pricing.total),
            (30000, 0, 3000, 33000),
        )

    def test_free_all_zeroes_the_order(self):
        pricing = calculate_pricing(self.single, FreeAll(), tax_rate_percent=10)
        self.assertEqual(
            (pricing.subtotal, pricing.discount, pricing.tax, pricing.total),
            (30000, 30000, 0, 0),
        )

    def test_member_price_takes_percentage_off(self):
        pricing = calculate_pricing(self.single, MemberPrice(percent=20), tax_rate_percent=10)
        self.assertEqual(pricing.discount, 6000)
        self.assertEqual(pricing.tax, 2400)
        self.assertEqual(pricing.total, 26400)

    def test_fixed_price_charges_the_fixed_amount(self):
        pricing = calculate_pricing(self.single, FixedPrice(amount=5000), tax_rate_percent=10)
        self.assertEqual(pricing.discount, 25000)
        self.assertEqual(pricing.taxable, 5000)
        self.assertEqual(pricing.total, 5500)

    def test_fixed_price_above_subtotal_gives_no_discount(self):
        pricing = calculate_pricing(self.single, FixedPrice(amount=50000), tax_rate_percent=10)
        self.assertEqual(pricing.discount, 0)
        self.assertEqual(pricing.total, 33000)

    def test_component_waiver_is_priced_at_zero(self):
        pricing = calculate_pricing(self.single, ComponentWaiver(kind="free_venue"), tax_rate_percent=10)
        self.assertEqual(pricing.discount, 0)

    def test_tax_is_floored(self):
        lines = [PricedLine(ticket_type_id=1, name="Odd", unit_price=999, quantity=1)]
        pricing = calculate_pricing(lines, NoDiscount(), tax_rate_percent=10)
        self.assertEqual(pricing.tax, 99)
        self.assertEqual(pricing.total, pricing.subtotal - pricing.discount + pricing.tax)

    def test_stripe_line_items_spread_discount_and_add_tax_line(self):
        lines = [
            PricedLine(ticket_type_id=1, name="Conference", unit_price=30000, quantity=1),
            PricedLine(ticket_type_id=2, name="Online", unit_price=10000, quantity=2),
        ]
        pricing = calculate_pricing(lines, MemberPrice(percent=20), tax_rate_percent=10)
        line_items = build_stripe_line_items(lines, pricing, currency="jpy", tax_label="Tax")

        self.assertEqual(len(line_items), 3)
        self.assertEqual(line_items[0]["price_data"]["unit_amount"], 24000)
        self.assertEqual(line_items[1]["price_data"]["unit_amount"], 8000)
        self.assertEqual(line_items[1]["quantity"], 2)
        self.assertEqual(line_items[2]["price_data"]["unit_amount"], 4000)
        self.assertEqual(line_items[2]["price_data"]["product_data"]["name"], "Tax")

    def test_stripe_line_items_skip_tax_line_when_free(self):
        pricing = calculate_pricing(self.single, FreeAll(), tax_rate_percent=10)
        line_items = build_stripe_line_items(self.single, pricing, currency="jpy")
        self.assertEqual(len(line_items), 1)
        self.assertEqual(line_items[0]["price_data"]["unit_amount"], 0)

    @override_settings(PROMO_MEMBER_DISCOUNT_PERCENT=30)
    def test_discount_for_promo_maps_discount_types(self):
        self.assertEqual(discount_for_promo(None), NoDiscount())
        self.assertEqual(discount_for_promo(PromoCode(discount_type="free_all")), FreeAll())
        self.assertEqual(
            discount_for_promo(PromoCode(discount_type="member_price")), MemberPrice(percent=30)
        )
        self.assertEqual(
            discount_for_promo(PromoCode(discount_type="fixed_price", fixed_price=1000)),
            FixedPrice(amount=1000),
        )
        self.assertEqual(
            discount_for_promo(PromoCode(discount_type="fixed_price", fixed_price=None)),
            NoDiscount(),
        )
        self.assertEqual(
            discount_for_promo(PromoCode(discount_type="exclude_party")),
            ComponentWaiver(kind="exclude_party"),
        )


class InvoiceDueDateTests(SimpleTestCase):
    def test_due_date_is_end_of_following_month(self):
        due = invoice_due_date(date(2025, 1, 15))
        self.assertEqual(due.date(), date(2025, 2, 28))
        self.assertEqual((due.hour, due.minute, due.second), (23, 59, 59))
        self.assertTrue(timezone.is_aware(due))

    def test_due_date_rolls_over_the_year(self):
        self.assertEqual(invoice_due_date(date(2025, 12, 3)).date(), date(2026, 1, 31))


class BankTransferExpiryTests(SimpleTestCase):
    @override_settings(BANK_TRANSFER_EXPIRY_DAYS=7)
    def test_multi_day_window_is_capped_below_a_day(self):
        now = timezone.now()
        expiry = bank_transfer_expiry(now)
        self.assertLess(expiry - now, timedelta(hours=24))
        self.assertGreater(expiry - now, timedelta(hours=23))

    @override_settings(BANK_TRANSFER_EXPIRY_DAYS=0)
    def test_short_window_keeps_stripe_minimum(self):
        now = timezone.now()
        self.assertEqual(bank_transfer_expiry(now) - now, timedelta(minutes=30))


class PromoCodeValidationTests(TicketingTestMixin, TestCase):
    def test_code_is_normalized(self):
        promo = PromoCode.objects.create(code=" early ", discount_type="free_all")
        self.assertEqual(promo.code, "EARLY")

        validation = validate_promo_code("  early")
        self.assertTrue(validation.valid)
        self.assertEqual(validation.promo_code, promo)

    def test_unknown_and_inactive_codes_are_invalid(self):
        PromoCode.objects.create(code="OFF", discount_type="free_all", is_active=False)
        self.assertEqual(validate_promo_code("NOPE").reason, INVALID_CODE)
        self.assertEqual(validate_promo_code("OFF").reason, INVALID_CODE)
        self.assertEqual(validate_promo_code("").reason, INVALID_CODE)

    def test_validity_window(self):
        now = timezone.now()
        PromoCode.objects.create(
            code="LATER", discount_type="free_all", valid_from=now + timedelta(days=1)
        )
        PromoCode.objects.create(
            code="GONE",
            discount_type="free_all",
            valid_from=now - timedelta(days=10),
            valid_until=now - timedelta(days=1),
        )
        self.assertEqual(validate_promo_code("LATER").reason, EXPIRED)
        self.assertEqual(validate_promo_code("GONE").reason, EXPIRED)

    def test_total_usage_limit(self):
        PromoCode.objects.create(
            code="ONCE", discount_type="free_all", max_total_uses=1, current_uses=1
        )
        validation = validate_promo_code("ONCE")
        self.assertFalse(validation.valid)
        self.assertEqual(validation.reason, USAGE_LIMIT_REACHED)
        self.assertEqual(validation.message, "This promo code has reached its usage limit.")

    def test_per_user_limit_only_applies_to_known_users(self):
        promo = PromoCode.objects.create(code="MEMBER", discount_type="member_price", max_uses_per_user=1)
        order = create_pending_order(self.individual, [(self.conference, 1)], promo_code=promo)
        PromoCodeUse.objects.create(promo_code=promo, user=self.individual, order=order)

        self.assertEqual(validate_promo_code("MEMBER", user=self.individual).reason, ALREADY_USED)
        self.assertTrue(validate_promo_code("MEMBER").valid)
        self.assertTrue(validate_promo_code("MEMBER", user=self.company).valid)


class PromoCodeValidateApiTests(TicketingTestMixin, TestCase):
    def test_anonymous_validation_returns_summary(self):
        promo = PromoCode.objects.create(
            code="SPEAKER", name="Speaker pass", category="speaker", discount_type="free_all"
        )
        response = self.client.post("/api/promo-codes/validate/", {"code": "speaker"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["valid"])
        self.assertEqual(response.data["promoCode"]["id"], promo.id)
        self.assertEqual(response.data["promoCode"]["discountType"], "free_all")

    def test_invalid_code_returns_message(self):
        response = self.client.post("/api/promo-codes/validate/", {"code": "missing"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"valid": False, "error": "Invalid promo code."})


class CheckoutServiceTests(TicketingTestMixin, TestCase):
    def test_empty_cart_is_rejected(self):
        with self.assertRaisesMessage(ValidationError, "Your cart is empty."):
            create_checkout(
                purchaser=self.company, items=[], payment_method="card", base_url=BASE_URL
            )

    def test_unknown_or_inactive_ticket_type_is_named(self):
        for ticket_type_id in (9999, self.retired.id):
            with self.assertRaisesMessage(ValidationError, f"Invalid ticket type: {ticket_type_id}"):
                create_checkout(
                    purchaser=self.company,
                    items=[{"ticket_type_id": ticket_type_id, "quantity": 1}],
                    payment_method="card",
                    base_url=BASE_URL,
                )
        self.assertFalse(Order.objects.exists())

    def test_individual_limit_checked_before_any_order_row(self):
        with self.assertRaises(ValidationError):
            create_checkout(
                purchaser=self.individual,
                items=[{"ticket_type_id": self.conference.id, "quantity": 2}],
                payment_method="card",
                base_url=BASE_URL,
            )
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderItem.objects.count(), 0)

    def test_individual_limit_counts_pending_and_paid_orders(self):
        create_pending_order(self.individual, [(self.online, 1)])

        with self.assertRaises(ValidationError):
            create_checkout(
                purchaser=self.individual,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="card",
                base_url=BASE_URL,
            )
        self.assertEqual(Order.objects.count(), 1)

    def test_invoice_requires_company_account(self):
        with self.assertRaisesMessage(ValidationError, "only available for company accounts"):
            create_checkout(
                purchaser=self.individual,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="invoice",
                base_url=BASE_URL,
            )

    def test_invoice_requires_company_details(self):
        self.company.company_phone = ""
        self.company.save(update_fields=["company_phone"])

        with self.assertRaises(ValidationError):
            create_checkout(
                purchaser=self.company,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="invoice",
                company_info={"company_phone": "  "},
                base_url=BASE_URL,
            )
        self.assertFalse(Order.objects.exists())

    def test_expired_promo_code_is_rejected(self):
        promo = PromoCode.objects.create(
            code="OLD",
            discount_type="free_all",
            valid_from=timezone.now() - timedelta(days=5),
            valid_until=timezone.now() - timedelta(days=1),
        )
        with self.assertRaisesMessage(ValidationError, "This promo code is not valid at this time."):
            create_checkout(
                purchaser=self.company,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="card",
                promo_code_id=promo.id,
                base_url=BASE_URL,
            )

    def test_free_checkout_is_confirmed_without_stripe(self):
        promo = PromoCode.objects.create(code="FREE", discount_type="free_all")

        with self.captureOnCommitCallbacks(execute=True):
            result = create_checkout(
                purchaser=self.individual,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="card",
                promo_code_id=promo.id,
                base_url=BASE_URL,
            )

        order = result.order
        self.assertEqual(order.status, Order.Status.PAID)
        self.assertEqual(order.total, 0)
        self.assertIsNotNone(order.paid_at)
        self.assertEqual(result.url, f"{BASE_URL}/mypage/orders/{order.id}?success=true")
        self.assertEqual(order.tickets.count(), 1)
        self.assertTrue(PromoCodeUse.objects.filter(order=order, user=self.individual).exists())
        promo.refresh_from_db()
        self.assertEqual(promo.current_uses, 1)
        self.assertTrue(OrderAuditLog.objects.filter(order=order, action="order.created").exists())
        self.assertTrue(OrderAuditLog.objects.filter(order=order, action="order.paid").exists())
        # No Resend key in tests, so the confirmation email is recorded as failed.
        self.assertTrue(OrderAuditLog.objects.filter(order=order, action="email.failed").exists())

    @override_settings(STRIPE_SECRET_KEY="sk_test_123")
    @patch("tickets.payments.stripe.checkout.Session.create")
    def test_card_checkout_creates_session(self, session_create):
        session_create.return_value = SimpleNamespace(
            id="cs_test_1",
            url="https://checkout.stripe.test/cs_test_1",
            payment_intent=None,
        )

        result = create_checkout(
            purchaser=self.company,
            items=[
                {"ticket_type_id": self.conference.id, "quantity": 2},
                {"ticket_type_id": self.online.id, "quantity": 1},
            ],
            payment_method="card",
            base_url=BASE_URL,
        )

        order = Order.objects.get(pk=result.order.pk)
        self.assertEqual(result.url, "https://checkout.stripe.test/cs_test_1")
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.stripe_checkout_session_id, "cs_test_1")
        self.assertEqual((order.subtotal, order.tax, order.total), (70000, 7000, 77000))
        self.assertEqual(order.items.count(), 2)

        kwargs = session_create.call_args.kwargs
        self.assertEqual(kwargs["payment_method_types"], ["card"])
        self.assertEqual(kwargs["customer_email"], "billing@example.co.jp")
        self.assertEqual(kwargs["metadata"]["order_id"], str(order.id))
        self.assertEqual(kwargs["metadata"]["user_id"], str(self.company.id))
        self.assertEqual(kwargs["success_url"], f"{BASE_URL}/mypage/orders/{order.id}?success=true")
        self.assertEqual([item["quantity"] for item in kwargs["line_items"]], [2, 1, 1])
        self.assertEqual(kwargs["line_items"][-1]["price_data"]["unit_amount"], 7000)

    @override_settings(STRIPE_SECRET_KEY="sk_test_123")
    @patch(
        "tickets.payments.stripe.checkout.Session.create",
        side_effect=stripe.StripeError("Stripe is down"),
    )
    def test_provider_failure_discards_the_order(self, _session_create):
        with self.assertRaises(ExternalServiceError) as ctx:
            create_checkout(
                purchaser=self.company,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="card",
                base_url=BASE_URL,
            )

        self.assertNotIn("Stripe is down", ctx.exception.message)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderItem.objects.count(), 0)

    def test_unconfigured_stripe_discards_the_order(self):
        with self.assertRaises(ExternalServiceError):
            create_checkout(
                purchaser=self.company,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="card",
                base_url=BASE_URL,
            )
        self.assertEqual(Order.objects.count(), 0)

    @patch("tickets.checkout.OrderItem.objects.bulk_create", side_effect=DatabaseError("disk full"))
    def test_item_write_failure_rolls_back_the_order(self, _bulk_create):
        with self.assertRaises(DatabaseError):
            create_checkout(
                purchaser=self.company,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="card",
                base_url=BASE_URL,
            )

        self.assertEqual(Order.objects.count(), 0)
        self.assertFalse(OrderAuditLog.objects.filter(action="order.created").exists())

    @override_settings(STRIPE_SECRET_KEY="sk_test_123")
    @patch(
        "tickets.payments.stripe.Invoice.create",
        side_effect=stripe.StripeError("Stripe is down"),
    )
    @patch("tickets.payments.stripe.Customer.create")
    def test_invoice_failure_keeps_stored_company_details(self, customer_create, _invoice_create):
        customer_create.return_value = SimpleNamespace(id="cus_inv_2")

        with self.assertRaises(ExternalServiceError):
            create_checkout(
                purchaser=self.company,
                items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
                payment_method="invoice",
                company_info={"company_name": "Example Holdings KK"},
                base_url=BASE_URL,
            )

        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(self.company.company_name, "Example KK")
        stored = User.objects.get(pk=self.company.pk)
        self.assertEqual(stored.company_name, "Example KK")

    @override_settings(STRIPE_SECRET_KEY="sk_test_123", BANK_TRANSFER_EXPIRY_DAYS=7)
    @patch("tickets.payments.stripe.checkout.Session.create")
    @patch("tickets.payments.stripe.Customer.create")
    def test_bank_transfer_uses_customer_balance(self, customer_create, session_create):
        customer_create.return_value = SimpleNamespace(id="cus_bank_1")
        session_create.return_value = SimpleNamespace(
            id="cs_bank_1",
            url="https://checkout.stripe.test/cs_bank_1",
            payment_intent="pi_bank_1",
        )

        before = timezone.now()
        result = create_checkout(
            purchaser=self.company,
            items=[{"ticket_type_id": self.conference.id, "quantity": 1}],
            payment_method="bank_transfer",
            base_url=BASE_URL,
        )

        kwargs = session_create.call_args.kwargs
        self.assertEqual(kwargs["payment_method_types"], ["customer_balance"])
        self.assertEqual(kwargs["customer"], "cus_bank_1")
        self.assertEqual(
            kwargs["payment_method_options"]["customer_balance"]["bank_transfer"]["type"],
            "jp_bank_transfer",
        )
        self.assertGreaterEqual(kwargs["expires_at"], int((before + timedelta(hours=23)).timestamp()))
        self.assertLessEqual(kwargs["expires_at"], int((timezone.now() + timedelta(hours=24)).timestamp()))

        order = Order.objects.get(pk=result.order.pk)
        self.assertEqual(order.stripe_payment_intent_id, "pi_bank_1")
        self.company.refresh_from_db()
        self.assertEqual(self.company.stripe_customer_id, "cus_bank_1")

    @override_settings(STRIPE_SECRET_KEY="sk_test_123")
    @patch("tickets.payments.stripe.Invoice.finalize_invoice")
    @patch("tickets.payments.stripe.InvoiceItem.create")
    @patch("tickets.payments.stripe.Invoice.create")
    @patch("tickets.payments.stripe.Customer.create")
    def test_invoice_checkout_returns_hosted_urls(
        self, customer_create, invoice_create, invoice_item_create, finalize_invoice
    ):
        customer_create.return_value = SimpleNamespace(id="cus_inv_1")
        invoice_create.return_value = SimpleNamespace(id="in_1")
        finalize_invoice.return_value = SimpleNamespace(
            id="in_1",
            hosted_invoice_url="https://invoice.stripe.test/in_1",
            invoice_pdf="https://invoice.stripe.test/in_1.pdf",
        )

        result = create_checkout(
            purchaser=self.company,
            items=[{"ticket_type_id": self.conference.id, "quantity": 2}],
            payment_method="invoice",
            company_info={"company_name": "Example Holdings KK"},
            base_url=BASE_URL,
        )

        self.assertEqual(result.invoice_url, "https://invoice.stripe.test/in_1")
        self.assertEqual(result.invoice_pdf_url, "https://invoice.stripe.test/in_1.pdf")
        order = Order.objects.get(pk=result.order.pk)
        self.assertEqual(order.stripe_invoice_id, "in_1")
        self.assertEqual(order.status, Order.Status.PENDING)

        invoice_kwargs = invoice_create.call_args.kwargs
        self.assertEqual(invoice_kwargs["collection_method"], "send_invoice")
        self.assertEqual(invoice_kwargs["customer"], "cus_inv_1")
        amounts = [call.kwargs["amount"] for call in invoice_item_create.call_args_list]
        self.assertEqual(amounts, [60000, 6000])
        finalize_invoice.assert_called_once_with("in_1")

        self.company.refresh_from_db()
        self.assertEqual(self.company.company_name, "Example Holdings KK")


class CheckoutApiTests(TicketingTestMixin, TestCase):
    def test_requires_authentication(self):
        response = self.client.post(
            "/api/checkout/",
            {"items": [{"ticketTypeId": self.conference.id, "quantity": 1}]},
            format="json",
        )
        self.assertIn(
            response.status_code,
            (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN),
        )

    def test_free_checkout_returns_order_url(self):
        promo = PromoCode.objects.create(code="FREE", discount_type="free_all")
        self.client.force_authenticate(user=self.individual)

        response = self.client.post(
            "/api/checkout/",
            {
                "items": [{"ticketTypeId": self.conference.id, "quantity": 1}],
                "promoCodeId": promo.id,
                "paymentMethod": "card",
            },
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        order = Order.objects.get(purchaser=self.individual)
        self.assertEqual(response.data["orderId"], order.id)
        self.assertTrue(response.data["url"].endswith(f"/mypage/orders/{order.id}?success=true"))

    def test_empty_cart_returns_error_body(self):
        self.client.force_authenticate(user=self.company)
        response = self.client.post("/api/checkout/", {"items": []}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("error", response.data)
        self.assertEqual(response.data["code"], "VALIDATION_ERROR")

    def test_domain_validation_error_body(self):
        self.client.force_authenticate(user=self.individual)
        response = self.client.post(
            "/api/checkout/",
            {"items": [{"ticketTypeId": self.conference.id, "quantity": 3}]},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "VALIDATION_ERROR")
        self.assertIn("Individual accounts", response.data["error"])

    def test_provider_unavailable_is_generic_500(self):
        self.client.force_authenticate(user=self.company)
        response = self.client.post(
            "/api/checkout/",
            {"items": [{"ticketTypeId": self.conference.id, "quantity": 1}]},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data["code"], "EXTERNAL_SERVICE_ERROR")
        self.assertFalse(Order.objects.exists())


class PaymentConfirmationTests(TicketingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = create_pending_order(
            self.company, [(self.conference, 2), (self.online, 1)]
        )

    def test_confirmation_issues_one_ticket_per_unit(self):
        confirm_order_payment(self.order.id, user_id=self.company.id, payment_intent_id="pi_1")

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)
        self.assertEqual(self.order.stripe_payment_intent_id, "pi_1")
        tickets = Ticket.objects.filter(order=self.order)
        self.assertEqual(tickets.count(), 3)
        self.assertEqual(tickets.filter(ticket_type=self.conference).count(), 2)
        self.assertEqual(tickets.filter(ticket_type=self.online).count(), 1)
        self.assertTrue(all(ticket.status == Ticket.Status.UNASSIGNED for ticket in tickets))
        self.assertTrue(all(ticket.purchaser_id == self.company.id for ticket in tickets))
        self.assertEqual(len({ticket.ticket_number for ticket in tickets}), 3)

    def test_replay_is_a_no_op(self):
        confirm_order_payment(self.order.id, user_id=self.company.id)
        paid_at = Order.objects.get(pk=self.order.pk).paid_at
        confirm_order_payment(self.order.id, user_id=self.company.id)

        self.assertEqual(Ticket.objects.filter(order=self.order).count(), 3)
        self.assertEqual(Order.objects.get(pk=self.order.pk).paid_at, paid_at)
        self.assertEqual(
            OrderAuditLog.objects.filter(order=self.order, action="order.paid").count(), 1
        )

    def test_replay_fills_in_missing_tickets(self):
        confirm_order_payment(self.order.id, user_id=self.company.id)
        online_item = self.order.items.get(ticket_type=self.online)
        Ticket.objects.filter(order_item=online_item).delete()

        confirm_order_payment(self.order.id, user_id=self.company.id)
        self.assertEqual(Ticket.objects.filter(order=self.order).count(), 3)

    def test_promo_use_recorded_once(self):
        promo = PromoCode.objects.create(code="HALF", discount_type="member_price")
        order = create_pending_order(self.company, [(self.conference, 1)], promo_code=promo)

        confirm_order_payment(order.id, user_id=self.company.id)
        confirm_order_payment(order.id, user_id=self.company.id)

        self.assertEqual(PromoCodeUse.objects.filter(order=order).count(), 1)
        promo.refresh_from_db()
        self.assertEqual(promo.current_uses, 1)

    def test_mismatched_user_is_ignored(self):
        result = confirm_order_payment(self.order.id, user_id=self.individual.id)

        self.assertIsNone(result)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertFalse(Ticket.objects.exists())

    def test_missing_or_cancelled_order_is_ignored(self):
        self.assertIsNone(confirm_order_payment(999999, user_id=self.company.id))

        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.CANCELLED)
        self.assertIsNone(confirm_order_payment(self.order.id, user_id=self.company.id))
        self.assertFalse(Ticket.objects.exists())

    def test_issuing_for_pending_order_conflicts(self):
        with self.assertRaises(ConflictError):
            issue_tickets_for_order(self.order)

    def test_issue_failure_keeps_order_paid(self):
        with patch(
            "tickets.services.issue_tickets_for_order",
            side_effect=ConflictError("broken"),
        ):
            confirm_order_payment(self.order.id, user_id=self.company.id)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)
        self.assertTrue(
            OrderAuditLog.objects.filter(order=self.order, action="tickets.issue_failed").exists()
        )

    def test_confirmation_email_queued_after_commit(self):
        with patch("tickets.tasks.send_resend_email", return_value=(True, "")) as send_mock:
            with self.captureOnCommitCallbacks(execute=True):
                confirm_order_payment(self.order.id, user_id=self.company.id)

        send_mock.assert_called_once()
        recipient, subject, html, text = send_mock.call_args.args
        self.assertEqual(recipient, "billing@example.co.jp")
        self.assertIn(self.order.order_number, subject)
        self.assertIn(self.order.order_number, html)
        self.assertIn("Conference", text)


class OrderConstraintTests(TicketingTestMixin, TestCase):
    def test_total_must_match_parts(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Order.objects.create(
                    purchaser=self.company, subtotal=1000, discount=0, tax=100, total=999
                )

    def test_discount_cannot_exceed_subtotal(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Order.objects.create(
                    purchaser=self.company, subtotal=1000, discount=2000, tax=0, total=0
                )

    def test_audit_log_is_immutable(self):
        entry = OrderAuditLog.objects.create(action="order.created")
        entry.message = "changed"
        with self.assertRaises(DjangoValidationError):
            entry.save()


class StripeWebhookTests(TicketingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = create_pending_order(
            self.company, [(self.conference, 2), (self.online, 1)]
        )

    def _sign_payload(self, payload: str, secret: str) -> str:
        timestamp = int(time.time())
        signed_payload = f"{timestamp}.{payload}"
        signature = hmac.new(
            secret.encode("utf-8"),
            signed_payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"t={timestamp},v1={signature}"

    def _event(self, event_type, **data_object):
        data_object.setdefault("id", "cs_test_webhook")
        data_object.setdefault(
            "metadata",
            {"order_id": str(self.order.id), "user_id": str(self.company.id)},
        )
        return json.dumps(
            {
                "id": "evt_test_1",
                "type": event_type,
                "data": {"object": data_object},
            }
        )

    def _post(self, payload, signature=None):
        return self.client.post(
            "/api/stripe/webhook/",
            data=payload,
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=signature if signature is not None else self._sign_payload(payload, "whsec_test"),
        )

    def test_rejects_invalid_signature(self):
        payload = self._event("checkout.session.completed", payment_status="paid")
        response = self._post(payload, signature="t=123,v1=invalid")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("error", response.data)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_rejects_missing_signature(self):
        payload = self._event("checkout.session.completed", payment_status="paid")
        response = self._post(payload, signature="")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_rejects_signature_from_other_secret(self):
        payload = self._event("checkout.session.completed", payment_status="paid")
        response = self._post(payload, signature=self._sign_payload(payload, "whsec_other"))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    @override_settings(STRIPE_WEBHOOK_SECRET="")
    def test_unconfigured_secret_is_server_error(self):
        payload = self._event("checkout.session.completed", payment_status="paid")
        response = self._post(payload)
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    def test_completed_session_marks_order_paid(self):
        payload = self._event(
            "checkout.session.completed",
            payment_status="paid",
            payment_intent="pi_webhook_1",
        )
        response = self._post(payload)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"received": True})
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)
        self.assertEqual(self.order.stripe_payment_intent_id, "pi_webhook_1")
        self.assertEqual(self.order.stripe_checkout_session_id, "cs_test_webhook")
        self.assertEqual(Ticket.objects.filter(order=self.order).count(), 3)

    def test_replayed_event_issues_one_ticket_set(self):
        payload = self._event("checkout.session.completed", payment_status="paid")
        self._post(payload)
        response = self._post(payload)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(Ticket.objects.filter(order=self.order).count(), 3)

    def test_unpaid_bank_transfer_session_waits_for_funds(self):
        payload = self._event("checkout.session.completed", payment_status="unpaid")
        response = self._post(payload)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    @patch.object(AnonRateThrottle, "rate", "2/hour", create=True)
    @patch.object(APIView, "throttle_classes", [AnonRateThrottle])
    def test_webhook_is_exempt_from_anonymous_throttling(self):
        cache.clear()
        payload = self._event("customer.created", id="cus_throttle_1")

        codes = [self._post(payload).status_code for _ in range(3)]

        self.assertEqual(codes, [status.HTTP_200_OK] * 3)
        promo_codes = [
            self.client.post("/api/promo-codes/validate/", {"code": "missing"}, format="json").status_code
            for _ in range(3)
        ]
        self.assertEqual(promo_codes[-1], status.HTTP_429_TOO_MANY_REQUESTS)

        response = self._post(self._event("checkout.session.async_payment_succeeded"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)

    def test_invoice_paid_marks_order_paid(self):
        self.order.payment_method = Order.PaymentMethod.INVOICE
        self.order.save(update_fields=["payment_method"])

        response = self._post(self._event("invoice.paid", id="in_webhook_1"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)
        self.assertEqual(self.order.stripe_invoice_id, "in_webhook_1")

    def test_unhandled_event_is_acknowledged(self):
        response = self._post(self._event("customer.created", payment_status="paid"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_event_without_metadata_is_dropped(self):
        response = self._post(
            self._event("checkout.session.completed", payment_status="paid", metadata={})
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_task_rejects_non_numeric_order_id(self):
        handled = process_stripe_webhook_event(
            {
                "event_type": "checkout.session.completed",
                "payment_status": "paid",
                "metadata": {"order_id": "abc", "user_id": str(self.company.id)},
            }
        )
        self.assertFalse(handled)

    def test_webhook_after_cancellation_does_not_resurrect_order(self):
        self.client.force_authenticate(user=self.company)
        self.client.post(f"/api/orders/{self.order.id}/cancel/")
        self.client.force_authenticate(user=None)

        response = self._post(self._event("checkout.session.completed", payment_status="paid"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Order.objects.filter(pk=self.order.pk).exists())
        self.assertFalse(Ticket.objects.exists())


class OrderCancellationTests(TicketingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.promo = PromoCode.objects.create(code="HALF", discount_type="member_price")
        self.order = create_pending_order(
            self.company, [(self.conference, 1), (self.online, 2)], promo_code=self.promo
        )
        PromoCodeUse.objects.create(promo_code=self.promo, user=self.company, order=self.order)
        self.client.force_authenticate(user=self.company)

    def test_cancel_removes_items_and_promo_uses(self):
        response = self.client.post(f"/api/orders/{self.order.id}/cancel/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"success": True})
        self.assertFalse(Order.objects.filter(pk=self.order.pk).exists())
        self.assertFalse(OrderItem.objects.filter(order_id=self.order.pk).exists())
        self.assertFalse(PromoCodeUse.objects.filter(order_id=self.order.pk).exists())
        log = OrderAuditLog.objects.get(action="order.cancelled")
        self.assertEqual(log.metadata["order_number"], self.order.order_number)
        self.assertEqual(log.actor, self.company)

    def test_paid_order_cannot_be_cancelled(self):
        Order.objects.filter(pk=self.order.pk).update(
            status=Order.Status.PAID, paid_at=timezone.now()
        )
        response = self.client.post(f"/api/orders/{self.order.id}/cancel/")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "ORDER_NOT_CANCELLABLE")
        self.assertTrue(Order.objects.filter(pk=self.order.pk).exists())

    def test_other_users_order_is_not_found(self):
        self.client.force_authenticate(user=self.individual)
        response = self.client.post(f"/api/orders/{self.order.id}/cancel/")

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertTrue(Order.objects.filter(pk=self.order.pk).exists())

    @override_settings(STRIPE_SECRET_KEY="sk_test_123")
    @patch("tickets.payments.stripe.checkout.Session.expire")
    def test_open_checkout_session_is_expired(self, session_expire):
        self.order.stripe_checkout_session_id = "cs_cancel_1"
        self.order.save(update_fields=["stripe_checkout_session_id"])

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(f"/api/orders/{self.order.id}/cancel/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        session_expire.assert_called_once_with("cs_cancel_1")

    @override_settings(STRIPE_SECRET_KEY="sk_test_123")
    @patch(
        "tickets.payments.stripe.checkout.Session.expire",
        side_effect=stripe.StripeError("already expired"),
    )
    def test_session_expiry_failure_does_not_fail_cancellation(self, _session_expire):
        self.order.stripe_checkout_session_id = "cs_cancel_2"
        self.order.save(update_fields=["stripe_checkout_session_id"])

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(f"/api/orders/{self.order.id}/cancel/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Order.objects.filter(pk=self.order.pk).exists())


class OrderAndTicketApiTests(TicketingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = create_pending_order(self.company, [(self.conference, 2)])
        self.other_order = create_pending_order(self.individual, [(self.online, 1)])

    def test_orders_are_scoped_to_purchaser(self):
        self.client.force_authenticate(user=self.company)
        response = self.client.get("/api/orders/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["id"] for row in response.data], [self.order.id])
        self.assertEqual(response.data[0]["item_quantity"], 2)

        detail = self.client.get(f"/api/orders/{self.order.id}/")
        self.assertEqual(detail.status_code, status.HTTP_200_OK)
        self.assertEqual(detail.data["items"][0]["line_total"], 60000)

        other = self.client.get(f"/api/orders/{self.other_order.id}/")
        self.assertEqual(other.status_code, status.HTTP_404_NOT_FOUND)

    def test_orders_paginate_on_request(self):
        self.client.force_authenticate(user=self.company)
        response = self.client.get("/api/orders/", {"page": 1})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 1)

    def test_tickets_include_purchased_and_assigned(self):
        confirm_order_payment(self.order.id, user_id=self.company.id)
        first, second = Ticket.objects.filter(order=self.order).order_by("id")
        Ticket.objects.filter(pk=second.pk).update(
            status=Ticket.Status.ASSIGNED, attendee=self.individual, assigned_at=timezone.now()
        )

        self.client.force_authenticate(user=self.individual)
        response = self.client.get("/api/tickets/")
        self.assertEqual([row["id"] for row in response.data], [second.id])
        self.assertEqual(response.data[0]["attendee_name"], "Taro Suzuki")

        self.client.force_authenticate(user=self.company)
        response = self.client.get("/api/tickets/")
        self.assertEqual({row["id"] for row in response.data}, {first.id, second.id})

    def test_ticket_types_list_active_only(self):
        response = self.client.get("/api/ticket-types/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            [row["name"] for row in response.data],
            ["Online", "Conference"],
        )

    def test_admin_can_issue_missing_tickets(self):
        Order.objects.filter(pk=self.order.pk).update(
            status=Order.Status.PAID, paid_at=timezone.now()
        )
        admin = User.objects.create_user(
            username="organizer", password="pass12345", roles=["purchaser", "admin"]
        )
        self.client.force_authenticate(user=admin)

        response = self.client.post(f"/api/orders/{self.order.id}/issue-tickets/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["issued_ticket_count"], 2)

        response = self.client.post(f"/api/orders/{self.order.id}/issue-tickets/")
        self.assertEqual(response.data["issued_ticket_count"], 0)
        self.assertEqual(Ticket.objects.filter(order=self.order).count(), 2)

    def test_purchaser_cannot_issue_tickets(self):
        self.client.force_authenticate(user=self.company)
        response = self.client.post(f"/api/orders/{self.order.id}/issue-tickets/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


@override_settings(STRIPE_SECRET_KEY="sk_test_123")
class ReconcileTaskTests(TicketingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        cache.clear()
        self.order = create_pending_order(self.company, [(self.conference, 1)])
        self.order.stripe_checkout_session_id = "cs_reconcile_1"
        self.order.save(update_fields=["stripe_checkout_session_id"])

    @patch("tickets.payments.stripe.checkout.Session.retrieve")
    def test_paid_session_is_confirmed(self, session_retrieve):
        session_retrieve.return_value = SimpleNamespace(
            payment_status="paid", payment_intent="pi_reconcile_1"
        )

        self.assertEqual(reconcile_pending_stripe_orders(), 1)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PAID)
        self.assertEqual(self.order.stripe_payment_intent_id, "pi_reconcile_1")
        self.assertEqual(Ticket.objects.filter(order=self.order).count(), 1)
        self.assertTrue(OrderAuditLog.objects.filter(action="stripe.reconciled").exists())

    @patch("tickets.payments.stripe.checkout.Session.retrieve")
    def test_unpaid_session_backs_off(self, session_retrieve):
        session_retrieve.return_value = SimpleNamespace(payment_status="unpaid", payment_intent=None)

        self.assertEqual(reconcile_pending_stripe_orders(), 0)
        self.assertEqual(reconcile_pending_stripe_orders(), 0)
        session_retrieve.assert_called_once_with("cs_reconcile_1")

    @patch(
        "tickets.payments.stripe.checkout.Session.retrieve",
        side_effect=stripe.StripeError("timeout"),
    )
    def test_provider_errors_are_skipped(self, _session_retrieve):
        self.assertEqual(reconcile_pending_stripe_orders(), 0)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    @patch("tickets.payments.stripe.Invoice.retrieve")
    def test_paid_invoice_is_confirmed(self, invoice_retrieve):
        invoice_order = create_pending_order(
            self.company, [(self.online, 1)], payment_method=Order.PaymentMethod.INVOICE
        )
        invoice_order.stripe_invoice_id = "in_reconcile_1"
        invoice_order.save(update_fields=["stripe_invoice_id"])
        invoice_retrieve.return_value = SimpleNamespace(status="paid")

        with patch(
            "tickets.payments.stripe.checkout.Session.retrieve",
            return_value=SimpleNamespace(payment_status="open", payment_intent=None),
        ):
            self.assertEqual(reconcile_pending_stripe_orders(), 1)

        invoice_order.refresh_from_db()
        self.assertEqual(invoice_order.status, Order.Status.PAID)

    @override_settings(BANK_TRANSFER_EXPIRY_DAYS=7)
    @patch("tickets.payments.stripe.checkout.Session.retrieve")
    def test_bank_transfer_outside_window_is_not_polled(self, session_retrieve):
        stale_order = create_pending_order(
            self.company, [(self.online, 1)], payment_method=Order.PaymentMethod.BANK_TRANSFER
        )
        stale_order.stripe_checkout_session_id = "cs_bank_stale"
        stale_order.save(update_fields=["stripe_checkout_session_id"])
        Order.objects.filter(pk=stale_order.pk).update(created_at=timezone.now() - timedelta(days=8))
        session_retrieve.return_value = SimpleNamespace(payment_status="paid", payment_intent=None)

        self.assertEqual(reconcile_pending_stripe_orders(), 1)

        session_retrieve.assert_called_once_with("cs_reconcile_1")
        stale_order.refresh_from_db()
        self.assertEqual(stale_order.status, Order.Status.PENDING)

    @override_settings(STRIPE_SECRET_KEY="")
    def test_disabled_without_stripe_key(self):
        self.assertEqual(reconcile_pending_stripe_orders(), 0)


class EmailTaskTests(TicketingTestMixin, TestCase):
    def test_missing_order_is_skipped(self):
        self.assertFalse(send_purchase_confirmation_email(999999))

    def test_failed_delivery_is_audited(self):
        order = create_pending_order(self.company, [(self.conference, 1)])
        confirm_order_payment(order.id, user_id=self.company.id)

        with patch("tickets.tasks.send_resend_email", return_value=(False, "rate_limited")):
            self.assertFalse(send_purchase_confirmation_email(order.id))

        log = OrderAuditLog.objects.get(order=order, action="email.failed")
        self.assertEqual(log.metadata["error"], "rate_limited")
        self.assertEqual(log.metadata["template"], "purchase_confirmation")
