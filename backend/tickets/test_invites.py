from unittest.mock import patch

from django.conf import settings
from django.test import TestCase, override_settings
from rest_framework import status
from rest_framework.test import APIClient

from accounts.models import User

from .errors import ConflictError, NotFoundError, ValidationError
from .invites import (
    INVITE_NOT_FOUND,
    accept_invite,
    build_invite_url,
    inspect_invite,
    invite_ticket,
    resend_invite,
)
from .models import Order, OrderAuditLog, OrderItem, Ticket, TicketType
from .services import issue_tickets_for_order

BASE_URL = "https://tickets.example.com"


class InviteTestMixin:
    def setUp(self):
        self.client = APIClient()
        self.purchaser = User.objects.create_user(
            username="purchaser",
            email="purchaser@example.co.jp",
            password="pass12345",
            name="Example KK",
            account_type=User.AccountType.COMPANY,
        )
        self.guest = User.objects.create_user(
            username="guest",
            email="guest@example.com",
            password="pass12345",
            name="Hanako Sato",
        )
        self.stranger = User.objects.create_user(
            username="stranger", email="stranger@example.com", password="pass12345"
        )
        ticket_type = TicketType.objects.create(name="Conference", price=30000)
        order = Order.objects.create(
            purchaser=self.purchaser,
            status=Order.Status.PAID,
            subtotal=60000,
            tax=6000,
            total=66000,
        )
        OrderItem.objects.create(order=order, ticket_type=ticket_type, quantity=2, unit_price=30000)
        issue_tickets_for_order(order)
        self.ticket, self.other_ticket = Ticket.objects.filter(order=order).order_by("id")


class InviteServiceTests(InviteTestMixin, TestCase):
    def test_invite_moves_ticket_to_invited(self):
        result = invite_ticket(
            actor=self.purchaser,
            ticket_id=self.ticket.id,
            email=" guest@example.com ",
            base_url=BASE_URL,
        )

        self.ticket.refresh_from_db()
        self.assertEqual(self.ticket.status, Ticket.Status.INVITED)
        self.assertEqual(self.ticket.invite_email, "guest@example.com")
        self.assertIsNotNone(self.ticket.invite_sent_at)
        self.assertGreaterEqual(len(self.ticket.invite_token), 43)
        self.assertEqual(result.invite_url, f"{BASE_URL}/invite/{self.ticket.invite_token}")
        self.assertTrue(
            OrderAuditLog.objects.filter(ticket=self.ticket, action="ticket.invited").exists()
        )

    def test_tokens_are_unique_per_ticket(self):
        first = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="a@example.com", base_url=BASE_URL
        )
        second = invite_ticket(
            actor=self.purchaser,
            ticket_id=self.other_ticket.id,
            email="b@example.com",
            base_url=BASE_URL,
        )
        self.assertNotEqual(first.ticket.invite_token, second.ticket.invite_token)

    def test_invite_email_is_sent_after_commit(self):
        with patch("tickets.tasks.send_resend_email", return_value=(True, "")) as send_mock:
            with self.captureOnCommitCallbacks(execute=True):
                result = invite_ticket(
                    actor=self.purchaser,
                    ticket_id=self.ticket.id,
                    email="guest@example.com",
                    base_url=BASE_URL,
                )

        send_mock.assert_called_once()
        recipient, subject, html, text = send_mock.call_args.args
        self.assertEqual(recipient, "guest@example.com")
        self.assertIn("Example KK", subject)
        self.assertIn(result.invite_url, html)
        self.assertIn(result.invite_url, text)

    def test_invalid_email_is_rejected_first(self):
        with self.assertRaises(ValidationError):
            invite_ticket(
                actor=self.stranger, ticket_id=self.ticket.id, email="not-an-email", base_url=BASE_URL
            )

    def test_only_owner_can_invite(self):
        with self.assertRaises(NotFoundError):
            invite_ticket(
                actor=self.stranger,
                ticket_id=self.ticket.id,
                email="guest@example.com",
                base_url=BASE_URL,
            )
        self.ticket.refresh_from_db()
        self.assertEqual(self.ticket.status, Ticket.Status.UNASSIGNED)

    def test_invited_ticket_cannot_be_invited_again(self):
        invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        with self.assertRaises(ConflictError):
            invite_ticket(
                actor=self.purchaser,
                ticket_id=self.ticket.id,
                email="other@example.com",
                base_url=BASE_URL,
            )

    def test_resend_rotates_token(self):
        first = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        old_token = first.ticket.invite_token

        second = resend_invite(
            actor=self.purchaser,
            ticket_id=self.ticket.id,
            email="new@example.com",
            base_url=BASE_URL,
        )

        self.assertNotEqual(second.ticket.invite_token, old_token)
        self.assertEqual(second.ticket.invite_email, "new@example.com")
        with self.assertRaises(NotFoundError):
            inspect_invite(old_token)
        self.assertEqual(inspect_invite(second.ticket.invite_token), self.ticket)

    def test_resend_keeps_address_when_not_given(self):
        invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        result = resend_invite(actor=self.purchaser, ticket_id=self.ticket.id, base_url=BASE_URL)
        self.assertEqual(result.ticket.invite_email, "guest@example.com")

    def test_resend_requires_pending_invitation(self):
        with self.assertRaises(ConflictError):
            resend_invite(actor=self.purchaser, ticket_id=self.ticket.id, base_url=BASE_URL)

    def test_inspect_unknown_token_is_generic(self):
        with self.assertRaisesMessage(NotFoundError, INVITE_NOT_FOUND):
            inspect_invite("missing-token")
        with self.assertRaises(NotFoundError):
            inspect_invite("")

    def test_accept_assigns_ticket_and_adds_role(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )

        ticket = accept_invite(token=result.ticket.invite_token, attendee=self.guest)

        self.assertEqual(ticket.status, Ticket.Status.ASSIGNED)
        self.assertEqual(ticket.attendee, self.guest)
        self.assertIsNone(ticket.invite_token)
        self.assertIsNotNone(ticket.assigned_at)
        self.guest.refresh_from_db()
        self.assertEqual(self.guest.roles, ["purchaser", "attendee"])
        self.assertTrue(
            OrderAuditLog.objects.filter(ticket=ticket, action="ticket.assigned").exists()
        )

    def test_used_token_cannot_be_accepted_again(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        token = result.ticket.invite_token
        accept_invite(token=token, attendee=self.guest)

        with self.assertRaises(NotFoundError):
            accept_invite(token=token, attendee=self.stranger)

    def test_concurrent_accept_has_one_winner(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        token = result.ticket.invite_token
        # Both requests looked the ticket up before either one wrote.
        stale = inspect_invite(token)
        accept_invite(token=token, attendee=self.guest)

        with patch("tickets.invites.inspect_invite", return_value=stale):
            with self.assertRaises(ConflictError):
                accept_invite(token=token, attendee=self.stranger)

        self.ticket.refresh_from_db()
        self.assertEqual(self.ticket.attendee, self.guest)
        self.stranger.refresh_from_db()
        self.assertFalse(self.stranger.has_role("attendee"))

    def test_purchaser_is_notified_on_accept(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        with patch("tickets.tasks.send_resend_email", return_value=(True, "")) as send_mock:
            with self.captureOnCommitCallbacks(execute=True):
                accept_invite(token=result.ticket.invite_token, attendee=self.guest)

        recipient, subject, html, _text = send_mock.call_args.args
        self.assertEqual(recipient, "purchaser@example.co.jp")
        self.assertIn(self.ticket.ticket_number, subject)
        self.assertIn("Hanako Sato", html)


class InviteApiTests(InviteTestMixin, TestCase):
    def test_invite_endpoint_hides_url_outside_debug(self):
        self.client.force_authenticate(user=self.purchaser)
        response = self.client.post(
            "/api/invite/",
            {"ticketId": self.ticket.id, "email": "guest@example.com"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"success": True})

    @override_settings(DEBUG=True)
    def test_invite_endpoint_echoes_url_in_debug(self):
        self.client.force_authenticate(user=self.purchaser)
        response = self.client.post(
            "/api/invite/",
            {"ticketId": self.ticket.id, "email": "guest@example.com"},
            format="json",
        )

        self.ticket.refresh_from_db()
        self.assertEqual(
            response.data["inviteUrl"],
            build_invite_url(settings.FRONTEND_BASE_URL, self.ticket.invite_token),
        )

    def test_invite_for_foreign_ticket_is_not_found(self):
        self.client.force_authenticate(user=self.stranger)
        response = self.client.post(
            "/api/invite/",
            {"ticketId": self.ticket.id, "email": "guest@example.com"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["code"], "NOT_FOUND")

    def test_invite_twice_is_conflict(self):
        self.client.force_authenticate(user=self.purchaser)
        payload = {"ticketId": self.ticket.id, "email": "guest@example.com"}
        self.client.post("/api/invite/", payload, format="json")
        response = self.client.post("/api/invite/", payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_resend_endpoint(self):
        invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        self.client.force_authenticate(user=self.purchaser)
        response = self.client.post(
            "/api/invite/resend/", {"ticketId": self.ticket.id}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["success"])

    def test_invite_details_are_public(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        response = self.client.get(f"/api/invite/{result.ticket.invite_token}/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            response.data,
            {
                "ticketNumber": self.ticket.ticket_number,
                "ticketTypeName": "Conference",
                "purchaserName": "Example KK",
                "inviteEmail": "guest@example.com",
            },
        )

    def test_unknown_invite_is_not_found(self):
        response = self.client.get("/api/invite/unknown-token/")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["error"], INVITE_NOT_FOUND)

    def test_accept_endpoint(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        self.client.force_authenticate(user=self.guest)
        response = self.client.post(
            f"/api/invite/{result.ticket.invite_token}/accept/",
            {"userId": self.guest.id},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {"success": True, "ticketId": self.ticket.id})

        second = self.client.post(
            f"/api/invite/{result.ticket.invite_token}/accept/", {}, format="json"
        )
        self.assertEqual(second.status_code, status.HTTP_404_NOT_FOUND)

    def test_accept_for_other_user_is_forbidden(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        self.client.force_authenticate(user=self.guest)
        response = self.client.post(
            f"/api/invite/{result.ticket.invite_token}/accept/",
            {"userId": self.stranger.id},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.ticket.refresh_from_db()
        self.assertEqual(self.ticket.status, Ticket.Status.INVITED)

    def test_accept_requires_authentication(self):
        result = invite_ticket(
            actor=self.purchaser, ticket_id=self.ticket.id, email="guest@example.com", base_url=BASE_URL
        )
        response = self.client.post(
            f"/api/invite/{result.ticket.invite_token}/accept/", {}, format="json"
        )
        self.assertIn(
            response.status_code,
            (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN),
        )
