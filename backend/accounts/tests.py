from unittest.mock import patch

from django.db import connection
from django.test import TestCase, override_settings
from rest_framework.test import APIRequestFactory

from .email_utils import send_resend_email
from .models import User
from .permissions import IsConferenceAdmin


class UserModelTests(TestCase):
    def test_default_role_is_purchaser(self):
        user = User.objects.create_user(username="buyer", password="pass12345")
        user.refresh_from_db()
        self.assertEqual(user.roles, ["purchaser"])
        self.assertEqual(user.account_type, User.AccountType.INDIVIDUAL)
        self.assertFalse(user.is_company)

    def test_add_role_keeps_existing_roles(self):
        user = User.objects.create_user(username="guest", password="pass12345")

        self.assertTrue(user.add_role("attendee"))
        self.assertFalse(user.add_role("attendee"))

        user.refresh_from_db()
        self.assertEqual(user.roles, ["purchaser", "attendee"])
        self.assertTrue(user.has_role("purchaser"))
        self.assertTrue(user.has_role("attendee"))
        self.assertFalse(user.has_role("admin"))

    def test_display_name_falls_back_to_username(self):
        user = User.objects.create_user(username="plain", password="pass12345")
        self.assertEqual(user.display_name, "plain")

        user.first_name = "Hanako"
        user.last_name = "Yamada"
        self.assertEqual(user.display_name, "Hanako Yamada")

        user.name = "Yamada Hanako"
        self.assertEqual(user.display_name, "Yamada Hanako")

    def test_stripe_customer_id_is_encrypted_at_rest(self):
        user = User.objects.create_user(username="company", password="pass12345")
        user.stripe_customer_id = "cus_secret_123"
        user.save(update_fields=["stripe_customer_id"])

        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT stripe_customer_id FROM accounts_user WHERE id = %s",
                [user.pk],
            )
            stored = cursor.fetchone()[0]

        self.assertNotEqual(stored, "cus_secret_123")
        user.refresh_from_db()
        self.assertEqual(user.stripe_customer_id, "cus_secret_123")


class ConferenceAdminPermissionTests(TestCase):
    def setUp(self):
        self.factory = APIRequestFactory()

    def _request_for(self, user):
        request = self.factory.get("/")
        request.user = user
        return request

    def test_admin_role_is_allowed(self):
        admin = User.objects.create_user(
            username="staff", password="pass12345", roles=["purchaser", "admin"]
        )
        self.assertTrue(IsConferenceAdmin().has_permission(self._request_for(admin), None))

    def test_purchaser_is_denied(self):
        user = User.objects.create_user(username="buyer", password="pass12345")
        self.assertFalse(IsConferenceAdmin().has_permission(self._request_for(user), None))


class ResendEmailTests(TestCase):
    @override_settings(RESEND_API_KEY="")
    def test_missing_api_key_skips_delivery(self):
        success, error = send_resend_email("to@example.com", "Subject", "<p>Hi</p>", "Hi")
        self.assertFalse(success)
        self.assertEqual(error, "missing_resend_api_key")

    @override_settings(
        RESEND_API_KEY="re_test",
        RESEND_FROM_EMAIL="tickets@example.com",
        RESEND_REPLY_TO="support@example.com",
    )
    @patch("accounts.email_utils.resend.Emails.send")
    def test_send_builds_payload(self, send_mock):
        success, error = send_resend_email("to@example.com", "Subject", "<p>Hi</p>", "Hi")

        self.assertTrue(success)
        self.assertEqual(error, "")
        payload = send_mock.call_args.args[0]
        self.assertEqual(payload["to"], ["to@example.com"])
        self.assertEqual(payload["from"], "tickets@example.com")
        self.assertEqual(payload["reply_to"], "support@example.com")
        self.assertEqual(payload["text"], "Hi")
        self.assertEqual(set(payload), {"from", "to", "subject", "reply_to", "html", "text"})

    @override_settings(RESEND_API_KEY="re_test")
    @patch("accounts.email_utils.resend.Emails.send", side_effect=RuntimeError("boom"))
    def test_send_failure_is_reported_not_raised(self, _send_mock):
        success, error = send_resend_email("to@example.com", "Subject", "<p>Hi</p>", "Hi")
        self.assertFalse(success)
        self.assertEqual(error, "boom")
