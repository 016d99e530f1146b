from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils.translation import gettext_lazy as _

from tickets.fields import EncryptedCharField


def default_roles() -> list[str]:
    return [User.Roles.PURCHASER]


class User(AbstractUser):
    class AccountType(models.TextChoices):
        INDIVIDUAL = "individual", _("Individual")
        COMPANY = "company", _("Company")

    class Roles(models.TextChoices):
        PURCHASER = "purchaser", _("Purchaser")
        ATTENDEE = "attendee", _("Attendee")
        ADMIN = "admin", _("Admin")

    name = models.CharField(max_length=255, blank=True)
    account_type = models.CharField(
        max_length=20,
        choices=AccountType.choices,
        default=AccountType.INDIVIDUAL,
    )
    roles = models.JSONField(default=default_roles, blank=True)
    company_name = models.CharField(max_length=255, blank=True)
    company_address = models.CharField(max_length=500, blank=True)
    company_phone = models.CharField(max_length=50, blank=True)
    stripe_customer_id = EncryptedCharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def display_name(self) -> str:
        return self.name or self.get_full_name() or self.username

    @property
    def is_company(self) -> bool:
        return self.account_type == self.AccountType.COMPANY

    def has_role(self, role: str) -> bool:
        return role in (self.roles or [])

    def add_role(self, role: str) -> bool:
        """Add a capability tag without touching the others."""
        current = list(self.roles or [])
        if role in current:
            return False
        current.append(role)
        self.roles = current
        self.save(update_fields=["roles", "updated_at"])
        return True
