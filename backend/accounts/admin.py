from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import User


@admin.register(User)
class CustomUserAdmin(UserAdmin):
    fieldsets = UserAdmin.fieldsets + (
        (
            "Conference",
            {
                "fields": (
                    "name",
                    "account_type",
                    "roles",
                    "company_name",
                    "company_address",
                    "company_phone",
                )
            },
        ),
    )
    list_display = (
        "username",
        "email",
        "name",
        "account_type",
        "roles",
        "is_staff",
    )
    list_filter = UserAdmin.list_filter + ("account_type",)
