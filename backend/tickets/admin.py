from django.contrib import admin

from .models import Order, OrderAuditLog, OrderItem, PromoCode, PromoCodeUse, Ticket, TicketType


@admin.register(TicketType)
class TicketTypeAdmin(admin.ModelAdmin):
    list_display = ("name", "price", "is_active", "includes_onsite", "includes_online", "includes_party")
    list_filter = ("is_active",)
    search_fields = ("name",)


@admin.register(PromoCode)
class PromoCodeAdmin(admin.ModelAdmin):
    list_display = (
        "code",
        "name",
        "discount_type",
        "current_uses",
        "max_total_uses",
        "valid_until",
        "is_active",
    )
    list_filter = ("discount_type", "is_active", "category")
    search_fields = ("code", "name")
    readonly_fields = ("current_uses",)


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("ticket_type", "quantity", "unit_price")
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "purchaser", "status", "payment_method", "total", "created_at", "paid_at")
    list_filter = ("status", "payment_method")
    search_fields = ("order_number", "purchaser__email", "purchaser__name")
    readonly_fields = (
        "order_number",
        "subtotal",
        "discount",
        "tax",
        "total",
        "stripe_checkout_session_id",
        "stripe_invoice_id",
        "paid_at",
        "created_at",
        "updated_at",
    )
    inlines = [OrderItemInline]


@admin.register(PromoCodeUse)
class PromoCodeUseAdmin(admin.ModelAdmin):
    list_display = ("promo_code", "user", "order", "created_at")
    search_fields = ("promo_code__code", "user__email", "order__order_number")


@admin.register(Ticket)
class TicketAdmin(admin.ModelAdmin):
    list_display = ("ticket_number", "ticket_type", "status", "purchaser", "attendee", "invite_email")
    list_filter = ("status", "ticket_type")
    search_fields = ("ticket_number", "invite_email", "purchaser__email", "attendee__email")
    readonly_fields = ("ticket_number", "invite_token", "invite_sent_at", "assigned_at")


@admin.register(OrderAuditLog)
class OrderAuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "order", "ticket", "actor", "created_at")
    list_filter = ("action",)
    search_fields = ("action", "message", "order__order_number")
    readonly_fields = ("action", "message", "metadata", "actor", "order", "ticket", "created_at")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
