from rest_framework import serializers

from .models import Order, OrderItem, PromoCode, Ticket, TicketType


class TicketTypeSerializer(serializers.ModelSerializer):
    class Meta:
        model = TicketType
        fields = [
            "id",
            "name",
            "description",
            "price",
            "includes_onsite",
            "includes_online",
            "includes_party",
        ]


class OrderItemSerializer(serializers.ModelSerializer):
    ticket_type = TicketTypeSerializer(read_only=True)

    class Meta:
        model = OrderItem
        fields = ["id", "ticket_type", "quantity", "unit_price", "line_total"]


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    promo_code = serializers.SlugRelatedField(slug_field="code", read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "status",
            "payment_method",
            "promo_code",
            "currency",
            "subtotal",
            "discount",
            "tax",
            "total",
            "invoice_url",
            "invoice_pdf_url",
            "paid_at",
            "created_at",
            "updated_at",
            "items",
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    item_quantity = serializers.IntegerField(read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "status",
            "payment_method",
            "currency",
            "total",
            "item_quantity",
            "paid_at",
            "created_at",
        ]
        read_only_fields = fields


class TicketSerializer(serializers.ModelSerializer):
    ticket_type = TicketTypeSerializer(read_only=True)
    order_number = serializers.CharField(source="order.order_number", read_only=True)
    purchaser_name = serializers.CharField(source="purchaser.display_name", read_only=True)
    attendee_name = serializers.CharField(
        source="attendee.display_name", read_only=True, default=None
    )

    class Meta:
        model = Ticket
        fields = [
            "id",
            "ticket_number",
            "order_number",
            "ticket_type",
            "status",
            "purchaser_name",
            "attendee_name",
            "invite_email",
            "invite_sent_at",
            "assigned_at",
            "created_at",
        ]
        read_only_fields = fields


class CheckoutItemSerializer(serializers.Serializer):
    ticketTypeId = serializers.IntegerField(source="ticket_type_id")
    quantity = serializers.IntegerField(min_value=1)


class CompanyInfoSerializer(serializers.Serializer):
    name = serializers.CharField(source="company_name", required=False, allow_blank=True)
    address = serializers.CharField(source="company_address", required=False, allow_blank=True)
    phone = serializers.CharField(source="company_phone", required=False, allow_blank=True)


class CheckoutRequestSerializer(serializers.Serializer):
    items = CheckoutItemSerializer(many=True, allow_empty=False)
    promoCodeId = serializers.IntegerField(source="promo_code_id", required=False, allow_null=True)
    paymentMethod = serializers.ChoiceField(
        source="payment_method",
        choices=Order.PaymentMethod.choices,
        default=Order.PaymentMethod.CARD,
    )
    companyInfo = CompanyInfoSerializer(source="company_info", required=False, allow_null=True)


class CheckoutResponseSerializer(serializers.Serializer):
    orderId = serializers.IntegerField()
    url = serializers.CharField(required=False)
    invoiceUrl = serializers.CharField(required=False)
    invoicePdf = serializers.CharField(required=False)


class PromoCodeValidateRequestSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50, trim_whitespace=True)


class PromoCodeSummarySerializer(serializers.ModelSerializer):
    discountType = serializers.CharField(source="discount_type")
    fixedPrice = serializers.IntegerField(source="fixed_price", allow_null=True)

    class Meta:
        model = PromoCode
        fields = ["id", "code", "name", "discountType", "fixedPrice", "category"]


class InviteRequestSerializer(serializers.Serializer):
    ticketId = serializers.IntegerField(source="ticket_id")
    email = serializers.CharField(max_length=254, trim_whitespace=True)


class InviteResendRequestSerializer(serializers.Serializer):
    ticketId = serializers.IntegerField(source="ticket_id")
    email = serializers.CharField(
        max_length=254, trim_whitespace=True, required=False, allow_blank=True
    )


class InviteResponseSerializer(serializers.Serializer):
    success = serializers.BooleanField()
    inviteUrl = serializers.CharField(required=False)


class InviteDetailSerializer(serializers.ModelSerializer):
    ticketNumber = serializers.CharField(source="ticket_number")
    ticketTypeName = serializers.CharField(source="ticket_type.name")
    purchaserName = serializers.CharField(source="purchaser.display_name")
    inviteEmail = serializers.CharField(source="invite_email")

    class Meta:
        model = Ticket
        fields = ["ticketNumber", "ticketTypeName", "purchaserName", "inviteEmail"]


class InviteAcceptRequestSerializer(serializers.Serializer):
    userId = serializers.IntegerField(source="user_id", required=False, allow_null=True)


class InviteAcceptResponseSerializer(serializers.Serializer):
    success = serializers.BooleanField()
    ticketId = serializers.IntegerField()


class SuccessSerializer(serializers.Serializer):
    success = serializers.BooleanField()
