import logging

from django.conf import settings
from django.db.models import Q, Sum
from django.db.models.functions import Coalesce
from django_filters.rest_framework import DjangoFilterBackend
from drf_spectacular.utils import extend_schema
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import IsConferenceAdmin
from config.pagination import OptionalPaginationListMixin

from .checkout import create_checkout
from .errors import AuthorizationError, SignatureError
from .invites import accept_invite, inspect_invite, invite_ticket, resend_invite
from .models import Order, Ticket, TicketType
from .payments import construct_webhook_event
from .promotions import validate_promo_code
from .serializers import (
    CheckoutRequestSerializer,
    CheckoutResponseSerializer,
    InviteAcceptRequestSerializer,
    InviteAcceptResponseSerializer,
    InviteDetailSerializer,
    InviteRequestSerializer,
    InviteResendRequestSerializer,
    InviteResponseSerializer,
    OrderListSerializer,
    OrderSerializer,
    PromoCodeSummarySerializer,
    PromoCodeValidateRequestSerializer,
    SuccessSerializer,
    TicketSerializer,
    TicketTypeSerializer,
)
from .services import cancel_order, issue_tickets_for_order
from .tasks import process_stripe_webhook_event

logger = logging.getLogger(__name__)


def _invite_response(result) -> dict:
    payload = {"success": True}
    if settings.DEBUG:
        payload["inviteUrl"] = result.invite_url
    return payload


class CheckoutView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=CheckoutRequestSerializer, responses=CheckoutResponseSerializer)
    def post(self, request):
        serializer = CheckoutRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        result = create_checkout(
            purchaser=request.user,
            items=data["items"],
            payment_method=data["payment_method"],
            promo_code_id=data.get("promo_code_id"),
            company_info=data.get("company_info"),
            base_url=settings.FRONTEND_BASE_URL,
        )
        if result.invoice_url:
            payload = {
                "orderId": result.order.pk,
                "invoiceUrl": result.invoice_url,
                "invoicePdf": result.invoice_pdf_url,
            }
        else:
            payload = {"orderId": result.order.pk, "url": result.url}
        return Response(payload, status=status.HTTP_200_OK)


class PromoCodeValidateView(APIView):
    permission_classes = [permissions.AllowAny]

    @extend_schema(request=PromoCodeValidateRequestSerializer)
    def post(self, request):
        serializer = PromoCodeValidateRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user = request.user if request.user.is_authenticated else None
        validation = validate_promo_code(serializer.validated_data["code"], user=user)
        if not validation.valid:
            return Response({"valid": False, "error": validation.message}, status=status.HTTP_200_OK)
        return Response(
            {"valid": True, "promoCode": PromoCodeSummarySerializer(validation.promo_code).data},
            status=status.HTTP_200_OK,
        )


class StripeWebhookView(APIView):
    permission_classes = [permissions.AllowAny]
    authentication_classes = []
    # Signed Stripe deliveries are never throttled.
    throttle_classes = []

    @extend_schema(exclude=True)
    def post(self, request, *args, **kwargs):
        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured")
            return Response(
                {"error": "Webhook secret not configured"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        try:
            event = construct_webhook_event(
                request.body,
                request.META.get("HTTP_STRIPE_SIGNATURE", ""),
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except SignatureError as exc:
            logger.warning("Rejected Stripe webhook: %s", exc.message)
            return Response({"error": exc.message}, status=status.HTTP_400_BAD_REQUEST)

        data_object = (event.get("data") or {}).get("object") or {}
        event_payload = {
            "event_id": event.get("id"),
            "event_type": event.get("type"),
            "id": data_object.get("id"),
            "metadata": data_object.get("metadata") or {},
            "payment_status": data_object.get("payment_status"),
            "payment_intent": data_object.get("payment_intent"),
            "customer": data_object.get("customer"),
        }
        try:
            process_stripe_webhook_event.delay(event_payload)
        except Exception:  # noqa: BLE001
            # Stripe retries on non-2xx; the reconcile task picks up what the queue missed.
            logger.exception("Could not process Stripe event %s", event.get("id"))
        return Response({"received": True}, status=status.HTTP_200_OK)


class InviteView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=InviteRequestSerializer, responses=InviteResponseSerializer)
    def post(self, request):
        serializer = InviteRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = invite_ticket(
            actor=request.user,
            ticket_id=serializer.validated_data["ticket_id"],
            email=serializer.validated_data["email"],
            base_url=settings.FRONTEND_BASE_URL,
        )
        return Response(_invite_response(result), status=status.HTTP_200_OK)


class InviteResendView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=InviteResendRequestSerializer, responses=InviteResponseSerializer)
    def post(self, request):
        serializer = InviteResendRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = resend_invite(
            actor=request.user,
            ticket_id=serializer.validated_data["ticket_id"],
            email=serializer.validated_data.get("email") or None,
            base_url=settings.FRONTEND_BASE_URL,
        )
        return Response(_invite_response(result), status=status.HTTP_200_OK)


class InviteDetailView(APIView):
    permission_classes = [permissions.AllowAny]

    @extend_schema(responses=InviteDetailSerializer)
    def get(self, request, token):
        ticket = inspect_invite(token)
        return Response(InviteDetailSerializer(ticket).data, status=status.HTTP_200_OK)


class InviteAcceptView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(request=InviteAcceptRequestSerializer, responses=InviteAcceptResponseSerializer)
    def post(self, request, token):
        serializer = InviteAcceptRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user_id = serializer.validated_data.get("user_id")
        if user_id is not None and user_id != request.user.pk:
            raise AuthorizationError("Invitations can only be accepted for your own account.")
        ticket = accept_invite(token=token, attendee=request.user)
        return Response({"success": True, "ticketId": ticket.pk}, status=status.HTTP_200_OK)


class OrderViewSet(OptionalPaginationListMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = OrderSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_value_regex = r"\d+"
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ["status", "payment_method"]

    def get_queryset(self):
        if getattr(self, "swagger_fake_view", False):
            return Order.objects.none()
        user = self.request.user
        if not user or not user.is_authenticated:
            return Order.objects.none()
        queryset = Order.objects.select_related("promo_code").annotate(
            item_quantity=Coalesce(Sum("items__quantity"), 0)
        )
        if self.action == "issue_tickets" and user.has_role("admin"):
            return queryset
        if self.action != "list":
            queryset = queryset.prefetch_related("items__ticket_type")
        return queryset.filter(purchaser=user).order_by("-created_at")

    def get_permissions(self):
        if self.action == "issue_tickets":
            return [IsConferenceAdmin()]
        return [permissions.IsAuthenticated()]

    def get_serializer_class(self):
        if self.action == "list":
            return OrderListSerializer
        return OrderSerializer

    @extend_schema(request=None, responses=SuccessSerializer)
    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        cancel_order(actor=request.user, order_id=pk)
        return Response({"success": True}, status=status.HTTP_200_OK)

    @extend_schema(request=None, responses=OrderSerializer)
    @action(detail=True, methods=["post"], url_path="issue-tickets")
    def issue_tickets(self, request, pk=None):
        order = self.get_object()
        tickets = issue_tickets_for_order(order, actor=request.user)
        order.refresh_from_db()
        data = OrderSerializer(order, context=self.get_serializer_context()).data
        data["issued_ticket_count"] = len(tickets)
        return Response(data, status=status.HTTP_200_OK)


class TicketViewSet(OptionalPaginationListMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = TicketSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_value_regex = r"\d+"
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ["status", "ticket_type"]

    def get_queryset(self):
        if getattr(self, "swagger_fake_view", False):
            return Ticket.objects.none()
        user = self.request.user
        return (
            Ticket.objects.select_related("ticket_type", "order", "purchaser", "attendee")
            .filter(Q(purchaser=user) | Q(attendee=user))
            .order_by("id")
        )


class TicketTypeViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = TicketTypeSerializer
    permission_classes = [permissions.AllowAny]
    pagination_class = None

    def get_queryset(self):
        return TicketType.objects.filter(is_active=True).order_by("price", "id")
