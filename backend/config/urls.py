from django.conf import settings
from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView
from rest_framework.routers import DefaultRouter

from tickets.views import (
    CheckoutView,
    InviteAcceptView,
    InviteDetailView,
    InviteResendView,
    InviteView,
    OrderViewSet,
    PromoCodeValidateView,
    StripeWebhookView,
    TicketTypeViewSet,
    TicketViewSet,
)

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")
router.register(r"tickets", TicketViewSet, basename="ticket")
router.register(r"ticket-types", TicketTypeViewSet, basename="ticket-type")


def health_check(request):
    return JsonResponse({"status": "ok"})


schema_view = (
    SpectacularAPIView.as_view(throttle_classes=[])
    if settings.DEBUG
    else SpectacularAPIView.as_view()
)

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/health/", health_check, name="health-check"),
    path("api/checkout/", CheckoutView.as_view(), name="checkout"),
    path("api/promo-codes/validate/", PromoCodeValidateView.as_view(), name="promo-code-validate"),
    path("api/stripe/webhook/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("api/invite/", InviteView.as_view(), name="invite"),
    path("api/invite/resend/", InviteResendView.as_view(), name="invite-resend"),
    path("api/invite/<str:token>/", InviteDetailView.as_view(), name="invite-detail"),
    path("api/invite/<str:token>/accept/", InviteAcceptView.as_view(), name="invite-accept"),
    path("api/", include(router.urls)),
    path("api/schema/", schema_view, name="schema"),
    path("api/docs/", SpectacularSwaggerView.as_view(url_name="schema"), name="docs"),
]
