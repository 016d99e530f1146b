from __future__ import annotations

from dataclasses import dataclass

from django.utils import timezone

from .models import PromoCode, PromoCodeUse

INVALID_CODE = "invalid_code"
EXPIRED = "expired"
USAGE_LIMIT_REACHED = "usage_limit_reached"
ALREADY_USED = "already_used"

REASON_MESSAGES = {
    INVALID_CODE: "Invalid promo code.",
    EXPIRED: "This promo code is not valid at this time.",
    USAGE_LIMIT_REACHED: "This promo code has reached its usage limit.",
    ALREADY_USED: "You have already used this promo code.",
}


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    promo_code: PromoCode | None = None
    reason: str = ""

    @property
    def message(self) -> str:
        return REASON_MESSAGES.get(self.reason, "")


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def check_promo_code(promo_code: PromoCode | None, *, user=None, now=None) -> PromoValidation:
    """Run the usage checks in order and stop at the first failure.

    Without a user only the code-level checks run; the per-user cap is
    checked again at checkout for the acting purchaser.
    """
    if promo_code is None or not promo_code.is_active:
        return PromoValidation(valid=False, reason=INVALID_CODE)

    now = now or timezone.now()
    if promo_code.valid_from and now < promo_code.valid_from:
        return PromoValidation(valid=False, reason=EXPIRED)
    if promo_code.valid_until and now > promo_code.valid_until:
        return PromoValidation(valid=False, reason=EXPIRED)

    if (
        promo_code.max_total_uses is not None
        and promo_code.current_uses >= promo_code.max_total_uses
    ):
        return PromoValidation(valid=False, reason=USAGE_LIMIT_REACHED)

    if user is not None and getattr(user, "is_authenticated", False):
        if promo_code.max_uses_per_user is not None:
            used = PromoCodeUse.objects.filter(promo_code=promo_code, user=user).count()
            if used >= promo_code.max_uses_per_user:
                return PromoValidation(valid=False, reason=ALREADY_USED)

    return PromoValidation(valid=True, promo_code=promo_code)


def validate_promo_code(code: str, user=None, now=None) -> PromoValidation:
    normalized = normalize_code(code)
    if not normalized:
        return PromoValidation(valid=False, reason=INVALID_CODE)
    promo_code = PromoCode.objects.filter(code=normalized).first()
    return check_promo_code(promo_code, user=user, now=now)


def validate_promo_code_id(promo_code_id, user, now=None) -> PromoValidation:
    promo_code = PromoCode.objects.filter(pk=promo_code_id).first()
    return check_promo_code(promo_code, user=user, now=now)
