"""Promo code validation for quotes."""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ratewise.models.rates import PromoCode
from ratewise.services.calendar import nights_between
from ratewise.services.results import ErrorCode, ValidationFailed

logger = logging.getLogger(__name__)


class PromoInvalid(ValidationFailed):
    def __init__(self, message: str, **details):
        super().__init__(message, ErrorCode.PROMO_INVALID, **details)


@dataclass(frozen=True)
class PromoOutcome:
    code: str
    applicable: bool
    discount_type: str
    value: Decimal
    currency: str | None = None
    reason: str | None = None

    def apply(self, stay_value: Decimal) -> Decimal:
        """Discounted stay value; never below zero. ``value`` must already be in the stay currency."""
        if not self.applicable:
            return stay_value
        if self.discount_type == "percentage":
            discounted = stay_value * (Decimal(1) - self.value / Decimal(100))
        else:
            discounted = stay_value - self.value
        return max(discounted, Decimal(0))

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "applied": self.applicable,
            "discount_type": self.discount_type,
            "value": str(self.value),
            "currency": self.currency,
            "reason": self.reason,
        }


async def validate_promo(
    db: AsyncSession,
    hotel_id: str,
    code: str,
    stay_value: Decimal,
    start: date,
    end: date,
) -> PromoOutcome:
    """Look up a promo code for a stay.

    Unknown, inactive, expired or exhausted codes raise PromoInvalid. A valid code
    whose minimums are not met comes back with ``applicable=False``.
    """
    normalized = code.strip().upper()
    result = await db.execute(
        select(PromoCode).where(PromoCode.hotel_id == hotel_id, PromoCode.code == normalized)
    )
    promo = result.scalar_one_or_none()
    if promo is None or not promo.active:
        raise PromoInvalid(f"Promo code '{normalized}' is not valid", promo_code=normalized)
    if start < promo.valid_from or start > promo.valid_to:
        raise PromoInvalid(f"Promo code '{normalized}' has expired", promo_code=normalized)
    if promo.max_uses is not None and promo.uses >= promo.max_uses:
        raise PromoInvalid(f"Promo code '{normalized}' has been fully redeemed", promo_code=normalized)

    outcome = dict(
        code=normalized,
        discount_type=promo.discount_type,
        value=Decimal(promo.value),
        currency=promo.currency,
    )
    if promo.min_nights and nights_between(start, end) < promo.min_nights:
        return PromoOutcome(applicable=False, reason=f"requires {promo.min_nights} nights", **outcome)
    if promo.min_stay_value is not None and stay_value < Decimal(promo.min_stay_value):
        return PromoOutcome(applicable=False, reason=f"requires a stay value of {promo.min_stay_value}", **outcome)
    return PromoOutcome(applicable=True, **outcome)
