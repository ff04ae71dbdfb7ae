"""Coupon validation and pricing.

Validation runs a fixed sequence of checks and raises a typed
``CouponValidationError`` for the first one that fails, so callers can tell the
attendee exactly why a code was refused.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db.models import Count, F, Q, Sum
from django.utils import timezone

from django_ticketing.registration.exceptions import (
    CouponExpired,
    CouponInactive,
    CouponNotYetValid,
    CouponUsageLimitReached,
    CouponValidationError,
    CouponWrongEventScope,
    InvalidCouponCode,
)
from django_ticketing.registration.models import Coupon, Registration

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")


@dataclass(frozen=True)
class PricingQuote:
    """What an attendee would pay for one ticket.

    Attributes:
        original_price: The event's ticket price.
        discount_amount: The coupon discount; never more than ``original_price``.
        final_price: ``original_price - discount_amount``.
        coupon_code: The normalized code that was applied, or ``""``.
        error: Why a requested coupon was not applied, when it was not.
        reason: Machine-readable form of ``error``.
    """

    original_price: Decimal
    discount_amount: Decimal
    final_price: Decimal
    coupon_code: str = ""
    error: str | None = None
    reason: str | None = None

    @property
    def is_free(self) -> bool:
        return self.final_price <= 0

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-serializable representation."""
        return {
            "original_price": str(self.original_price),
            "discount_amount": str(self.discount_amount),
            "final_price": str(self.final_price),
            "is_free": self.is_free,
            "coupon_code": self.coupon_code,
            "error": self.error,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class CouponStats:
    """Usage report for one coupon.

    Attributes:
        code: The coupon code.
        total_uses: Durable uses recorded on the coupon.
        max_uses: The legacy total limit, ``None`` when unlimited.
        remaining_uses: Uses left under ``max_uses``, ``None`` when unlimited.
        registrations: One row per live registration that applied the code.
        total_revenue: Money received from those registrations.
        total_discount: Discount granted to confirmed registrations.
    """

    code: str
    total_uses: int
    max_uses: int | None
    remaining_uses: int | None
    registrations: list[dict[str, object]]
    total_revenue: Decimal
    total_discount: Decimal


@dataclass(frozen=True)
class GlobalCouponStats:
    """Coupon totals across every event, optionally for one coupon year."""

    year: int | None
    total_coupons: int
    active_coupons: int
    hubspot_linked: int
    manual_coupons: int
    total_uses: int
    total_max_uses: int
    by_event: list[dict[str, object]]


class CouponService:
    """Stateless helpers for coupon validation, pricing and usage reports."""

    @staticmethod
    def validate(event, code: str, *, now=None) -> Coupon:
        """Look up ``code`` and check it can be used for ``event`` right now.

        Checks run in order and the first failure wins: existence, active
        flag, coupon year, start of the validity window, end of the validity
        window, event scope, then usage limits.

        Returns:
            The matching coupon.

        Raises:
            CouponValidationError: A subclass naming the failed check.
        """
        now = now or timezone.now()
        normalized = Coupon.normalize_code(code)
        coupon = Coupon.objects.by_code(normalized).first() if normalized else None
        if coupon is None:
            raise InvalidCouponCode
        if not coupon.is_active:
            raise CouponInactive
        if coupon.is_expired_by_year(now):
            raise CouponExpired
        if coupon.valid_from and now < coupon.valid_from:
            raise CouponNotYetValid
        if coupon.valid_until and now > coupon.valid_until:
            raise CouponExpired
        if not coupon.can_be_used_for_event(event):
            raise CouponWrongEventScope
        CouponService.check_usage_limits(coupon, event, now=now)
        return coupon

    @staticmethod
    def check_usage_limits(coupon: Coupon, event, *, now=None, include_reservations: bool = True) -> None:
        """Raise ``CouponUsageLimitReached`` if ``coupon`` has no use left for ``event``.

        The yearly and per-event limits count confirmed registrations plus,
        when ``include_reservations`` is set, active soft holds. The legacy
        ``max_uses`` limit is checked against ``used_count`` alone.
        """
        now = now or timezone.now()
        if coupon.max_uses_global is not None:
            used = coupon.uses_in_year(CouponService._coupon_year(coupon, now))
            if include_reservations:
                used += CouponService._held_in_year(coupon, now)
            if used >= coupon.max_uses_global:
                raise CouponUsageLimitReached
        if coupon.max_uses_per_event is not None:
            used = coupon.uses_for_event(event)
            if include_reservations:
                used += coupon.reservations.active(now).filter(event=event).count()
            if used >= coupon.max_uses_per_event:
                raise CouponUsageLimitReached
        if not coupon.has_uses_remaining():
            raise CouponUsageLimitReached

    @staticmethod
    def effective_remaining(coupon: Coupon, event, *, now=None) -> int | None:
        """Return the uses still open to new holders, or ``None`` when unlimited.

        Active reservations count against every limit here, so the figure is
        what a new attendee could still claim.
        """
        now = now or timezone.now()
        remaining: list[int] = []
        if coupon.max_uses is not None:
            held = coupon.reservations.active(now).count()
            remaining.append(coupon.max_uses - coupon.used_count - held)
        if coupon.max_uses_global is not None:
            year = CouponService._coupon_year(coupon, now)
            used = coupon.uses_in_year(year) + CouponService._held_in_year(coupon, now)
            remaining.append(coupon.max_uses_global - used)
        if coupon.max_uses_per_event is not None:
            used = coupon.uses_for_event(event) + coupon.reservations.active(now).filter(event=event).count()
            remaining.append(coupon.max_uses_per_event - used)
        if not remaining:
            return None
        return max(0, min(remaining))

    @staticmethod
    def price_for(event, coupon: Coupon | None) -> PricingQuote:
        """Price one ticket for ``event`` with ``coupon`` applied (if any)."""
        price = Decimal(event.ticket_price)
        if coupon is None:
            return PricingQuote(original_price=price, discount_amount=Decimal("0.00"), final_price=price)
        discount = coupon.calculate_discount(price)
        return PricingQuote(
            original_price=price,
            discount_amount=discount,
            final_price=price - discount,
            coupon_code=coupon.code,
        )

    @staticmethod
    def calculate_pricing(event, code: str = "", *, now=None) -> PricingQuote:
        """Price one ticket, falling back to full price if ``code`` is unusable."""
        if not code:
            return CouponService.price_for(event, None)
        try:
            coupon = CouponService.validate(event, code, now=now)
        except CouponValidationError as exc:
            logger.info("Coupon '%s' not applied for event '%s': %s", code, event.slug, exc.reason)
            return CouponService.full_price(event, exc)
        return CouponService.price_for(event, coupon)

    @staticmethod
    def full_price(event, error: CouponValidationError) -> PricingQuote:
        """Return the undiscounted quote, annotated with why a coupon was refused."""
        price = Decimal(event.ticket_price)
        return PricingQuote(
            original_price=price,
            discount_amount=Decimal("0.00"),
            final_price=price,
            error=error.message,
            reason=error.reason,
        )

    @staticmethod
    def stats(coupon: Coupon) -> CouponStats:
        """Report how ``coupon`` has been used and what it brought in."""
        registrations = Registration.objects.filter(coupon_code=coupon.code).select_related("event")
        totals = registrations.aggregate(
            revenue=Sum("paid_amount"),
            discount=Sum("discount_amount", filter=Q(registration_status=Registration.Status.CONFIRMED)),
        )
        remaining = None if coupon.max_uses is None else max(0, coupon.max_uses - coupon.used_count)
        rows = [
            {
                "id": registration.pk,
                "name": registration.full_name,
                "email": registration.email,
                "event": registration.event.name,
                "registration_status": registration.registration_status,
                "payment_status": registration.payment_status,
                "paid_amount": registration.paid_amount,
                "discount_amount": registration.discount_amount,
                "created_at": registration.created_at,
            }
            for registration in registrations
        ]
        return CouponStats(
            code=coupon.code,
            total_uses=coupon.used_count,
            max_uses=coupon.max_uses,
            remaining_uses=remaining,
            registrations=rows,
            total_revenue=totals["revenue"] or _ZERO,
            total_discount=totals["discount"] or _ZERO,
        )

    @staticmethod
    def global_stats(year: int | None = None) -> GlobalCouponStats:
        """Summarize all live coupons, or those of one coupon ``year``."""
        coupons = Coupon.objects.all()
        if year is not None:
            coupons = coupons.filter(year=year)
        totals = coupons.aggregate(
            total=Count("id"),
            active=Count("id", filter=Q(is_active=True)),
            hubspot_linked=Count("id", filter=~Q(hubspot_company_id="")),
            manual=Count("id", filter=Q(is_manual=True)),
            uses=Sum("used_count"),
            max_uses=Sum("max_uses"),
        )
        by_event = [
            {
                "event_id": row["event_id"],
                "event_name": row["event__name"] or "All events",
                "count": row["count"],
                "uses": row["uses"] or 0,
            }
            for row in coupons.order_by()
            .values("event_id", "event__name")
            .annotate(count=Count("id"), uses=Sum("used_count"))
            .order_by(F("event__name").asc(nulls_first=True))
        ]
        return GlobalCouponStats(
            year=year,
            total_coupons=totals["total"],
            active_coupons=totals["active"],
            hubspot_linked=totals["hubspot_linked"],
            manual_coupons=totals["manual"],
            total_uses=totals["uses"] or 0,
            total_max_uses=totals["max_uses"] or 0,
            by_event=by_event,
        )

    @staticmethod
    def _coupon_year(coupon: Coupon, now) -> int:
        return coupon.year or now.year

    @staticmethod
    def _held_in_year(coupon: Coupon, now) -> int:
        year = CouponService._coupon_year(coupon, now)
        return coupon.reservations.active(now).filter(event__event_date__year=year).count()
