"""Coupon reservation lifecycle.

A reservation is a soft hold: it is created when an attendee supplies a coupon
code and lapses after a short TTL. The coupon's durable ``used_count`` only
moves in :meth:`ReservationService.confirm`, which re-checks every usage limit
while holding a row lock on the coupon. Two holders racing for the last use
both get a reservation, but only the first confirmation succeeds.
"""

import logging
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from django_ticketing.registration.exceptions import CouponUsageLimitReached, ReservationError
from django_ticketing.registration.models import Coupon, CouponReservation, Registration
from django_ticketing.registration.services.coupons import CouponService
from django_ticketing.settings import get_config

logger = logging.getLogger(__name__)


class ReservationService:
    """Stateless service for creating, confirming and releasing reservations."""

    @staticmethod
    def create_reservation(
        coupon: Coupon,
        registration: Registration,
        event,
        *,
        ttl: timedelta | None = None,
        now=None,
    ) -> CouponReservation:
        """Soft-hold one use of ``coupon`` for ``registration``.

        Stale holds of the same registration are expired first. The legacy
        ``max_uses`` limit is compared with confirmed uses only; the yearly and
        per-event limits also count other attendees' active holds.

        Args:
            coupon: The validated coupon to hold.
            registration: The registration the hold belongs to.
            event: The event being registered for.
            ttl: How long the hold lasts. Defaults to
                ``DJANGO_TICKETING['reservation_ttl_minutes']``.
            now: Current time, for tests.

        Returns:
            The new reservation, in ``reserved`` status.

        Raises:
            ReservationError: If the registration already holds an active
                reservation (``code="active_reservation_exists"``).
            CouponUsageLimitReached: If the coupon has no use left to hold.
        """
        now = now or timezone.now()
        if ttl is None:
            ttl = timedelta(minutes=get_config().reservation_ttl_minutes)

        with transaction.atomic():
            Registration.all_objects.select_for_update().get(pk=registration.pk)
            holds = CouponReservation.objects.filter(registration=registration)
            holds.expired(now).update(status=CouponReservation.Status.EXPIRED, updated_at=now)
            if holds.active(now).exists():
                raise ReservationError(
                    "Release or confirm the current coupon reservation first.",
                    code="active_reservation_exists",
                )
            CouponService.check_usage_limits(coupon, event, now=now)
            reservation = CouponReservation.objects.create(
                coupon=coupon,
                registration=registration,
                event=event,
                status=CouponReservation.Status.RESERVED,
                expires_at=now + ttl,
            )

        logger.info(
            "Reserved coupon %s for registration %s until %s",
            coupon.code,
            registration.pk,
            reservation.expires_at.isoformat(),
        )
        return reservation

    @staticmethod
    def confirm(reservation: CouponReservation, *, now=None) -> CouponReservation:
        """Turn a soft hold into a durable coupon use.

        Locks the reservation and coupon rows, re-checks every usage limit, then
        increments ``used_count``. Confirming an already confirmed reservation
        does nothing. A reservation that lapsed to ``expired`` may still be
        confirmed because a paid checkout can outlive its hold.

        Raises:
            ReservationError: If the reservation was released
                (``code="not_reserved"``) or no longer matches the
                registration's coupon code (``code="coupon_mismatch"``).
            CouponUsageLimitReached: If the limits are exhausted under lock.
        """
        now = now or timezone.now()
        with transaction.atomic():
            locked = CouponReservation.objects.select_for_update().get(pk=reservation.pk)
            if locked.status == CouponReservation.Status.CONFIRMED:
                _sync(reservation, locked)
                return reservation
            if locked.status == CouponReservation.Status.RELEASED:
                raise ReservationError("This coupon reservation was released.", code="not_reserved")

            coupon = Coupon.all_objects.select_for_update().get(pk=locked.coupon_id)
            registration = Registration.all_objects.select_related("event").get(pk=locked.registration_id)
            if Coupon.normalize_code(registration.coupon_code) != coupon.code:
                raise ReservationError(
                    "The coupon on this registration no longer matches its reservation.",
                    code="coupon_mismatch",
                )

            try:
                CouponService.check_usage_limits(coupon, registration.event, now=now, include_reservations=False)
            except CouponUsageLimitReached:
                logger.warning(
                    "Coupon %s ran out of uses before reservation %s could be confirmed",
                    coupon.code,
                    locked.pk,
                )
                raise
            coupon.increment_usage()

            locked.status = CouponReservation.Status.CONFIRMED
            locked.confirmed_at = now
            locked.save(update_fields=["status", "confirmed_at", "updated_at"])

        logger.info("Confirmed reservation %s (coupon %s now used %d times)", locked.pk, coupon.code, coupon.used_count)
        _sync(reservation, locked)
        return reservation

    @staticmethod
    def release(reservation: CouponReservation, *, now=None) -> bool:
        """Give up a soft hold. Idempotent.

        Only ``reserved`` rows change; confirmed, released and expired rows are
        left alone. ``used_count`` is never touched.

        Returns:
            ``True`` if the reservation moved to ``released``.
        """
        now = now or timezone.now()
        updated = CouponReservation.objects.filter(
            pk=reservation.pk,
            status=CouponReservation.Status.RESERVED,
        ).update(status=CouponReservation.Status.RELEASED, released_at=now, updated_at=now)
        reservation.refresh_from_db(fields=["status", "released_at", "updated_at"])
        if updated:
            logger.info("Released reservation %s", reservation.pk)
        return bool(updated)

    @staticmethod
    def expire(reservation: CouponReservation, *, now=None) -> bool:
        """Mark a lapsed soft hold as ``expired``.

        Only ``reserved`` rows whose ``expires_at`` has passed change.

        Returns:
            ``True`` if the reservation moved to ``expired``.
        """
        now = now or timezone.now()
        updated = CouponReservation.objects.filter(
            pk=reservation.pk,
            status=CouponReservation.Status.RESERVED,
            expires_at__lte=now,
        ).update(status=CouponReservation.Status.EXPIRED, updated_at=now)
        reservation.refresh_from_db(fields=["status", "updated_at"])
        return bool(updated)

    @staticmethod
    def release_for_registration(registration: Registration, *, now=None) -> int:
        """Release every open hold of ``registration``; returns how many."""
        released = 0
        for reservation in CouponReservation.objects.filter(
            registration=registration,
            status=CouponReservation.Status.RESERVED,
        ):
            released += ReservationService.release(reservation, now=now)
        return released

    @staticmethod
    def confirmable_reservation(registration: Registration) -> CouponReservation | None:
        """Return the newest confirmable reservation for the registration's coupon code."""
        if not registration.coupon_code:
            return None
        return (
            CouponReservation.objects.filter(
                registration=registration,
                coupon__code=Coupon.normalize_code(registration.coupon_code),
                status__in=[CouponReservation.Status.RESERVED, CouponReservation.Status.EXPIRED],
            )
            .order_by("-created_at", "-pk")
            .first()
        )


def _sync(target: CouponReservation, source: CouponReservation) -> None:
    target.status = source.status
    target.confirmed_at = source.confirmed_at
    target.updated_at = source.updated_at
