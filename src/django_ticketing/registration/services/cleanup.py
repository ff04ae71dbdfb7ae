"""Sweeps that reclaim state left behind by abandoned checkouts.

Meant to run from a scheduler through the ``cleanup_abandoned_registrations``
and ``expire_old_coupons`` management commands. Each sweep is idempotent and
can simply be re-run after a partial failure.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from django.db import DatabaseError, transaction
from django.utils import timezone

from django_ticketing.registration.models import Coupon, CouponReservation, Registration
from django_ticketing.registration.services.reservations import ReservationService
from django_ticketing.settings import get_config

logger = logging.getLogger(__name__)

ABANDONABLE_STATUSES = (Registration.Status.DRAFT, Registration.Status.PENDING_PAYMENT)
RELEASABLE_STATUSES = (Registration.Status.ABANDONED, Registration.Status.PAYMENT_FAILED)


@dataclass
class CleanupReport:
    """Per-step counts (or would-be counts on a dry run) and errors."""

    expired_reservations: int = 0
    abandoned_registrations: int = 0
    released_reservations: int = 0
    dry_run: bool = False
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class CleanupService:
    """Stateless service running the abandoned-checkout and coupon-year sweeps."""

    @staticmethod
    def run(*, now=None, dry_run: bool = False) -> CleanupReport:
        """Run all three abandoned-checkout steps in order.

        1. Expire reserved coupon holds whose ``expires_at`` has passed.
        2. Mark draft and pending-payment registrations untouched for
           ``abandon_after_hours`` as abandoned.
        3. Release holds still owned by abandoned or failed registrations.

        A failing step is logged and recorded in ``CleanupReport.errors``; the
        remaining steps still run.
        """
        now = now or timezone.now()
        report = CleanupReport(dry_run=dry_run)
        steps = (
            ("expire_reservations", "expired_reservations", CleanupService.expire_reservations),
            ("abandon_registrations", "abandoned_registrations", CleanupService.abandon_registrations),
            ("release_reservations", "released_reservations", CleanupService.release_reservations),
        )
        for step, attribute, func in steps:
            try:
                setattr(report, attribute, func(now=now, dry_run=dry_run))
            except DatabaseError as exc:
                logger.exception("Cleanup step %s failed", step)
                report.errors[step] = str(exc)

        logger.info(
            "Cleanup%s: %d reservations expired, %d registrations abandoned, %d reservations released",
            " (dry run)" if dry_run else "",
            report.expired_reservations,
            report.abandoned_registrations,
            report.released_reservations,
        )
        return report

    @staticmethod
    def expire_reservations(*, now=None, dry_run: bool = False) -> int:
        """Expire lapsed holds of registrations that are still in play.

        Holds owned by abandoned, failed, or idle registrations are left
        ``reserved`` here; :meth:`release_reservations` releases them once the
        registration is abandoned.
        """
        now = now or timezone.now()
        stale = (
            CouponReservation.objects.expired(now)
            .exclude(registration__registration_status__in=RELEASABLE_STATUSES)
            .exclude(
                registration__registration_status__in=ABANDONABLE_STATUSES,
                registration__updated_at__lt=_abandon_cutoff(now),
            )
        )
        if dry_run:
            return stale.count()
        expired = 0
        for reservation in stale:
            expired += ReservationService.expire(reservation, now=now)
        return expired

    @staticmethod
    def abandon_registrations(*, now=None, dry_run: bool = False) -> int:
        """Mark registrations idle for ``abandon_after_hours`` as abandoned."""
        now = now or timezone.now()
        idle = Registration.objects.filter(
            registration_status__in=ABANDONABLE_STATUSES,
            updated_at__lt=_abandon_cutoff(now),
        )
        if dry_run:
            return idle.count()
        with transaction.atomic():
            return idle.update(registration_status=Registration.Status.ABANDONED, updated_at=now)

    @staticmethod
    def release_reservations(*, now=None, dry_run: bool = False) -> int:
        now = now or timezone.now()
        orphaned = CouponReservation.objects.filter(
            status=CouponReservation.Status.RESERVED,
            registration__registration_status__in=RELEASABLE_STATUSES,
        )
        if dry_run:
            return orphaned.count()
        released = 0
        for reservation in orphaned:
            released += ReservationService.release(reservation, now=now)
        return released

    @staticmethod
    def expire_previous_year_coupons(*, now=None, dry_run: bool = False) -> int:
        """Deactivate active coupons whose ``year`` is before the current year.

        Returns:
            The number of coupons deactivated (or that would be, on a dry run).
        """
        now = now or timezone.now()
        stale = Coupon.objects.filter(is_active=True, year__isnull=False, year__lt=now.year)
        if dry_run:
            return stale.count()
        count = stale.update(is_active=False, updated_at=now)
        logger.info("Deactivated %d coupons from years before %d", count, now.year)
        return count


def _abandon_cutoff(now):
    return now - timedelta(hours=get_config().abandon_after_hours)
