"""Management command to deactivate coupons from previous years.

Run once at the start of each year.

Usage::

    manage.py expire_old_coupons
    manage.py expire_old_coupons --dry-run
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.core.management.base import BaseCommand
from django.utils import timezone

from django_ticketing.registration.services.cleanup import CleanupService

if TYPE_CHECKING:
    import argparse


class Command(BaseCommand):
    """Deactivate active coupons whose year has ended."""

    help = "Deactivate coupons whose year is before the current year"

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            default=False,
            help="Count the coupons that would be deactivated.",
        )

    def handle(self, **options: object) -> None:
        dry_run = bool(options["dry_run"])
        year = timezone.now().year
        count = CleanupService.expire_previous_year_coupons(dry_run=dry_run)
        if dry_run:
            self.stdout.write(self.style.WARNING(f"Dry run: would deactivate {count} coupon(s) from before {year}"))
            return
        self.stdout.write(self.style.SUCCESS(f"Deactivated {count} coupon(s) from before {year}"))
