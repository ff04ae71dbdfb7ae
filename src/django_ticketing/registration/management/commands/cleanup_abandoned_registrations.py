"""Management command to reclaim state left behind by abandoned checkouts.

Intended to run every few minutes from cron or another scheduler.

Usage::

    manage.py cleanup_abandoned_registrations

    # Report what would change without writing anything
    manage.py cleanup_abandoned_registrations --dry-run
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.core.management.base import BaseCommand, CommandError

from django_ticketing.registration.services.cleanup import CleanupService

if TYPE_CHECKING:
    import argparse


class Command(BaseCommand):
    """Expire lapsed coupon holds, abandon idle registrations, release their holds."""

    help = "Expire coupon reservations and clean up abandoned registrations"

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            default=False,
            help="Count what would change without changing anything.",
        )

    def handle(self, **options: object) -> None:
        """Run the three cleanup steps and print a per-step summary.

        Raises:
            CommandError: If any step failed. The other steps still ran.
        """
        dry_run = bool(options["dry_run"])
        if dry_run:
            self.stdout.write(self.style.WARNING("Dry run: no changes will be made"))

        report = CleanupService.run(dry_run=dry_run)
        verb = "Would process" if dry_run else "Processed"
        self.stdout.write(f"Expired reservations: {report.expired_reservations}")
        self.stdout.write(f"Abandoned registrations: {report.abandoned_registrations}")
        self.stdout.write(f"Released reservations: {report.released_reservations}")

        total = report.expired_reservations + report.abandoned_registrations + report.released_reservations
        if not report.ok:
            for step, error in report.errors.items():
                self.stderr.write(self.style.ERROR(f"{step} failed: {error}"))
            msg = f"Cleanup finished with {len(report.errors)} failed step(s)"
            raise CommandError(msg)
        self.stdout.write(self.style.SUCCESS(f"{verb} {total} item(s)"))
