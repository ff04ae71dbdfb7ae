"""Event model for django-ticketing."""

from decimal import Decimal

from django.db import models
from encrypted_fields import EncryptedCharField

from django_ticketing.settings import get_config


def _default_currency() -> str:
    return get_config().currency


class Event(models.Model):
    """A ticketed event with pricing, capacity, and integration settings.

    The central model the registration app references. Stores the Stripe
    account and CRM list for each event so they can be managed independently.
    The free-form ``settings`` blob is only read through the narrow accessors
    below; its schema belongs to whatever back office edits it.
    """

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=200, unique=True)
    event_date = models.DateTimeField()
    location = models.CharField(max_length=300, blank=True, default="")
    ticket_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=3, default=_default_currency)
    max_attendees = models.PositiveIntegerField(
        default=0,
        help_text="Maximum number of confirmed attendees. 0 means unlimited.",
    )
    settings = models.JSONField(blank=True, default=dict)

    stripe_secret_key = EncryptedCharField(max_length=200, blank=True, null=True, default=None)
    stripe_publishable_key = EncryptedCharField(max_length=200, blank=True, null=True, default=None)
    stripe_webhook_secret = EncryptedCharField(max_length=200, blank=True, null=True, default=None)

    hubspot_list_id = models.CharField(max_length=100, blank=True, default="")

    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-event_date"]

    def __str__(self) -> str:
        return self.name

    def is_registration_open(self) -> bool:
        """Check whether new registrations are accepted for this event.

        Registration is open when the event is active, the global
        ``features.registration_enabled`` toggle is on, and the event's own
        ``registrations_enabled`` setting has not been switched off.
        """
        if not self.is_active:
            return False
        if not get_config().features.registration_enabled:
            return False
        return bool((self.settings or {}).get("registrations_enabled", True))

    def badges_enabled(self) -> bool:
        """Return whether badge printing is switched on for this event."""
        badges = (self.settings or {}).get("badges") or {}
        if not isinstance(badges, dict):
            return False
        return bool(badges.get("enabled", False))

    @property
    def confirmed_count(self) -> int:
        """Return the number of confirmed registrations that still hold a seat."""
        from django_ticketing.registration.models import Registration  # noqa: PLC0415

        return (
            Registration.objects.filter(
                event=self,
                registration_status=Registration.Status.CONFIRMED,
            )
            .exclude(attendance_status=Registration.Attendance.CANCELLED)
            .count()
        )

    @property
    def remaining_seats(self) -> int | None:
        """Return the number of seats still available.

        Returns:
            The remaining count, or ``None`` if the event has unlimited
            capacity (``max_attendees == 0``).
        """
        if self.max_attendees == 0:
            return None
        return max(0, self.max_attendees - self.confirmed_count)

    def has_available_seats(self) -> bool:
        """Return ``True`` when at least one seat is left (or capacity is unlimited)."""
        remaining = self.remaining_seats
        return remaining is None or remaining > 0
