"""Django app configuration for the registration app."""

from django.apps import AppConfig


class DjangoTicketingRegistrationConfig(AppConfig):
    """Configuration for the registration app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "django_ticketing.registration"
    label = "ticketing_registration"
    verbose_name = "Registration"

    def ready(self) -> None:
        """Register webhook handlers."""
        import django_ticketing.registration.webhooks  # noqa: F401, PLC0415
