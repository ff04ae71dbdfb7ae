"""Django app configuration for the events app."""

from django.apps import AppConfig


class DjangoTicketingEventsConfig(AppConfig):
    """Configuration for the events app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "django_ticketing.events"
    label = "ticketing_events"
    verbose_name = "Events"
