from decimal import Decimal

import encrypted_fields.fields
from django.db import migrations, models

import django_ticketing.events.models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Event",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200)),
                ("slug", models.SlugField(max_length=200, unique=True)),
                ("event_date", models.DateTimeField()),
                ("location", models.CharField(blank=True, default="", max_length=300)),
                ("ticket_price", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                (
                    "currency",
                    models.CharField(default=django_ticketing.events.models._default_currency, max_length=3),
                ),
                (
                    "max_attendees",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Maximum number of confirmed attendees. 0 means unlimited.",
                    ),
                ),
                ("settings", models.JSONField(blank=True, default=dict)),
                (
                    "stripe_secret_key",
                    encrypted_fields.fields.EncryptedCharField(blank=True, default=None, max_length=200, null=True),
                ),
                (
                    "stripe_publishable_key",
                    encrypted_fields.fields.EncryptedCharField(blank=True, default=None, max_length=200, null=True),
                ),
                (
                    "stripe_webhook_secret",
                    encrypted_fields.fields.EncryptedCharField(blank=True, default=None, max_length=200, null=True),
                ),
                ("hubspot_list_id", models.CharField(blank=True, default="", max_length=100)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-event_date"],
            },
        ),
    ]
