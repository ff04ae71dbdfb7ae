import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("ticketing_events", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Coupon",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(max_length=100, unique=True)),
                (
                    "coupon_type",
                    models.CharField(
                        choices=[
                            ("staff", "Staff"),
                            ("staff_guest", "Staff guest"),
                            ("member", "Member"),
                            ("member_guest", "Member guest"),
                            ("custom", "Custom"),
                        ],
                        default="custom",
                        max_length=20,
                    ),
                ),
                (
                    "scope",
                    models.CharField(
                        choices=[("global", "All events"), ("event", "Single event")],
                        default="global",
                        max_length=10,
                    ),
                ),
                ("company_name", models.CharField(blank=True, default="", max_length=200)),
                (
                    "hubspot_company_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="HubSpot company the coupon was generated for.",
                        max_length=50,
                    ),
                ),
                (
                    "discount_type",
                    models.CharField(
                        choices=[("percentage", "Percentage discount"), ("fixed", "Fixed amount discount")],
                        default="percentage",
                        max_length=20,
                    ),
                ),
                (
                    "discount_value",
                    models.DecimalField(
                        decimal_places=2,
                        default=0,
                        help_text="Percentage (0-100) or fixed amount depending on discount_type.",
                        max_digits=10,
                    ),
                ),
                (
                    "max_uses",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Total number of confirmed uses allowed. Empty means unlimited.",
                        null=True,
                    ),
                ),
                (
                    "max_uses_global",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Confirmed uses allowed across all events in the coupon year.",
                        null=True,
                    ),
                ),
                (
                    "max_uses_per_event",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Confirmed uses allowed for a single event.",
                        null=True,
                    ),
                ),
                ("used_count", models.PositiveIntegerField(default=0)),
                ("valid_from", models.DateTimeField(blank=True, null=True)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                (
                    "year",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Coupon year. The coupon expires once this year is over.",
                        null=True,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                (
                    "is_manual",
                    models.BooleanField(default=True, help_text="False for coupons produced by bulk generation."),
                ),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                (
                    "event",
                    models.ForeignKey(
                        blank=True,
                        help_text="Required when scope is 'event'.",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="coupons",
                        to="ticketing_events.event",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            ("max_uses__isnull", True),
                            ("used_count__lte", models.F("max_uses")),
                            _connector="OR",
                        ),
                        name="ticketing_coupon_used_count_within_max_uses",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Registration",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("email", models.EmailField(max_length=254)),
                ("name", models.CharField(max_length=200)),
                ("surname", models.CharField(blank=True, default="", max_length=200)),
                ("company", models.CharField(blank=True, default="", max_length=200)),
                ("phone", models.CharField(blank=True, default="", max_length=50)),
                ("additional_fields", models.JSONField(blank=True, default=dict)),
                ("ticket_price", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("expected_amount", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("paid_amount", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("refunded_amount", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                (
                    "coupon_code",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Snapshot of the coupon code applied at initiation.",
                        max_length=100,
                    ),
                ),
                (
                    "payment_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("partial", "Partially paid"),
                            ("paid", "Paid"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "registration_status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("pending_payment", "Pending payment"),
                            ("payment_processing", "Payment processing"),
                            ("confirmed", "Confirmed"),
                            ("abandoned", "Abandoned"),
                            ("payment_failed", "Payment failed"),
                        ],
                        default="draft",
                        max_length=25,
                    ),
                ),
                (
                    "attendance_status",
                    models.CharField(
                        choices=[
                            ("registered", "Registered"),
                            ("cancelled", "Cancelled"),
                            ("no_show", "No show"),
                            ("attended", "Attended"),
                        ],
                        default="registered",
                        max_length=20,
                    ),
                ),
                ("stripe_session_id", models.CharField(blank=True, default="", max_length=200)),
                ("stripe_payment_intent_id", models.CharField(blank=True, default="", max_length=200)),
                ("confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                (
                    "event",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="registrations",
                        to="ticketing_events.event",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("deleted_at__isnull", True)),
                        fields=("event", "email"),
                        name="ticketing_one_live_registration_per_email",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CouponReservation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("reserved", "Reserved"),
                            ("confirmed", "Confirmed"),
                            ("released", "Released"),
                            ("expired", "Expired"),
                        ],
                        default="reserved",
                        max_length=20,
                    ),
                ),
                ("expires_at", models.DateTimeField()),
                ("confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "coupon",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reservations",
                        to="ticketing_registration.coupon",
                    ),
                ),
                (
                    "event",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="coupon_reservations",
                        to="ticketing_events.event",
                    ),
                ),
                (
                    "registration",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="coupon_reservations",
                        to="ticketing_registration.registration",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "reserved")),
                        fields=("registration",),
                        name="ticketing_one_reserved_reservation_per_registration",
                    ),
                ],
            },
        ),
    ]
