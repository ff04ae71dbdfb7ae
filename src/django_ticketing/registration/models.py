"""Coupon, reservation, and registration models for django-ticketing."""

from decimal import ROUND_HALF_UP, Decimal

from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone

from django_ticketing.registration.exceptions import CouponUsageLimitReached
from django_ticketing.settings import get_config

CENTS = Decimal("0.01")


class SoftDeleteQuerySet(models.QuerySet):
    """QuerySet helpers shared by soft-deletable models."""

    def alive(self) -> "SoftDeleteQuerySet":
        """Return rows that have not been soft-deleted."""
        return self.filter(deleted_at__isnull=True)

    def dead(self) -> "SoftDeleteQuerySet":
        """Return rows that have been soft-deleted."""
        return self.filter(deleted_at__isnull=False)


class SoftDeleteManager(models.Manager):
    """Default manager that hides soft-deleted rows."""

    def get_queryset(self) -> SoftDeleteQuerySet:
        return super().get_queryset().filter(deleted_at__isnull=True)


class CouponQuerySet(SoftDeleteQuerySet):
    def by_code(self, code: str) -> "CouponQuerySet":
        """Filter by code, ignoring case and surrounding whitespace."""
        return self.filter(code=Coupon.normalize_code(code))

    def by_hubspot_company(self, company_id: str) -> "CouponQuerySet":
        """Coupons issued to one HubSpot company."""
        return self.filter(hubspot_company_id=company_id)

    def linked_to_hubspot(self) -> "CouponQuerySet":
        return self.exclude(hubspot_company_id="")


class Coupon(models.Model):
    """A discount code for event registrations.

    Coupons provide a percentage or fixed amount off the ticket price. Usage is
    capped by up to three limits: the legacy ``max_uses`` total enforced by a
    database constraint on ``used_count``, ``max_uses_global`` per coupon year
    across all events, and ``max_uses_per_event``. ``used_count`` is only
    changed through :meth:`increment_usage` and :meth:`decrement_usage`.
    Coupons are soft-deleted so usage history survives.
    """

    class CouponType(models.TextChoices):
        """Who a coupon was issued for; selects the default usage limits."""

        STAFF = "staff", "Staff"
        STAFF_GUEST = "staff_guest", "Staff guest"
        MEMBER = "member", "Member"
        MEMBER_GUEST = "member_guest", "Member guest"
        CUSTOM = "custom", "Custom"

    class Scope(models.TextChoices):
        """Whether a coupon is valid for every event or a single one."""

        GLOBAL = "global", "All events"
        EVENT = "event", "Single event"

    class DiscountType(models.TextChoices):
        """The type of discount a coupon provides."""

        PERCENTAGE = "percentage", "Percentage discount"
        FIXED = "fixed", "Fixed amount discount"

    code = models.CharField(max_length=100, unique=True)
    coupon_type = models.CharField(
        max_length=20,
        choices=CouponType.choices,
        default=CouponType.CUSTOM,
    )
    scope = models.CharField(
        max_length=10,
        choices=Scope.choices,
        default=Scope.GLOBAL,
    )
    event = models.ForeignKey(
        "ticketing_events.Event",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="coupons",
        help_text="Required when scope is 'event'.",
    )
    company_name = models.CharField(max_length=200, blank=True, default="")
    hubspot_company_id = models.CharField(
        max_length=50,
        blank=True,
        default="",
        db_index=True,
        help_text="HubSpot company the coupon was generated for.",
    )
    discount_type = models.CharField(
        max_length=20,
        choices=DiscountType.choices,
        default=DiscountType.PERCENTAGE,
    )
    discount_value = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=0,
        help_text="Percentage (0-100) or fixed amount depending on discount_type.",
    )
    max_uses = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Total number of confirmed uses allowed. Empty means unlimited.",
    )
    max_uses_global = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Confirmed uses allowed across all events in the coupon year.",
    )
    max_uses_per_event = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Confirmed uses allowed for a single event.",
    )
    used_count = models.PositiveIntegerField(default=0)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True)
    year = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Coupon year. The coupon expires once this year is over.",
    )
    is_active = models.BooleanField(default=True)
    is_manual = models.BooleanField(
        default=True,
        help_text="False for coupons produced by bulk generation.",
    )
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    objects = SoftDeleteManager.from_queryset(CouponQuerySet)()
    all_objects = models.Manager.from_queryset(CouponQuerySet)()

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(max_uses__isnull=True) | Q(used_count__lte=F("max_uses")),
                name="ticketing_coupon_used_count_within_max_uses",
            ),
        ]

    def __str__(self) -> str:
        return self.code

    @staticmethod
    def normalize_code(code: str) -> str:
        """Return the canonical (upper-case, stripped) form of a coupon code."""
        return (code or "").strip().upper()

    def save(self, *args: object, **kwargs: object) -> None:
        self.code = self.normalize_code(self.code)
        if self._state.adding:
            self.apply_type_defaults()
        super().save(*args, **kwargs)

    def delete(self, *args: object, **kwargs: object) -> tuple[int, dict[str, int]]:  # noqa: ARG002
        """Soft-delete the coupon; the row and its usage history are kept."""
        self.deleted_at = timezone.now()
        self.is_active = False
        self.save(update_fields=["deleted_at", "is_active", "updated_at"])
        return 1, {self._meta.label: 1}

    def apply_type_defaults(self) -> None:
        """Fill unset dual limits from ``DJANGO_TICKETING['coupon_types']``."""
        defaults = get_config().coupon_types.get(self.coupon_type) or {}
        if self.max_uses_per_event is None:
            self.max_uses_per_event = defaults.get("max_uses_per_event")
        if self.max_uses_global is None:
            self.max_uses_global = defaults.get("max_uses_global")

    # -- Validity -----------------------------------------------------------

    def is_expired_by_year(self, now=None) -> bool:
        """Return ``True`` once the coupon's ``year`` lies in the past."""
        now = now or timezone.now()
        return self.year is not None and self.year < now.year

    def is_within_window(self, now=None) -> bool:
        """Return whether ``now`` falls inside the optional validity window."""
        now = now or timezone.now()
        if self.valid_from and now < self.valid_from:
            return False
        return not (self.valid_until and now > self.valid_until)

    def has_uses_remaining(self) -> bool:
        """Check the legacy ``max_uses`` limit against confirmed uses only."""
        return self.max_uses is None or self.used_count < self.max_uses

    def is_valid(self, now=None) -> bool:
        """Check whether this coupon can currently be redeemed at all.

        Event scope and the dual usage limits depend on the event and are
        checked by ``CouponService.validate``.
        """
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.is_expired_by_year(now):
            return False
        if not self.is_within_window(now):
            return False
        return self.has_uses_remaining()

    @property
    def has_hubspot_link(self) -> bool:
        return bool(self.hubspot_company_id)

    def can_be_used_for_event(self, event) -> bool:
        """Return whether the coupon's scope allows it for ``event``."""
        if self.scope == self.Scope.GLOBAL:
            return True
        return self.event_id is not None and self.event_id == event.pk

    # -- Discount math ------------------------------------------------------

    def calculate_discount(self, price: Decimal) -> Decimal:
        """Return the discount this coupon gives on ``price``.

        Percentage discounts are rounded half-up to cents. The result is never
        negative and never exceeds ``price``.
        """
        price = Decimal(price)
        if price <= 0:
            return Decimal("0.00")
        if self.discount_type == self.DiscountType.PERCENTAGE:
            discount = (price * Decimal(self.discount_value) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)
        else:
            discount = Decimal(self.discount_value)
        return max(Decimal("0.00"), min(discount, price)).quantize(CENTS, rounding=ROUND_HALF_UP)

    def apply_discount(self, price: Decimal) -> Decimal:
        """Return ``price`` minus this coupon's discount, floored at zero."""
        price = Decimal(price)
        return max(Decimal("0.00"), price - self.calculate_discount(price)).quantize(CENTS, rounding=ROUND_HALF_UP)

    # -- Durable usage ------------------------------------------------------

    def _confirmed_registrations(self) -> models.QuerySet:
        return (
            Registration.all_objects.filter(
                coupon_code=self.code,
                registration_status=Registration.Status.CONFIRMED,
            )
            .exclude(attendance_status=Registration.Attendance.CANCELLED)
        )

    def uses_for_event(self, event) -> int:
        """Return confirmed uses of this coupon for ``event``."""
        return self._confirmed_registrations().filter(event=event).count()

    def uses_in_year(self, year: int) -> int:
        """Return confirmed uses of this coupon for events held in ``year``."""
        return self._confirmed_registrations().filter(event__event_date__year=year).count()

    def increment_usage(self) -> None:
        """Durably record one more use of this coupon.

        Takes a row lock on the coupon and re-checks ``max_uses`` before
        incrementing, so concurrent callers can never push ``used_count`` past
        the limit.

        Raises:
            CouponUsageLimitReached: If the coupon is already at ``max_uses``.
        """
        with transaction.atomic():
            locked = Coupon.all_objects.select_for_update().get(pk=self.pk)
            if not locked.has_uses_remaining():
                raise CouponUsageLimitReached
            Coupon.all_objects.filter(pk=self.pk).update(used_count=F("used_count") + 1)
        self.refresh_from_db(fields=["used_count"])

    def decrement_usage(self) -> bool:
        """Give back one use of this coupon, never going below zero.

        Returns:
            ``True`` if a use was given back, ``False`` if the counter was
            already at zero.
        """
        with transaction.atomic():
            Coupon.all_objects.select_for_update().get(pk=self.pk)
            updated = Coupon.all_objects.filter(pk=self.pk, used_count__gt=0).update(
                used_count=F("used_count") - 1,
            )
        self.refresh_from_db(fields=["used_count"])
        return updated > 0


class CouponReservationQuerySet(models.QuerySet):
    def active(self, now=None) -> "CouponReservationQuerySet":
        """Reserved rows whose soft hold has not lapsed yet."""
        now = now or timezone.now()
        return self.filter(status=CouponReservation.Status.RESERVED, expires_at__gt=now)

    def expired(self, now=None) -> "CouponReservationQuerySet":
        """Reserved rows whose soft hold has lapsed but were not swept yet."""
        now = now or timezone.now()
        return self.filter(status=CouponReservation.Status.RESERVED, expires_at__lte=now)

    def confirmed(self) -> "CouponReservationQuerySet":
        return self.filter(status=CouponReservation.Status.CONFIRMED)


class CouponReservation(models.Model):
    """A time-boxed soft hold of one coupon use by one registration.

    Reserving never touches ``Coupon.used_count``; the counter only moves when
    the reservation is confirmed after a successful (or free) checkout.
    """

    class Status(models.TextChoices):
        """Lifecycle states for a coupon reservation."""

        RESERVED = "reserved", "Reserved"
        CONFIRMED = "confirmed", "Confirmed"
        RELEASED = "released", "Released"
        EXPIRED = "expired", "Expired"

    coupon = models.ForeignKey(
        Coupon,
        on_delete=models.PROTECT,
        related_name="reservations",
    )
    registration = models.ForeignKey(
        "ticketing_registration.Registration",
        on_delete=models.CASCADE,
        related_name="coupon_reservations",
    )
    event = models.ForeignKey(
        "ticketing_events.Event",
        on_delete=models.CASCADE,
        related_name="coupon_reservations",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RESERVED,
    )
    expires_at = models.DateTimeField()
    confirmed_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = CouponReservationQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["registration"],
                condition=Q(status="reserved"),
                name="ticketing_one_reserved_reservation_per_registration",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.coupon.code} for registration {self.registration_id} ({self.status})"

    def is_active(self, now=None) -> bool:
        """Return whether this reservation still holds its coupon use."""
        now = now or timezone.now()
        return self.status == self.Status.RESERVED and self.expires_at > now


class RegistrationQuerySet(SoftDeleteQuerySet):
    def confirmed(self) -> "RegistrationQuerySet":
        return self.filter(registration_status=Registration.Status.CONFIRMED)

    def retryable(self) -> "RegistrationQuerySet":
        return self.filter(registration_status__in=Registration.RETRYABLE_STATUSES)


class Registration(models.Model):
    """One attendee's registration for an event.

    Holds the contact details, a snapshot of the pricing and coupon applied at
    initiation, and the checkout state. While money is moving, ``paid_amount``
    and ``payment_status`` are only written by :meth:`mark_as_paid`, which
    always derives the status from the amount actually received. A refund
    moves the received amount to ``refunded_amount`` and ends that cycle.
    """

    class Status(models.TextChoices):
        """Checkout states for a registration."""

        DRAFT = "draft", "Draft"
        PENDING_PAYMENT = "pending_payment", "Pending payment"
        PAYMENT_PROCESSING = "payment_processing", "Payment processing"
        CONFIRMED = "confirmed", "Confirmed"
        ABANDONED = "abandoned", "Abandoned"
        PAYMENT_FAILED = "payment_failed", "Payment failed"

    class PaymentStatus(models.TextChoices):
        """Money states for a registration."""

        PENDING = "pending", "Pending"
        PARTIAL = "partial", "Partially paid"
        PAID = "paid", "Paid"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"
        CANCELLED = "cancelled", "Cancelled"

    class Attendance(models.TextChoices):
        """Attendance states once a registration is confirmed."""

        REGISTERED = "registered", "Registered"
        CANCELLED = "cancelled", "Cancelled"
        NO_SHOW = "no_show", "No show"
        ATTENDED = "attended", "Attended"

    RETRYABLE_STATUSES = (
        Status.DRAFT,
        Status.PENDING_PAYMENT,
        Status.ABANDONED,
        Status.PAYMENT_FAILED,
    )

    event = models.ForeignKey(
        "ticketing_events.Event",
        on_delete=models.CASCADE,
        related_name="registrations",
    )
    email = models.EmailField()
    name = models.CharField(max_length=200)
    surname = models.CharField(max_length=200, blank=True, default="")
    company = models.CharField(max_length=200, blank=True, default="")
    phone = models.CharField(max_length=50, blank=True, default="")
    additional_fields = models.JSONField(blank=True, default=dict)

    ticket_price = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    expected_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    paid_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    refunded_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    coupon_code = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Snapshot of the coupon code applied at initiation.",
    )

    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    registration_status = models.CharField(
        max_length=25,
        choices=Status.choices,
        default=Status.DRAFT,
    )
    attendance_status = models.CharField(
        max_length=20,
        choices=Attendance.choices,
        default=Attendance.REGISTERED,
    )

    stripe_session_id = models.CharField(max_length=200, blank=True, default="")
    stripe_payment_intent_id = models.CharField(max_length=200, blank=True, default="")

    confirmed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    objects = SoftDeleteManager.from_queryset(RegistrationQuerySet)()
    all_objects = models.Manager.from_queryset(RegistrationQuerySet)()

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["event", "email"],
                condition=Q(deleted_at__isnull=True),
                name="ticketing_one_live_registration_per_email",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.email} ({self.event_id}, {self.registration_status})"

    def save(self, *args: object, **kwargs: object) -> None:
        self.email = (self.email or "").strip().lower()
        super().save(*args, **kwargs)

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.surname}".strip()

    @property
    def is_confirmed(self) -> bool:
        return self.registration_status == self.Status.CONFIRMED

    @property
    def can_be_retried(self) -> bool:
        """Whether checkout may be restarted for this row in place."""
        return self.registration_status in self.RETRYABLE_STATUSES

    def mark_as_paid(self, amount: Decimal) -> str:
        """Record ``amount`` as received and recompute ``payment_status``.

        ``amount >= expected_amount`` is paid, a positive amount below it is
        partial, and anything else leaves the registration pending. The
        status is always derived from the amount, never set on its own.

        Returns:
            The recomputed payment status.
        """
        amount = Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
        self.paid_amount = amount
        if amount >= self.expected_amount:
            self.payment_status = self.PaymentStatus.PAID
        elif amount > 0:
            self.payment_status = self.PaymentStatus.PARTIAL
        else:
            self.payment_status = self.PaymentStatus.PENDING
        self.save(update_fields=["paid_amount", "payment_status", "updated_at"])
        return self.payment_status

    def open_reservation(self) -> CouponReservation | None:
        """Return the reservation still in ``reserved`` status, lapsed or not."""
        return self.coupon_reservations.filter(status=CouponReservation.Status.RESERVED).first()
