"""Bulk coupon generation.

Batches of random codes sharing one configuration, and one readable
``COMPANY-EVENT-YEAR`` code per partner company, either from a list of names
or from a HubSpot company list.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from django.db import DatabaseError, transaction
from django.utils import timezone

from django_ticketing.registration.exceptions import CRMSyncError
from django_ticketing.registration.hubspot import HubspotClient
from django_ticketing.registration.models import Coupon

if TYPE_CHECKING:
    import datetime
    from collections.abc import Iterable

    from django_ticketing.events.models import Event

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_CODE_LENGTH = 8
_MAX_COUNT = 500
_COMPANY_PART_LENGTH = 10
_EVENT_PART_LENGTH = 8
_NON_ALNUM = re.compile(r"[^A-Z0-9]")

logger = logging.getLogger(__name__)


@dataclass
class CouponBatchConfig:
    """Configuration for a batch of random coupon codes.

    Attributes:
        prefix: Fixed string prepended to each generated code.
        count: Number of coupons to generate (1-500).
        coupon_type: One of ``Coupon.CouponType``; selects default limits.
        discount_type: One of ``Coupon.DiscountType``.
        discount_value: Percentage (0-100) or fixed amount.
        event: Restricts the coupons to this event when set.
        max_uses: Legacy total limit per coupon.
        year: Coupon year; defaults to the current year.
        valid_from: Optional start of the validity window.
        valid_until: Optional end of the validity window.
        notes: Free text stored on every coupon.
    """

    prefix: str
    count: int
    coupon_type: str = Coupon.CouponType.CUSTOM
    discount_type: str = Coupon.DiscountType.PERCENTAGE
    discount_value: Decimal = Decimal("100")
    event: Event | None = None
    max_uses: int | None = 1
    year: int | None = None
    valid_from: datetime.datetime | None = None
    valid_until: datetime.datetime | None = None
    notes: str = ""


@dataclass
class CompanyCouponResult:
    """Outcome of :func:`create_company_coupons`."""

    created: list[Coupon] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


@dataclass
class HubspotCouponResult:
    """Outcome of :func:`generate_from_hubspot_list`.

    ``skipped`` maps HubSpot company ids to their existing code and
    ``errors`` maps them to the reason their coupon could not be created.
    """

    created: list[Coupon] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


def _clean(value: str, length: int) -> str:
    return _NON_ALNUM.sub("", value.upper())[:length]


def generate_company_code(company_name: str, *, year: int | None = None, event_name: str = "") -> str:
    """Build a readable, unique code such as ``ACME-SUMMIT-2026``.

    Company and event names are reduced to upper-case letters and digits and
    truncated. A ``-1``, ``-2``... suffix is added until the code is unused,
    soft-deleted coupons included.
    """
    year = year or timezone.now().year
    parts = [_clean(company_name, _COMPANY_PART_LENGTH)]
    if event_name:
        parts.append(_clean(event_name, _EVENT_PART_LENGTH))
    parts.append(str(year))
    base = "-".join(part for part in parts if part)

    code = base
    counter = 1
    while Coupon.all_objects.filter(code=code).exists():
        code = f"{base}-{counter}"
        counter += 1
    return code


def _generate_unique_code(prefix: str, existing_codes: set[str]) -> str:
    """Generate a random code that does not collide with ``existing_codes``.

    Raises:
        RuntimeError: If no unique code turns up after 100 attempts.
    """
    for _ in range(100):
        random_part = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))
        code = f"{prefix}{random_part}"
        if code not in existing_codes:
            return code
    msg = f"Failed to generate a unique coupon code with prefix '{prefix}' after 100 attempts"
    raise RuntimeError(msg)


def generate_coupons(config: CouponBatchConfig) -> list[Coupon]:
    """Create ``config.count`` coupons with random codes in one transaction.

    Raises:
        ValueError: If ``config.count`` is outside 1-500.
        RuntimeError: If unique code generation fails after retries.
    """
    if config.count < 1 or config.count > _MAX_COUNT:
        msg = f"count must be between 1 and {_MAX_COUNT}, got {config.count}"
        raise ValueError(msg)

    prefix = Coupon.normalize_code(config.prefix)
    existing_codes: set[str] = set(
        Coupon.all_objects.filter(code__startswith=prefix).values_list("code", flat=True),
    )
    year = config.year or timezone.now().year
    scope = Coupon.Scope.EVENT if config.event is not None else Coupon.Scope.GLOBAL

    coupons: list[Coupon] = []
    for _ in range(config.count):
        code = _generate_unique_code(prefix, existing_codes)
        existing_codes.add(code)
        coupon = Coupon(
            code=code,
            coupon_type=config.coupon_type,
            scope=scope,
            event=config.event,
            discount_type=config.discount_type,
            discount_value=config.discount_value,
            max_uses=config.max_uses,
            year=year,
            valid_from=config.valid_from,
            valid_until=config.valid_until,
            is_manual=False,
            notes=config.notes,
        )
        coupon.apply_type_defaults()
        coupons.append(coupon)

    with transaction.atomic():
        return Coupon.objects.bulk_create(coupons)


def _create_company_coupon(
    event: Event,
    company_name: str,
    *,
    hubspot_company_id: str = "",
    discount_type: str,
    discount_value: Decimal,
    max_uses: int | None,
    year: int,
    now: datetime.datetime,
) -> Coupon:
    return Coupon.objects.create(
        code=generate_company_code(company_name, year=year, event_name=event.name),
        coupon_type=Coupon.CouponType.CUSTOM,
        scope=Coupon.Scope.EVENT,
        event=event,
        company_name=company_name,
        hubspot_company_id=hubspot_company_id,
        discount_type=discount_type,
        discount_value=discount_value,
        max_uses=max_uses,
        year=year,
        valid_from=now,
        is_manual=False,
        notes=f"Auto-generated for {company_name}",
    )


def create_company_coupons(
    event: Event,
    companies: Iterable[str],
    *,
    discount_type: str = Coupon.DiscountType.PERCENTAGE,
    discount_value: Decimal = Decimal("100"),
    max_uses: int | None = 10,
    year: int | None = None,
) -> CompanyCouponResult:
    """Create one event-scoped coupon per company, skipping companies that have one.

    A company already has a coupon when a live coupon with the same
    ``company_name`` exists for ``event`` and ``year``.
    """
    now = timezone.now()
    year = year or now.year
    result = CompanyCouponResult()
    for company_name in companies:
        existing = Coupon.objects.filter(company_name=company_name, event=event, year=year).first()
        if existing is not None:
            result.skipped[company_name] = existing.code
            continue
        coupon = _create_company_coupon(
            event,
            company_name,
            discount_type=discount_type,
            discount_value=discount_value,
            max_uses=max_uses,
            year=year,
            now=now,
        )
        result.created.append(coupon)
    return result


def generate_from_hubspot_list(
    list_id: str,
    event: Event,
    *,
    discount_type: str = Coupon.DiscountType.PERCENTAGE,
    discount_value: Decimal = Decimal("100"),
    max_uses: int | None = 10,
    year: int | None = None,
    client: HubspotClient | None = None,
) -> HubspotCouponResult:
    """Create one coupon per company in a HubSpot company list.

    Companies are matched on their HubSpot id, so a renamed company is still
    recognised. A company that already has a live coupon for ``event`` and
    ``year`` is skipped. A failure to create one company's coupon is recorded
    in ``errors`` and does not stop the rest of the list.

    Raises:
        CRMSyncError: If the list cannot be read from HubSpot.
        ValueError: If no HubSpot access token is configured.
    """
    now = timezone.now()
    year = year or now.year
    owns_client = client is None
    client = client or HubspotClient()
    try:
        companies = client.companies_in_list(list_id)
    except CRMSyncError:
        logger.exception("Failed to read HubSpot list %s for coupon generation", list_id)
        raise
    finally:
        if owns_client:
            client.close()

    result = HubspotCouponResult()
    for company in companies:
        existing = Coupon.objects.by_hubspot_company(company.id).filter(event=event, year=year).first()
        if existing is not None:
            result.skipped[company.id] = existing.code
            continue
        try:
            with transaction.atomic():
                coupon = _create_company_coupon(
                    event,
                    company.name,
                    hubspot_company_id=company.id,
                    discount_type=discount_type,
                    discount_value=discount_value,
                    max_uses=max_uses,
                    year=year,
                    now=now,
                )
        except DatabaseError as exc:
            logger.warning("Could not create a coupon for HubSpot company %s: %s", company.id, exc)
            result.errors[company.id] = str(exc)
            continue
        result.created.append(coupon)

    logger.info(
        "HubSpot list %s: %d coupons created, %d skipped, %d failed",
        list_id,
        len(result.created),
        len(result.skipped),
        len(result.errors),
    )
    return result
