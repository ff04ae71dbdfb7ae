"""Typed configuration for django-ticketing.

Reads a single ``DJANGO_TICKETING`` dict from Django settings and exposes it as
composed, frozen dataclasses with sensible defaults.

Usage::

    from django_ticketing.settings import get_config

    config = get_config()
    config.stripe.api_version
    config.reservation_ttl_minutes
    config.currency
"""

import functools
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from django.conf import settings
from django.test.signals import setting_changed

DEFAULT_COUPON_TYPES: Mapping[str, Mapping[str, int | None]] = MappingProxyType(
    {
        "staff": {"max_uses_per_event": 1, "max_uses_global": 1},
        "staff_guest": {"max_uses_per_event": 100, "max_uses_global": None},
        "member": {"max_uses_per_event": 1, "max_uses_global": 6},
        "member_guest": {"max_uses_per_event": 5, "max_uses_global": None},
        "custom": {"max_uses_per_event": None, "max_uses_global": None},
    }
)


@dataclass(frozen=True, slots=True)
class StripeConfig:
    """Stripe payment gateway configuration.

    Secret keys live on each ``Event``; only account-independent options are
    configured globally.
    """

    api_version: str = "2024-12-18"
    webhook_tolerance: int = 300


@dataclass(frozen=True, slots=True)
class HubspotConfig:
    """HubSpot CRM API configuration."""

    base_url: str = "https://api.hubapi.com"
    access_token: str | None = None
    timeout: float = 10.0


@dataclass(frozen=True, slots=True)
class FeaturesConfig:
    """Feature toggles. ``registration_enabled`` closes every event at once."""

    registration_enabled: bool = True


@dataclass(frozen=True, slots=True)
class TicketingConfig:
    """Top-level django-ticketing configuration."""

    stripe: StripeConfig = field(default_factory=StripeConfig)
    hubspot: HubspotConfig = field(default_factory=HubspotConfig)
    features: FeaturesConfig = field(default_factory=FeaturesConfig)
    coupon_types: Mapping[str, Mapping[str, int | None]] = field(default_factory=lambda: DEFAULT_COUPON_TYPES)
    reservation_ttl_minutes: int = 30
    abandon_after_hours: int = 24
    cancellation_deadline_hours: int = 24
    currency: str = "USD"


@functools.lru_cache(maxsize=1)
def get_config() -> TicketingConfig:
    """Build and return the ticketing configuration.

    Reads ``settings.DJANGO_TICKETING`` (a plain dict) and returns a frozen
    :class:`TicketingConfig`.  The result is cached; the cache is cleared
    automatically when Django's ``setting_changed`` signal fires (e.g. inside
    ``override_settings``).
    """
    raw = getattr(settings, "DJANGO_TICKETING", {})
    if not isinstance(raw, Mapping):
        msg = "DJANGO_TICKETING must be a mapping (dict-like object)"
        raise TypeError(msg)
    raw_data = dict(raw)

    sections: dict[str, dict[str, object]] = {}
    for name in ("stripe", "hubspot", "features"):
        section = raw_data.pop(name, {})
        if not isinstance(section, Mapping):
            msg = f"DJANGO_TICKETING['{name}'] must be a mapping (dict-like object)"
            raise TypeError(msg)
        sections[name] = dict(section)

    coupon_types = raw_data.pop("coupon_types", None)
    if coupon_types is not None and not isinstance(coupon_types, Mapping):
        msg = "DJANGO_TICKETING['coupon_types'] must be a mapping (dict-like object)"
        raise TypeError(msg)
    merged_types = dict(DEFAULT_COUPON_TYPES)
    merged_types.update(coupon_types or {})

    config = TicketingConfig(
        stripe=StripeConfig(**sections["stripe"]),
        hubspot=HubspotConfig(**sections["hubspot"]),
        features=FeaturesConfig(**sections["features"]),
        coupon_types=MappingProxyType(merged_types),
        **raw_data,
    )
    _validate_ticketing_config(config)
    return config


def _validate_ticketing_config(config: TicketingConfig) -> None:
    """Validate high-impact configuration values with clear error messages."""
    for name in ("reservation_ttl_minutes", "abandon_after_hours"):
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            msg = f"DJANGO_TICKETING['{name}'] must be a positive integer"
            raise ValueError(msg)
    deadline = config.cancellation_deadline_hours
    if not isinstance(deadline, int) or isinstance(deadline, bool) or deadline < 0:
        msg = "DJANGO_TICKETING['cancellation_deadline_hours'] must be a non-negative integer"
        raise ValueError(msg)
    if not isinstance(config.currency, str) or len(config.currency.strip()) != 3:  # noqa: PLR2004
        msg = "DJANGO_TICKETING['currency'] must be a three-letter ISO 4217 code"
        raise ValueError(msg)
    if not isinstance(config.features.registration_enabled, bool):
        msg = "DJANGO_TICKETING['features']['registration_enabled'] must be a boolean"
        raise TypeError(msg)
    for type_name, limits in config.coupon_types.items():
        if not isinstance(limits, Mapping):
            msg = f"DJANGO_TICKETING['coupon_types']['{type_name}'] must be a mapping"
            raise TypeError(msg)
        for key in ("max_uses_per_event", "max_uses_global"):
            value = limits.get(key)
            if value is not None and (not isinstance(value, int) or value < 0):
                msg = f"DJANGO_TICKETING['coupon_types']['{type_name}']['{key}'] must be a non-negative integer or None"
                raise ValueError(msg)


def _clear_config_cache(*, setting: str, **kwargs: object) -> None:  # noqa: ARG001
    """Clear the cached config when Django settings change during tests."""
    if setting == "DJANGO_TICKETING":
        get_config.cache_clear()


setting_changed.connect(_clear_config_cache, dispatch_uid="django_ticketing.settings.clear_config_cache")
