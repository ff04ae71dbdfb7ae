"""Money conversion between ticket prices and Stripe minor units.

Stripe sends and expects integer amounts in the smallest currency unit: cents
for USD and EUR, but whole units for zero-decimal currencies such as JPY.
Registration prices are stored as two-place ``Decimal`` values, so every
amount crossing the gateway boundary goes through these helpers.
"""

from decimal import ROUND_HALF_UP, Decimal

_OBFUSCATE_VISIBLE_CHARS = 4

ZERO_DECIMAL_CURRENCIES: frozenset[str] = frozenset(
    {
        "BIF",
        "CLP",
        "DJF",
        "GNF",
        "JPY",
        "KMF",
        "KRW",
        "MGA",
        "PYG",
        "RWF",
        "UGX",
        "VND",
        "VUV",
        "XAF",
        "XOF",
        "XPF",
    }
)


def minor_unit_factor(currency: str) -> int:
    """Return how many minor units make up one unit of ``currency``."""
    return 1 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 100


def convert_amount_for_api(amount: Decimal, currency: str) -> int:
    """Convert a ticket amount to Stripe's integer minor units.

    Sub-cent fractions are rounded half-up, so ``Decimal("80.005")`` in USD
    becomes ``8001``.

    Args:
        amount: The amount to charge.
        currency: An ISO 4217 currency code (case-insensitive).

    Returns:
        The amount as an integer in the smallest currency unit.
    """
    scaled = Decimal(amount) * minor_unit_factor(currency)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def convert_amount_for_db(amount: int | None, currency: str) -> Decimal:
    """Convert a Stripe minor-unit amount back to a two-place ``Decimal``.

    ``None`` (a field Stripe omitted) is treated as zero.
    """
    value = Decimal(amount or 0) / minor_unit_factor(currency)
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def obfuscate_key(key: str) -> str:
    """Mask an API key for log output, keeping only its last four characters."""
    if len(key) < _OBFUSCATE_VISIBLE_CHARS:
        return "****"
    return "****" + key[-_OBFUSCATE_VISIBLE_CHARS:]
