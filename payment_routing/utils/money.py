"""
Conversions between major-unit decimals and integer minor units.

All balances and amounts inside the service are integers in the currency's
minor unit. Providers that speak major units (Flutterwave) convert at the
adapter boundary.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)

THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})


def minor_unit_exponent(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    currency = currency.upper()
    if currency in ZERO_DECIMAL_CURRENCIES:
        return 0
    if currency in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def to_minor(amount: Union[Decimal, int, float, str], currency: str) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Args:
        amount: Amount in major units (e.g. ``"12.50"``)
        currency: ISO 4217 currency code

    Returns:
        int: Amount in minor units, rounded half-up
    """
    quantum = Decimal(10) ** minor_unit_exponent(currency)
    value = Decimal(str(amount)) * quantum
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(amount_minor: int, currency: str) -> Decimal:
    """Convert integer minor units back to a major-unit Decimal."""
    exponent = minor_unit_exponent(currency)
    return (Decimal(amount_minor) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )
