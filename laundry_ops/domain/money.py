"""
Minor-unit money helpers.

Amounts are stored as integer fils (1 BHD = 1000 fils) the same way card
processors store cents. Decimal major units only appear at the gateway boundary.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Union

# ISO 4217 minor unit exponents for the currencies the gateway settles in.
CURRENCY_EXPONENTS: Dict[str, int] = {
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "SAR": 2,
    "AED": 2,
    "QAR": 2,
    "USD": 2,
    "EUR": 2,
}


def _exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


def to_major(amount_minor: int, currency: str = "BHD") -> Decimal:
    """Convert minor units to a quantized Decimal (1500 fils -> Decimal('1.500'))."""
    exponent = _exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return (Decimal(amount_minor) / (10 ** exponent)).quantize(quantum, rounding=ROUND_HALF_UP)


def to_minor(amount: Union[Decimal, float, int, str], currency: str = "BHD") -> int:
    """Convert a major-unit amount to integer minor units (Decimal('1.5') -> 1500)."""
    exponent = _exponent(currency)
    value = Decimal(str(amount)) * (10 ** exponent)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
