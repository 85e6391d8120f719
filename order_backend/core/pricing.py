"""
Price normalization and order total derivation.

Item prices arrive either as numbers (``12.5``) or as currency-prefixed
strings (``"$12.50"``). Both are turned into a positive ``Decimal`` once, at
ingestion, and nothing downstream ever sees the textual form.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Iterable, Tuple, Union

from order_backend.core.exceptions import ValidationError

PriceInput = Union[Decimal, int, float, str]
TaxPolicy = Callable[[Decimal], Decimal]

CENTS = Decimal("0.01")
CURRENCY_SYMBOLS = "$€£¥"

# Stripe amounts for these currencies are already in major units
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)


def normalize_price(value: PriceInput) -> Decimal:
    """
    Normalize an item price to a positive decimal.

    Args:
        value: Numeric price or a string such as ``"$60"`` or ``"12.50"``

    Returns:
        Decimal: Price quantized to cents

    Raises:
        ValidationError: If the price cannot be parsed or is not positive
    """
    if isinstance(value, bool):
        raise ValidationError("Item price must be a positive number")

    if isinstance(value, str):
        text = value.strip().lstrip(CURRENCY_SYMBOLS).strip().replace(",", "")
    elif isinstance(value, (int, float, Decimal)):
        # str() keeps 12.5 from becoming 12.4999999...
        text = str(value)
    else:
        raise ValidationError("Item price must be a positive number")

    try:
        price = Decimal(text)
        if not price.is_finite():
            raise InvalidOperation(text)
        price = price.quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Item price {value!r} is not a number")

    if price <= 0:
        raise ValidationError("Item price must be a positive number")
    return price


def no_tax(subtotal: Decimal) -> Decimal:
    """Default tax policy: taxes are passed through as zero."""
    return Decimal("0.00")


def flat_rate_tax(rate: Decimal) -> TaxPolicy:
    """Build a tax policy charging ``rate`` (e.g. ``Decimal("0.08")``) on the subtotal."""
    if rate < 0:
        raise ValueError("Tax rate must not be negative")
    if rate == 0:
        return no_tax

    def policy(subtotal: Decimal) -> Decimal:
        return (subtotal * rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    return policy


def compute_subtotal(lines: Iterable[Tuple[Decimal, int]]) -> Decimal:
    """Sum of ``price * quantity`` over ``(price, quantity)`` pairs."""
    subtotal = sum((price * quantity for price, quantity in lines), Decimal("0"))
    return subtotal.quantize(CENTS, rounding=ROUND_HALF_UP)


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert a gateway amount (cents for most currencies) to major units."""
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / 100).quantize(CENTS)
