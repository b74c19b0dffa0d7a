from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Annotated, Iterable, Union

from pydantic import AfterValidator

MINOR_UNIT = Decimal("0.01")
WHOLE_UNIT = Decimal("1")

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """Convert to Decimal without going through binary float repr."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid monetary amount: {value!r}") from e


def quantize(value: Numeric) -> Decimal:
    """Round to minor currency units (cents)."""
    return to_decimal(value).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def round_whole(value: Numeric) -> Decimal:
    """Round to the nearest whole currency unit, half away from zero."""
    return to_decimal(value).quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Numeric]) -> Decimal:
    total = Decimal("0")
    for v in values:
        total += quantize(v)
    return quantize(total)


# Decimal field quantized to cents on validation
Money = Annotated[Decimal, AfterValidator(quantize)]
