"""
Module: funding_kernel.db.types
Responsibility: Precision constants and helpers for monetary values.
    Centralizes precision and rounding so that every model and service
    uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    and services/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Money precision: MONEY_DECIMAL_PLACES defines the canonical scale for
      contribution, target and funded amounts.  round_money() is the ONLY
      sanctioned rounding function.  MAX_MONEY is the largest storable
      amount for MONEY_PRECISION.
    - No floats anywhere.  money_from_value() rejects float input.

Failure modes:
    - ValueError on float input or a non-numeric string.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MONEY_PRECISION = 14
MONEY_DECIMAL_PLACES = 2
# Largest value a Numeric(14, 2) column holds.
MAX_MONEY = Decimal(10) ** (MONEY_PRECISION - MONEY_DECIMAL_PLACES) - Decimal("0.01")
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0.00")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the canonical scale.

    Preconditions: value is a Decimal (not float).
    Postconditions: Returns a Decimal with exactly ``decimal_places`` places.
    """
    quantizer = Decimal(10) ** -decimal_places
    return value.quantize(quantizer, rounding=rounding)


def money_from_value(value: Decimal | int | str) -> Decimal:
    """
    Convert client input into a Money Decimal without rounding.

    Raises:
        ValueError: If value is a float or does not parse as a number.
    """
    if isinstance(value, float):
        raise ValueError("Monetary amounts must not be floats")
    try:
        result = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation as exc:
        raise ValueError(f"Not a numeric amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return result
