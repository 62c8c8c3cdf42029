"""
Module: reimbursement_kernel.db.types
Responsibility: The sanctioned money parsing and rounding helpers.  Every
    service and selector goes through them so amounts are parsed and
    rounded identically everywhere.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/ and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats in stored or computed amounts.  Inputs that arrive as floats
      are converted through their string form so 0.1 stays 0.1.
    - round_money() is the ONLY rounding function for monetary values.
      Default rounding is ROUND_HALF_UP.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

DEFAULT_ROUNDING = ROUND_HALF_UP


def money_from_value(value: Any) -> Decimal:
    """
    Parse a user-supplied amount into a finite Decimal.

    Accepts Decimal, int, float and numeric strings (surrounding whitespace
    is ignored).  Booleans are rejected even though they are ints.

    Raises:
        ValueError: If the value is missing, not numeric, NaN or infinite.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Not a number: {value!r}") from None
    else:
        raise ValueError(f"Not a number: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def round_money(
    value: Decimal,
    decimal_places: int = 2,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    ``decimal_places=0`` rounds to whole units.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def as_money(value: Any) -> Decimal:
    """
    Coerce a value read back from the database into a Decimal.

    SQL ``SUM``/``COALESCE`` results may come back as int, float or Decimal
    depending on the backend; NULL becomes zero.
    """
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
