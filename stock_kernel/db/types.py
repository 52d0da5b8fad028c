"""
Module: stock_kernel.db.types
Responsibility: Conversion helpers for quantity and cost values.  Caller
    input goes through to_quantity(); values read back go through quantize().
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    CRITICAL: No floats anywhere in the kernel.  Quantities and costs are
    Decimal with explicit precision; to_quantity() is the single sanctioned
    conversion from caller input.
"""

from decimal import Decimal, InvalidOperation

# Column scale of every quantity and unit cost (Numeric(38, 9) in db.base).
QUANTITY_DECIMAL_PLACES = 9
ZERO = Decimal("0")


def to_quantity(value: Decimal | int | str) -> Decimal:
    """
    Convert caller input into an exact Decimal quantity.

    Floats are rejected: ``Decimal(0.1)`` is not 0.1, and a stock ledger
    must not silently carry binary rounding error into balances.

    Raises:
        TypeError: If value is a float (or bool).
        ValueError: If value is not a finite decimal number.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(
            f"Quantities must be Decimal, int or str, not {type(value).__name__}"
        )
    try:
        qty = value if isinstance(value, Decimal) else Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal quantity: {value!r}") from exc
    if not qty.is_finite():
        raise ValueError(f"Quantity must be finite: {value!r}")
    return qty


def quantize(value: Decimal) -> Decimal:
    """Normalize a quantity to the column scale (drops float noise on SQLite)."""
    return value.quantize(Decimal(1).scaleb(-QUANTITY_DECIMAL_PLACES)).normalize() + ZERO
