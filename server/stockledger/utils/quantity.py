from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from stockledger.errors import ValidationError


QUANTITY_SCALE = Decimal("0.000001")
# Resolved per-unit quantities multiply edge quantities across BOM levels.
PER_UNIT_SCALE = Decimal("0.000000000000000001")
ZERO = Decimal("0")


def to_decimal(value: Decimal | float | int | str | None, *, field: str = "quantity") -> Decimal:
    if value is None:
        raise ValidationError(f"{field} is required.")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}.")
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite.")
    return result


def quantize_qty(value: Decimal | float | int | str | None) -> Decimal | None:
    """Round to the storage scale. Only applied when a value is persisted."""
    if value is None:
        return None
    return Decimal(str(value)).quantize(QUANTITY_SCALE, rounding=ROUND_HALF_UP)


def require_positive(value, *, field: str = "quantity") -> Decimal:
    result = to_decimal(value, field=field)
    if result <= 0:
        raise ValidationError(f"{field} must be greater than 0.")
    return result


def quantize_per_unit(value: Decimal | float | int | str) -> Decimal:
    """Store a resolved per-unit BOM quantity without rounding it.

    Snapshot totals and every later consumption are derived from this value,
    so a value that does not fit the snapshot scale is rejected.
    """
    result = to_decimal(value, field="quantity_per_unit")
    try:
        stored = result.quantize(PER_UNIT_SCALE)
    except InvalidOperation:
        raise ValidationError(f"quantity_per_unit {result} is too large to store.")
    if stored != result:
        raise ValidationError(
            f"quantity_per_unit {result} needs more than {-PER_UNIT_SCALE.as_tuple().exponent} decimal places."
        )
    return stored
