import datetime
import decimal
import uuid
from decimal import ROUND_HALF_UP, Decimal

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value):
    """Quantize to cents; raises `InvalidOperation` for text that is not a finite number."""
    if value is None or value == "":
        return ZERO
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise decimal.InvalidOperation(f"{value!r} is not a finite amount")
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def to_json_compatible(value):
    """Convert a snapshot into plain JSON types; money travels as a string to keep its precision."""
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value
