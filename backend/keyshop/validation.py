from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import InvalidInputError


# Upper bound on a single line quantity; the gateway ceiling rejects larger totals anyway
MAX_QUANTITY = 10_000


def require_payload(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise InvalidInputError("Invalid JSON payload")
    return payload


def pick(payload: dict, *names: str, default=None):
    """Return the first present key among snake_case / camelCase aliases."""
    for name in names:
        if name in payload and payload[name] is not None:
            return payload[name]
    return default


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion for request values.

    Rejects booleans, floats, decimals and scientific notation so that
    "1e3" or 2.5 never silently become quantities.
    """
    if value is None:
        raise InvalidInputError(f"{field} is required")

    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be an integer")

    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise InvalidInputError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise InvalidInputError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise InvalidInputError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise InvalidInputError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise InvalidInputError(f"{field} must be an integer, not a decimal")
    else:
        raise InvalidInputError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise InvalidInputError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise InvalidInputError(f"{field} must be <= {maximum}")
    return result


def coerce_str(value: Any, field: str, *, required: bool = True, max_length: int | None = None) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise InvalidInputError(f"{field} is required")
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise InvalidInputError(f"{field} must be a string")
    result = str(value).strip()
    if max_length is not None and len(result) > max_length:
        raise InvalidInputError(f"{field} exceeds max length {max_length}")
    return result


def coerce_bool(value: Any, field: str, *, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise InvalidInputError(f"{field} must be true or false")


def to_minor_units(value: Any, field: str = "amount") -> int:
    """
    Convert a major-unit money value (e.g. 100.50 THB) to integer minor units.

    Accepts numbers or numeric strings. NaN/Infinity, negatives and more than
    two decimal places are rejected.
    """
    if value is None:
        raise InvalidInputError(f"{field} is required")
    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{field} must be a number")

    if not amount.is_finite():
        raise InvalidInputError(f"{field} must be a finite number")
    if amount < 0:
        raise InvalidInputError(f"{field} must be >= 0")
    if amount != amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP):
        raise InvalidInputError(f"{field} must have at most two decimal places")

    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def format_minor_units(value: int | None) -> str | None:
    """Render minor units as a two-decimal major-unit string ("100.00")."""
    if value is None:
        return None
    return str((Decimal(value) / 100).quantize(Decimal("0.01")))
