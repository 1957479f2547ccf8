from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation


class ValidationError(ValueError):
    pass


def require(value: str | None, field: str) -> None:
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field} is required.")


def validate_enum(value: str | None, allowed: Iterable[str], field: str) -> None:
    if value is None:
        return
    allowed = list(allowed)
    if value not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(allowed))}")


def parse_decimal(value: str | int | float | Decimal | None, field: str) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        # str() first so floats keep their printed form rather than their binary one.
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"{field} must be a number.") from exc


def parse_range(value: str, field: str) -> tuple[Decimal, Decimal]:
    low_raw, sep, high_raw = value.partition(":")
    if not sep:
        raise ValidationError(f"{field} must be LOW:HIGH.")
    low = parse_decimal(low_raw.strip(), field)
    high = parse_decimal(high_raw.strip(), field)
    if low is None or high is None:
        raise ValidationError(f"{field} must be LOW:HIGH.")
    if low > high:
        raise ValidationError(f"{field} low must not exceed high.")
    return low, high
