from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def today_iso() -> str:
    return utc_now().date().isoformat()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_text(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value)


def from_text(value: str | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(value)


def dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=_json_default, sort_keys=True)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return to_iso(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
