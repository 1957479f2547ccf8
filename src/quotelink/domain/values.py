from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from quotelink.domain.stages import VALUE_TYPE_PRIORITY, ValueType


@dataclass(frozen=True)
class ResolvedValue:
    value: Decimal | None
    value_type: ValueType
    range_low: Decimal | None = None
    range_high: Decimal | None = None


def resolve_value(
    total: Decimal | None,
    range_low: Decimal | None,
    range_high: Decimal | None,
    is_binding: bool,
) -> ResolvedValue:
    if is_binding and total is not None:
        return ResolvedValue(value=total, value_type=ValueType.BINDING)
    if range_low is not None and range_high is not None:
        return ResolvedValue(
            value=(range_low + range_high) / 2,
            value_type=ValueType.NON_BINDING_RANGE,
            range_low=range_low,
            range_high=range_high,
        )
    return ResolvedValue(value=None, value_type=ValueType.UNKNOWN)


def should_overwrite(current: ValueType | None, proposed: ValueType) -> bool:
    """Return True when a proposed value type may replace the stored one.

    Binding beats a range estimate, which beats unknown. Equal ranks replace
    each other so a newer binding total supersedes an older one.
    """
    current_rank = VALUE_TYPE_PRIORITY[current or ValueType.UNKNOWN]
    return VALUE_TYPE_PRIORITY[proposed] >= current_rank
