from decimal import Decimal

from quotelink.domain.stages import ValueType
from quotelink.domain.values import resolve_value, should_overwrite


def test_binding_total_wins_over_ranges() -> None:
    resolved = resolve_value(Decimal("5000"), Decimal("4000"), Decimal("6000"), is_binding=True)

    assert resolved.value == Decimal("5000")
    assert resolved.value_type is ValueType.BINDING
    assert resolved.range_low is None
    assert resolved.range_high is None


def test_range_midpoint_when_not_binding() -> None:
    resolved = resolve_value(Decimal("5200"), Decimal("4000"), Decimal("6500"), is_binding=False)

    assert resolved.value == Decimal("5250")
    assert resolved.value_type is ValueType.NON_BINDING_RANGE
    assert (resolved.range_low, resolved.range_high) == (Decimal("4000"), Decimal("6500"))


def test_binding_flag_without_total_falls_back_to_range() -> None:
    resolved = resolve_value(None, Decimal("100"), Decimal("300"), is_binding=True)

    assert resolved.value == Decimal("200")
    assert resolved.value_type is ValueType.NON_BINDING_RANGE


def test_unknown_when_nothing_usable() -> None:
    resolved = resolve_value(None, Decimal("100"), None, is_binding=False)

    assert resolved.value is None
    assert resolved.value_type is ValueType.UNKNOWN


def test_overwrite_priority() -> None:
    assert should_overwrite(ValueType.UNKNOWN, ValueType.NON_BINDING_RANGE)
    assert should_overwrite(ValueType.NON_BINDING_RANGE, ValueType.NON_BINDING_RANGE)
    assert should_overwrite(ValueType.BINDING, ValueType.BINDING)
    assert should_overwrite(None, ValueType.UNKNOWN)
    assert not should_overwrite(ValueType.BINDING, ValueType.NON_BINDING_RANGE)
    assert not should_overwrite(ValueType.BINDING, ValueType.UNKNOWN)
    assert not should_overwrite(ValueType.NON_BINDING_RANGE, ValueType.UNKNOWN)
