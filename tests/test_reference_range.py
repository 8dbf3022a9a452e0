import pytest

from cmi.common.ranges import format_number, format_reference_range, parse_reference_range


def test_two_sided_range_drops_trailing_zero():
    assert format_reference_range(3.5, 5.0, "mEq/L") == "3.5-5 mEq/L"


def test_one_sided_ranges():
    assert format_reference_range(low=60, unit="mL/min") == ">= 60 mL/min"
    assert format_reference_range(high=200.0, unit="mg/dL") == "<= 200 mg/dL"


def test_absent_bounds_give_empty_text():
    assert format_reference_range(None, None, "mg/dL") == ""


def test_missing_unit_leaves_no_trailing_space():
    assert format_reference_range(1, 2) == "1-2"


@pytest.mark.parametrize(
    "low, high, unit",
    [
        (3.5, 5.0, "mEq/L"),
        (0.0, 1.2, "mg/dL"),
        (60.0, None, "mL/min"),
        (None, 200.0, "mg/dL"),
        (135.0, 145.0, ""),
    ],
)
def test_bounds_survive_format_then_parse(low, high, unit):
    text = format_reference_range(low, high, unit)
    assert parse_reference_range(text) == (low, high, unit)
    # formatting is idempotent
    lo, hi, u = parse_reference_range(text)
    assert format_reference_range(lo, hi, u) == text


def test_free_text_range_is_not_parsed():
    assert parse_reference_range("negative") is None
    assert parse_reference_range("") is None


def test_format_number():
    assert format_number(6.9) == "6.9"
    assert format_number(7.0) == "7"
    assert format_number(12) == "12"
    assert format_number(True) == "true"
    assert format_number(None) == ""
