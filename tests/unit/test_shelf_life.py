import pytest
from datetime import date

from branchstock.api.errors import ValidationError
from branchstock.services.utils.shelf_life import add_months, compute_expiration_date, parse_shelf_life_months


def test_add_months_month_end_clamp():
    assert add_months(date(2024, 8, 31), 6) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 1, 15), 1) == date(2025, 2, 15)


def test_add_months_crosses_year():
    assert add_months(date(2025, 11, 30), 3) == date(2026, 2, 28)


@pytest.mark.parametrize(
    "raw,expected",
    [("6", 6), ("6 months", 6), ("1 Month", 1), (" 18months ", 18), (9, 9)],
)
def test_parse_shelf_life_months(raw, expected):
    assert parse_shelf_life_months(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", 0, "0 months"])
def test_parse_shelf_life_falls_back_to_default(raw):
    assert parse_shelf_life_months(raw, default=12) == 12


def test_parse_shelf_life_other_units_rejected():
    with pytest.raises(ValidationError):
        parse_shelf_life_months("90 days")
    with pytest.raises(ValidationError):
        parse_shelf_life_months("2 years")


def test_compute_expiration_prefers_explicit_date():
    explicit = date(2025, 5, 1)
    assert compute_expiration_date(date(2024, 8, 31), "6 months", explicit=explicit) == explicit


def test_compute_expiration_from_shelf_life():
    assert compute_expiration_date(date(2024, 8, 31), "6 months") == date(2025, 2, 28)
    assert compute_expiration_date(date(2024, 8, 31), None, default_months=12) == date(2025, 8, 31)
