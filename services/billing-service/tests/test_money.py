import pytest

from app.money import (
    NBSP,
    amount_for_minutes,
    apply_discount,
    billable_amount,
    format_currency,
    format_hours,
    format_minutes,
    format_percent,
    hours,
    parse_duration,
    preserve_spaces,
    round_half_away,
)


def test_round_half_away_from_zero():
    assert round_half_away(2.5) == 3
    assert round_half_away(-2.5) == -3
    assert round_half_away(2.4999) == 2
    assert round_half_away(0.5) == 1


def test_amount_for_minutes_rounds_once():
    assert amount_for_minutes(90, 10000) == 15000
    assert amount_for_minutes(30, 10000) == 5000
    # 7 minutes at $1.00/hr = 11.666... cents
    assert amount_for_minutes(7, 100) == 12
    # 1 minute at $0.30/hr = 0.5 cents, ties away from zero
    assert amount_for_minutes(1, 30) == 1
    assert amount_for_minutes(0, 10000) == 0


def test_apply_discount():
    assert apply_discount(15000, 10) == (1500, 13500)
    assert apply_discount(15000, 0) == (0, 15000)
    assert apply_discount(15000, None) == (0, 15000)
    # 12.5% of 333 = 41.625
    assert apply_discount(333, 12.5) == (42, 291)


def test_billable_amount_is_post_discount():
    assert billable_amount(90, 10000, 10) == 13500
    assert billable_amount(45, 8000) == 6000


@pytest.mark.parametrize("cents, expected", [
    (0, "$0.00"),
    (5, "$0.05"),
    (13500, "$135.00"),
    (123456789, "$1234567.89"),
    (-2000, "-$20.00"),
])
def test_format_currency(cents, expected):
    assert format_currency(cents) == expected


def test_format_hours_and_minutes():
    assert format_hours(90) == "1.50"
    assert format_hours(20) == "0.33"
    assert format_hours(0) == "0.00"
    assert format_minutes(90) == "1h 30m"
    assert format_minutes(45) == "45m"
    assert hours(100) == 1.67


def test_format_percent_drops_trailing_zeros():
    assert format_percent(10) == "10%"
    assert format_percent(10.0) == "10%"
    assert format_percent(12.5) == "12.5%"
    assert format_percent(0) == "0%"
    assert format_percent(None) == "0%"


def test_preserve_spaces():
    assert preserve_spaces("a   b") == "a " + NBSP + NBSP + "b"
    assert preserve_spaces("a b") == "a b"
    assert preserve_spaces("") == ""


@pytest.mark.parametrize("value, expected", [
    ("1:30", 90),
    ("0:07", 10),
    ("1.5", 90),
    ("0,75", 45),
    ("2", 120),
    ("45", 45),
    ("", 0),
    (1.25, 75),
    (30, 30),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


def test_parse_duration_rejects_garbage():
    with pytest.raises(ValueError):
        parse_duration("soon")
    with pytest.raises(ValueError):
        parse_duration("-1:00")
