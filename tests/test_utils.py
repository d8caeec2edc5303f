import pytest

from utils import (format_currency, format_currency_input, format_phone, is_valid_phone,
                   normalize_phone, parse_currency)


@pytest.mark.parametrize("raw, expected", [
    ("(555) 123-4567", "+15551234567"),
    ("555.123.4567", "+15551234567"),
    ("+1 555 123 4567", "+15551234567"),
    ("+44 20 7946 0958", "+442079460958"),
    ("(+1) 555-123-4567", "+15551234567"),
    ("+1 (555) 123+4567", "+15551234567"),
    ("  5551234 ", "5551234"),
    ("", ""),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", [
    "(555) 123-4567", "+44 20 7946 0958", "5551234", "15551234567", "12+34", "", "abc",
    "(+1) 555-123-4567",
])
def test_normalize_phone_is_idempotent(raw):
    once = normalize_phone(raw)
    assert normalize_phone(once) == once


def test_is_valid_phone():
    assert is_valid_phone("(555) 123-4567")
    assert is_valid_phone("+442079460958")
    assert not is_valid_phone("123")
    assert not is_valid_phone("not a phone")
    assert not is_valid_phone("+1234567890123456")


def test_format_phone():
    assert format_phone("+15551234567") == "(555) 123-4567"
    assert format_phone("+442079460958") == "+442079460958"


def test_format_currency():
    assert format_currency(14000) == "$140.00"
    assert format_currency(5) == "$0.05"
    assert format_currency(0) == "$0.00"
    assert format_currency(-150) == "-$1.50"
    assert format_currency(1999, symbol="€") == "€19.99"


def test_format_currency_input():
    assert format_currency_input(1250) == "12.50"
    assert format_currency_input(-7) == "-0.07"


@pytest.mark.parametrize("raw, expected", [
    ("12.50", 1250),
    ("12,5", 1250),
    ("$3", 300),
    ("0.29", 29),
    (" 140 ", 14000),
    ("0.005", 1),
])
def test_parse_currency(raw, expected):
    assert parse_currency(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "", "nan", "inf", "1.2.3"])
def test_parse_currency_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_currency(raw)
