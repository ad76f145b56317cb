from decimal import Decimal

import pytest

from synthlev.units import format_units, parse_units, scale, tokens


def test_parse_whole():
    assert parse_units("10") == 10 * scale()
    assert parse_units(10) == 10_000_000_000_000_000_000


def test_parse_fraction():
    assert parse_units("0.25") == 250_000_000_000_000_000
    assert parse_units(Decimal("1.5"), decimals=6) == 1_500_000


def test_parse_huge():
    # bigger than float precision and the default decimal context
    assert parse_units("123456789012345678901234567890") == 123456789012345678901234567890 * 10**18


def test_parse_rejects():
    with pytest.raises(ValueError):
        parse_units("-1")

    with pytest.raises(ValueError):
        parse_units("abc")

    with pytest.raises(ValueError):
        parse_units("0.001", decimals=2)


def test_format():
    assert format_units(10 * scale()) == "10"
    assert format_units(250_000_000_000_000_000) == "0.25"
    assert format_units(0) == "0"
    assert format_units(1) == "0.000000000000000001"
    assert format_units(1_500_000, decimals=6) == "1.5"


def test_tokens():
    assert tokens(parse_units("12345.6789")) == "12,345.6789"
    assert tokens(0, places=2) == "0.00"
