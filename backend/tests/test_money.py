from fractions import Fraction

import pytest

from tradeledger.money import format_cents, percent_to_bps, round_half_up, tax_on, to_cents


def test_round_half_up_goes_away_from_zero():
    assert round_half_up(Fraction(5, 2)) == 3
    assert round_half_up(Fraction(-5, 2)) == -3
    assert round_half_up(Fraction(7, 3)) == 2
    assert round_half_up(Fraction(1, 2)) == 1
    assert round_half_up(42) == 42


def test_tax_on_is_exact():
    assert tax_on(10000, 800) == 800
    assert tax_on(5, 1000) == Fraction(1, 2)
    assert round_half_up(tax_on(9000, 800) * Fraction(9000, 10000)) == 648


def test_percent_to_bps():
    assert percent_to_bps(10) == 1000
    assert percent_to_bps("12.5") == 1250
    assert percent_to_bps("0.005") == 1
    with pytest.raises(ValueError):
        percent_to_bps("ten")


def test_cents_conversions():
    assert to_cents("47.20") == 4720
    assert to_cents(0.1) == 10
    assert format_cents(4720) == "47.20"
    assert format_cents(-5) == "-0.05"
    assert format_cents(None) is None
