from decimal import Decimal

import pytest

from pos_settlement.app.money import (
    format_sos,
    format_usd,
    round_sos,
    round_sos_step,
    round_usd,
    rounding_direction,
    to_decimal,
    to_sos_equivalent,
    to_usd_equivalent,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("12.5", Decimal("12.5")),
        ("1,25", Decimal("1.25")),
        (" 7 ", Decimal("7")),
        (3, Decimal("3")),
    ],
)
def test_to_decimal_accepts_cashier_input(raw, expected):
    assert to_decimal(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", True, "nan", "inf"])
def test_to_decimal_falls_back_to_default(raw):
    assert to_decimal(raw) == Decimal("0")
    assert to_decimal(raw, None) is None


def test_round_usd_rounds_up_to_the_cent():
    assert round_usd("10.001") == Decimal("10.01")
    assert round_usd("10.00") == Decimal("10.00")
    assert round_usd(Decimal("0.555")) == Decimal("0.56")


def test_round_usd_is_idempotent():
    once = round_usd("19.9901")
    assert round_usd(once) == once
    assert str(once) == "20.00"


def test_round_sos_is_half_up_to_whole_shillings():
    assert round_sos("2.5") == Decimal("3")
    assert round_sos("2.49") == Decimal("2")
    assert round_sos(round_sos("1234.5")) == Decimal("1235")


def test_equivalents_use_given_rate():
    assert to_usd_equivalent(54000, 27000) == Decimal("2.00")
    assert to_usd_equivalent(10000, 27000) == Decimal("0.38")
    assert to_sos_equivalent("1.50", 27000) == Decimal("40500")


@pytest.mark.parametrize("rate", [Decimal("27000"), Decimal("26850.5")])
@pytest.mark.parametrize("overpaid", ["0.01", "0.05", "0.37", "1.23", "2.00", "99.99"])
def test_change_in_sos_converts_back_to_the_overpaid_usd(overpaid, rate):
    usd = Decimal(overpaid)
    back = to_usd_equivalent(to_sos_equivalent(usd, rate), rate)
    assert abs(back - usd) <= Decimal("0.01")


def test_usd_equivalent_of_zero_rate_is_zero():
    assert to_usd_equivalent(50000, 0) == Decimal("0.00")
    assert to_usd_equivalent(50000, "garbage") == Decimal("0.00")


@pytest.mark.parametrize(
    "value,mode,expected",
    [
        ("54500", "nearest", Decimal("55000")),
        ("54499", "nearest", Decimal("54000")),
        ("54001", "up", Decimal("55000")),
        ("54999", "down", Decimal("54000")),
        ("54000", "up", Decimal("54000")),
    ],
)
def test_round_sos_step(value, mode, expected):
    assert round_sos_step(value, mode) == expected


def test_round_sos_step_with_custom_and_disabled_step():
    assert round_sos_step("1260", "nearest", Decimal("500")) == Decimal("1500")
    assert round_sos_step("1260.6", "nearest", Decimal("0")) == Decimal("1261")


def test_rounding_direction_is_from_the_shops_side():
    assert rounding_direction(Decimal("54500"), Decimal("55000")) == "GAIN"
    assert rounding_direction(Decimal("54500"), Decimal("54000")) == "LOSS"
    assert rounding_direction(Decimal("54500"), Decimal("55000"), paying_out=True) == "LOSS"
    assert rounding_direction(Decimal("54000"), Decimal("54000")) == "NONE"


def test_formatting():
    assert format_usd("1234.5") == "1,234.50"
    assert format_sos("1234567") == "1,234,567"
