import pytest

from currency import (
    convert_amount,
    currency_symbol,
    fmt_money,
    get_exchange_rate,
    normalize_rate_table,
    round_by_ccy,
)

RATES = normalize_rate_table(
    {
        "USDJPY": {"Exrate": 150.0, "UTC": "2024-01-01"},
        "USDTWD": {"Exrate": 30.0, "UTC": "2024-01-01"},
    }
)


def test_same_currency_is_identity():
    assert get_exchange_rate("JPY", "JPY", RATES) == 1.0
    assert get_exchange_rate("xyz", "XYZ", {}) == 1.0
    assert convert_amount(42.5, "TWD", "twd", RATES) == 42.5


def test_from_pivot():
    assert get_exchange_rate("USD", "JPY", RATES) == 150.0
    assert convert_amount(2, "usd", "twd", RATES) == 60.0


def test_to_pivot():
    assert get_exchange_rate("JPY", "USD", RATES) == pytest.approx(1 / 150.0)
    assert convert_amount(300, "JPY", "USD", RATES) == pytest.approx(2.0)


def test_cross_rate_goes_through_pivot():
    # 1 JPY = 30 / 150 TWD
    assert get_exchange_rate("JPY", "TWD", RATES) == pytest.approx(0.2)
    assert convert_amount(1500, "JPY", "TWD", RATES) == pytest.approx(300.0)


def test_missing_rates_fall_back_to_one():
    assert get_exchange_rate("USD", "EUR", RATES) == 1.0
    assert get_exchange_rate("EUR", "USD", RATES) == 1.0
    assert get_exchange_rate("EUR", "JPY", RATES) == 1.0
    assert get_exchange_rate("JPY", "TWD", None) == 1.0


def test_normalize_rate_table_drops_broken_entries():
    table = normalize_rate_table(
        {
            "usdjpy": {"Exrate": "150.5", "UTC": "2024-01-01"},
            "USDEUR": {"rate": 0.9, "as_of": "2024-01-02"},
            "USDKRW": {"Exrate": 0},
            "USDTHB": {"Exrate": "n/a"},
            "USDVND": "oops",
        }
    )
    assert table == {
        "USDJPY": {"rate": 150.5, "as_of": "2024-01-01"},
        "USDEUR": {"rate": 0.9, "as_of": "2024-01-02"},
    }


def test_zero_rate_in_raw_table_falls_back_to_one():
    assert get_exchange_rate("JPY", "USD", {"USDJPY": {"rate": 0}}) == 1.0


def test_money_formatting():
    assert currency_symbol("twd") == "NT$"
    assert currency_symbol("CHF") == "CHF"
    assert fmt_money(1234.5, "USD") == "$1,234.50"
    assert fmt_money(1234.5, "JPY") == "¥1,234"
    assert round_by_ccy(10.456, "USD") == 10.46
    assert round_by_ccy(10.6, "KRW") == 11.0
