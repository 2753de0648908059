# currency.py
#
# Currency conversion through a pivot currency.
#
# Notes:
# - The rate table is keyed "USD{CCY}" and holds how many CCY one USD buys
# - It is refreshed outside this module (at most once a day) and treated as read only
# - Missing or broken rates fall back to 1 so balances can always be shown

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("ledger.currency")

PIVOT_CURRENCY = "USD"

# Currency choices (manual)
CURRENCY_CHOICES = ["TWD", "USD", "JPY", "EUR", "KRW", "CNY", "GBP", "AUD", "HKD", "SGD", "THB", "VND"]
NO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND"}

CURRENCY_SYMBOLS = {
    "TWD": "NT$",
    "USD": "$",
    "JPY": "¥",
    "EUR": "€",
    "KRW": "₩",
    "CNY": "¥",
    "GBP": "£",
    "AUD": "A$",
    "HKD": "HK$",
    "SGD": "S$",
    "THB": "฿",
    "VND": "₫",
}

RateTable = Dict[str, Dict[str, Any]]


def norm_ccy(x: Optional[str]) -> str:
    return str(x or "").strip().upper()


def currency_symbol(code: str) -> str:
    # Falls back to the code itself
    c = norm_ccy(code)
    return CURRENCY_SYMBOLS.get(c, c)


def rate_key(currency: str) -> str:
    return f"{PIVOT_CURRENCY}{norm_ccy(currency)}"


# ------------------------
# Rate table
# ------------------------
def normalize_rate_table(raw: Optional[Dict[str, Any]]) -> RateTable:
    """
    Accepts the provider shape {"USDJPY": {"Exrate": 150.1, "UTC": "..."}}
    or the stored shape {"USDJPY": {"rate": 150.1, "as_of": "..."}}.
    Entries without a usable positive rate are dropped.
    """
    out: RateTable = {}
    for key, entry in (raw or {}).items():
        if not isinstance(entry, dict):
            continue
        rate = entry.get("rate", entry.get("Exrate"))
        try:
            rate_f = float(rate)
        except (TypeError, ValueError):
            continue
        if rate_f <= 0:
            continue
        out[str(key).strip().upper()] = {
            "rate": rate_f,
            "as_of": entry.get("as_of", entry.get("asOf", entry.get("UTC"))),
        }
    return out


def _pivot_rate(rates: Optional[RateTable], currency: str) -> Optional[float]:
    # USD -> currency, or None when missing/unusable
    if not rates:
        return None
    entry = rates.get(rate_key(currency))
    if not isinstance(entry, dict):
        return None
    try:
        v = float(entry.get("rate", entry.get("Exrate")))
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None


# ------------------------
# Conversion
# ------------------------
def get_exchange_rate(from_ccy: str, to_ccy: str, rates: Optional[RateTable] = None) -> float:
    """
    Rate from `from_ccy` to `to_ccy`.

    JPY -> TWD goes through the pivot:
      1 JPY = 1 / rate(USDJPY) USD = rate(USDTWD) / rate(USDJPY) TWD
    """
    src = norm_ccy(from_ccy)
    dst = norm_ccy(to_ccy)
    if src == dst:
        return 1.0

    to_rate = _pivot_rate(rates, dst)
    from_rate = _pivot_rate(rates, src)

    if src == PIVOT_CURRENCY:
        return to_rate if to_rate is not None else 1.0

    if dst == PIVOT_CURRENCY:
        return 1.0 / from_rate if from_rate is not None else 1.0

    if from_rate is not None and to_rate is not None:
        return to_rate / from_rate

    logger.debug("No rate for %s -> %s, using 1", src, dst)
    return 1.0


def convert_amount(amount: float, from_ccy: str, to_ccy: str, rates: Optional[RateTable] = None) -> float:
    return float(amount) * get_exchange_rate(from_ccy, to_ccy, rates)


# ------------------------
# Display helpers
# ------------------------
def round_by_ccy(x: float, ccy: str) -> float:
    # Round by currency: integer for no-decimal currencies, else 2 decimals
    return float(round(float(x or 0.0), 0) if norm_ccy(ccy) in NO_DECIMAL_CURRENCIES else round(float(x or 0.0), 2))


def fmt_money(x: float, ccy: str) -> str:
    # - No-decimal currencies -> integer with commas
    # - Others -> 2 decimals with commas
    if norm_ccy(ccy) in NO_DECIMAL_CURRENCIES:
        return f"{currency_symbol(ccy)}{int(round(float(x or 0.0), 0)):,}"
    return f"{currency_symbol(ccy)}{float(x or 0.0):,.2f}"
