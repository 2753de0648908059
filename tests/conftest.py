from datetime import date

import pytest

from local_db import LocalLedger

RATES = {
    "USDJPY": {"Exrate": 150.0, "UTC": "2024-01-01 00:00:00"},
    "USDTWD": {"Exrate": 30.0, "UTC": "2024-01-01 00:00:00"},
    "USDEUR": {"Exrate": 0.5, "UTC": "2024-01-01 00:00:00"},
}


@pytest.fixture
def store():
    s = LocalLedger()
    s.set_exchange_rates(RATES)
    return s


@pytest.fixture
def group_id(store):
    return store.add_group("Trip", base_currency="USD", members=["A", "B", "C"], group_id="g1")


@pytest.fixture
def add(store, group_id):
    """Write one normal expense straight to the store."""

    def _add(payer, amount, splits, currency="USD", description="Dinner", day=None):
        return store.create_expense(
            group_id=group_id,
            payer_id=payer,
            amount=amount,
            currency=currency,
            description=description,
            splits=splits,
            created_by=payer,
            expense_date=day or date(2024, 1, 1),
        )

    return _add
