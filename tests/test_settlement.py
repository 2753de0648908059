from datetime import date

import pytest

import activity_log
import settlement
from balances import compute_balances
from errors import LedgerConflictError, LedgerNotFoundError, LedgerValidationError
from models import Debt


def _balances(store, group_id):
    return compute_balances(
        store.fetch_expenses(group_id),
        store.get_members(group_id),
        store.get_group(group_id)["base_currency"],
        store.fetch_exchange_rates(),
    )


def _snapshot_rows(store, group_id):
    return [e.to_row() for e in store.fetch_expenses(group_id, include_deleted=True)]


def test_settle_all_then_undo_round_trip(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    before = _balances(store, group_id)
    assert before == {"A": 20.0, "B": -10.0, "C": -10.0}

    outcome = settlement.settle_all(store, group_id, "A")
    assert {(d.from_id, d.to_id, d.amount) for d in outcome.plan.repayments} == {("B", "A", 10.0), ("C", "A", 10.0)}
    assert _balances(store, group_id) == {"A": 0.0, "B": 0.0, "C": 0.0}

    sid = outcome.settlement.id
    repayments = settlement.settlement_repayments(store.fetch_expenses(group_id), sid)
    assert sorted(repayments, key=lambda d: d.from_id) == [Debt("B", "A", 10.0), Debt("C", "A", 10.0)]

    settlement.undo_settlement(store, sid, "A")
    assert _balances(store, group_id) == pytest.approx(before)
    assert [e for e in store.fetch_expenses(group_id) if e.is_repayment] == []
    assert store.fetch_settlements(group_id) == []


def test_settle_all_multi_currency(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    add("B", 4500, {"A": 1500, "B": 1500, "C": 1500}, currency="JPY")
    before = _balances(store, group_id)
    assert sum(before.values()) == pytest.approx(0.0, abs=1e-6)

    outcome = settlement.settle_all(store, group_id, "A")
    assert outcome.plan.currency == "USD"
    assert all(abs(v) < 1e-9 for v in _balances(store, group_id).values())

    settlement.undo_settlement(store, outcome.settlement.id, "A")
    after = _balances(store, group_id)
    for mid, v in before.items():
        assert after[mid] == pytest.approx(v, abs=1e-6)


def test_undo_twice_raises_not_found(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    outcome = settlement.settle_all(store, group_id, "A")
    settlement.undo_settlement(store, outcome.settlement.id, "A")

    snapshot = _snapshot_rows(store, group_id)
    with pytest.raises(LedgerNotFoundError):
        settlement.undo_settlement(store, outcome.settlement.id, "A")
    assert _snapshot_rows(store, group_id) == snapshot


def test_settle_all_nothing_to_settle(store, group_id):
    with pytest.raises(LedgerValidationError):
        settlement.settle_all(store, group_id, "A")
    assert store.fetch_settlements(group_id) == []


def test_settle_all_with_confirmed_debts(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    confirmed = [{"from": "C", "to": "A", "amount": 10.0}, {"from": "B", "to": "A", "amount": 10.004}]

    outcome = settlement.settle_all(store, group_id, "A", debts=confirmed)
    assert len(outcome.plan.repayments) == 2


def test_settle_all_with_stale_debts_conflicts(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    stale = [Debt("B", "A", 10.0), Debt("C", "A", 10.0)]
    add("B", 20, {"A": 10, "B": 10})

    snapshot = _snapshot_rows(store, group_id)
    with pytest.raises(LedgerConflictError):
        settlement.settle_all(store, group_id, "A", debts=stale)
    assert _snapshot_rows(store, group_id) == snapshot
    assert store.fetch_settlements(group_id) == []


def test_settle_all_leaves_later_expenses_outstanding(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    settlement.settle_all(store, group_id, "A")
    add("C", 20, {"B": 20})
    assert _balances(store, group_id) == {"A": 0.0, "B": -20.0, "C": 20.0}


def test_conflicting_settlement_leaves_store_unchanged(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    members = store.get_members(group_id)

    # two plans from the same snapshot; the second one must lose
    expenses = store.fetch_expenses(group_id)
    first = settlement.plan_settle_all(group_id, "A", expenses, members, "USD")
    second = settlement.plan_settle_all(group_id, "B", expenses, members, "USD")

    store.settle_all(first)
    snapshot = _snapshot_rows(store, group_id)

    with pytest.raises(LedgerConflictError):
        store.settle_all(second)
    assert _snapshot_rows(store, group_id) == snapshot
    assert len(store.fetch_settlements(group_id)) == 1


def test_settle_one_takes_oldest_splits_first(store, group_id, add):
    e1 = add("A", 20, {"A": 10, "B": 10}, day=date(2024, 1, 1))
    e2 = add("A", 30, {"A": 15, "B": 15}, day=date(2024, 1, 2))
    e3 = add("A", 8, {"B": 8}, day=date(2024, 1, 3))

    outcome = settlement.settle_one(store, group_id, "B", "B", "A", 18, "USD")
    assert outcome.plan.kind == settlement.KIND_GRANULAR
    assert outcome.plan.split_keys == [(e1.id, "B"), (e3.id, "B")]

    settled = {e.id: e for e in store.fetch_expenses(group_id)}
    assert settled[e1.id].splits[1].is_settled
    assert len(settled[e2.id].unsettled_splits()) == 2
    assert _balances(store, group_id) == {"A": 15.0, "B": -15.0, "C": 0.0}

    repayments = settlement.settlement_repayments(store.fetch_expenses(group_id), outcome.settlement.id)
    assert repayments == [Debt("B", "A", 18.0)]


def test_settle_one_rejects_amount_without_matching_splits(store, group_id, add):
    add("A", 20, {"A": 10, "B": 10})
    add("A", 30, {"A": 15, "B": 15})

    snapshot = _snapshot_rows(store, group_id)
    with pytest.raises(LedgerValidationError):
        settlement.settle_one(store, group_id, "B", "B", "A", 12, "USD")
    assert _snapshot_rows(store, group_id) == snapshot
    assert store.fetch_settlements(group_id) == []


def test_settle_one_finds_exact_subset_past_a_greedy_miss(store, group_id, add):
    e1 = add("A", 12, {"A": 6, "B": 6}, day=date(2024, 1, 1))
    e2 = add("A", 10, {"A": 5, "B": 5}, day=date(2024, 1, 2))
    e3 = add("A", 10, {"A": 5, "B": 5}, day=date(2024, 1, 3))

    # taking the oldest 6 first would leave 4, which no remaining split matches
    outcome = settlement.settle_one(store, group_id, "B", "B", "A", 10, "USD")
    assert outcome.plan.split_keys == [(e2.id, "B"), (e3.id, "B")]
    assert not store.get_expense(e1.id).splits[1].is_settled
    assert _balances(store, group_id) == {"A": 6.0, "B": -6.0, "C": 0.0}


def test_pick_subset_prefers_oldest():
    assert settlement.pick_subset([500, 500, 500], 1000) == [0, 1]
    assert settlement.pick_subset([600, 500, 500], 1000) == [1, 2]
    assert settlement.pick_subset([600, 500], 1000) is None
    assert settlement.to_cents(10.005) == 1001


def test_settle_one_refuses_split_edited_after_planning(store, group_id, add):
    ex = add("A", 10, {"A": 5, "B": 5})
    plan = settlement.plan_settle_one(group_id, "B", store.fetch_expenses(group_id), "B", "A", 5, "USD")

    store.update_expense(ex.id, "A", 100, "USD", "Dinner", {"A": 5, "B": 95})

    with pytest.raises(LedgerConflictError):
        store.settle_one(plan)
    assert _balances(store, group_id)["B"] == -95.0
    assert not store.get_expense(ex.id).splits[1].is_settled
    assert store.fetch_settlements(group_id) == []


def test_settle_all_refuses_split_edited_after_planning(store, group_id, add):
    ex = add("A", 30, {"A": 10, "B": 10, "C": 10})
    expenses = store.fetch_expenses(group_id)
    plan = settlement.plan_settle_all(group_id, "A", expenses, store.get_members(group_id), "USD")

    store.update_expense(ex.id, "C", 30, "USD", "Dinner", {"A": 10, "B": 10, "C": 10})
    snapshot = _snapshot_rows(store, group_id)

    with pytest.raises(LedgerConflictError):
        store.settle_all(plan)
    assert _snapshot_rows(store, group_id) == snapshot
    assert store.fetch_settlements(group_id) == []


def test_settle_one_input_checks(store, group_id, add):
    add("A", 20, {"A": 10, "B": 10})
    with pytest.raises(LedgerValidationError):
        settlement.settle_one(store, group_id, "A", "A", "A", 10, "USD")
    with pytest.raises(LedgerValidationError):
        settlement.settle_one(store, group_id, "B", "B", "A", 0, "USD")
    with pytest.raises(LedgerValidationError):
        settlement.settle_one(store, group_id, "C", "C", "A", 10, "USD")


def test_settle_one_converts_into_payment_currency(store, group_id, add):
    add("A", 3000, {"A": 1500, "B": 1500}, currency="JPY")

    outcome = settlement.settle_one(store, group_id, "B", "B", "A", 10, "USD")
    assert outcome.plan.currency == "USD"
    assert _balances(store, group_id) == {"A": 0.0, "B": 0.0, "C": 0.0}


def test_settled_split_cannot_be_settled_again(store, group_id, add):
    add("A", 20, {"A": 10, "B": 10})
    settlement.settle_one(store, group_id, "B", "B", "A", 10, "USD")

    with pytest.raises(LedgerValidationError):
        settlement.settle_one(store, group_id, "B", "B", "A", 10, "USD")


def test_undo_granular_settlement(store, group_id, add):
    add("A", 20, {"A": 10, "B": 10})
    before = _balances(store, group_id)
    outcome = settlement.settle_one(store, group_id, "B", "B", "A", 10, "USD")

    settlement.undo_settlement(store, outcome.settlement.id, "B")
    assert _balances(store, group_id) == before


def test_events_and_activity(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})
    events = []

    outcome = settlement.settle_all(
        store, group_id, "A", names={"A": "Alice", "B": "Bob"}, on_event=events.append
    )
    assert outcome.event.type == settlement.SETTLEMENT_CREATE
    assert outcome.event.payload["type"] == "all"
    first = outcome.event.payload["repayments"][0]
    assert first == {"from": "B", "to": "A", "amount": 10.0, "currency": "USD", "from_name": "Bob", "to_name": "Alice"}

    settlement.undo_settlement(store, outcome.settlement.id, "A", on_event=events.append)
    assert [e.type for e in events] == [settlement.SETTLEMENT_CREATE, settlement.SETTLEMENT_UNDO]

    activity_log.drain(timeout=5)
    actions = [r["action"] for r in store.fetch_activity(group_id)]
    assert actions == ["settlement.undo", "settlement.create"]


def test_listener_failure_does_not_fail_settlement(store, group_id, add):
    add("A", 30, {"A": 10, "B": 10, "C": 10})

    def boom(event):
        raise RuntimeError("push down")

    outcome = settlement.settle_all(store, group_id, "A", on_event=boom)
    assert len(store.fetch_settlements(group_id)) == 1
    assert outcome.settlement.id
