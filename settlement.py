# settlement.py
#
# Settle up and undo.
#
# Every mutation here follows the same shape:
#   1. read a snapshot from the store
#   2. plan (pure, validates; raises before anything is written)
#   3. hand the plan to ONE atomic store call (settle_all / settle_one / undo_settlement)
#   4. log activity (background, best effort) and emit a settlement event
#
# Notes:
# - No retries happen here. Any LedgerError means nothing changed
# - A plan pins the version of every split it marks (amount, expense currency, payer);
#   the store refuses the whole call if any of them changed after the snapshot
# - Granular settlement consumes whole splits only: the amount must equal the sum of
#   some subset of the debtor's outstanding splits towards the creditor. The subset
#   that keeps the oldest splits is chosen. Splitting one split is not supported

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

import activity_log
from activity_log import (
    ActivityEvent,
    RepaymentNote,
    SettlementCreated,
    SettlementUndone,
    changes_payload,
)
from balances import DUST, compute_balances, simplify_debts
from currency import RateTable, convert_amount, norm_ccy
from errors import LedgerConflictError, LedgerValidationError
from models import Debt, Expense, Settlement, Split, SplitKey

logger = logging.getLogger("ledger.settlement")

SETTLEMENT_CREATE = "settlement.create"
SETTLEMENT_UNDO = "settlement.undo"

KIND_ALL = "all"
KIND_GRANULAR = "granular"


@dataclass(frozen=True)
class PlannedSplit:
    """A split as the plan saw it. The store only marks it if it still looks like this."""

    expense_id: str
    user_id: str
    owed_amount: float
    currency: str
    payer_id: str

    @property
    def key(self) -> SplitKey:
        return (self.expense_id, self.user_id)

    @staticmethod
    def of(ex: Expense, sp: Split) -> "PlannedSplit":
        return PlannedSplit(ex.id, sp.user_id, float(sp.owed_amount), ex.currency, ex.payer_id)

    def to_param(self) -> Dict[str, Any]:
        return {
            "expense_id": self.expense_id,
            "user_id": self.user_id,
            "owed_amount": self.owed_amount,
            "currency": self.currency,
            "payer_id": self.payer_id,
        }


@dataclass
class SettlementPlan:
    """
    Everything the store needs to apply a settlement in one step.

    - repayments: transfers recorded as repayment expenses (payer = from, one split for `to`)
    - splits: outstanding splits to mark with the new settlement id; the store
      must fail the whole call if any of them is already settled or was edited
    """

    group_id: str
    created_by: Optional[str]
    kind: str
    currency: str
    repayments: List[Debt] = field(default_factory=list)
    splits: List[PlannedSplit] = field(default_factory=list)

    @property
    def split_keys(self) -> List[SplitKey]:
        return [p.key for p in self.splits]


@dataclass
class SettlementEvent:
    type: str
    group_id: str
    settlement_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SettlementOutcome:
    settlement: Settlement
    event: SettlementEvent
    plan: Optional[SettlementPlan] = None


EventListener = Callable[[SettlementEvent], None]


# ------------------------
# Planning (pure)
# ------------------------
def _as_debts(debts: Sequence[Union[Debt, Dict[str, Any]]]) -> List[Debt]:
    return [d if isinstance(d, Debt) else Debt.from_dict(d) for d in debts]


def _check_debts_current(given: List[Debt], expected: List[Debt]) -> None:
    # Same transfers (pairs and amounts) as a fresh simplification of the snapshot
    def _k(d: Debt) -> Tuple[str, str]:
        return (d.from_id, d.to_id)

    a = sorted(given, key=_k)
    b = sorted(expected, key=_k)
    same = len(a) == len(b) and all(
        _k(x) == _k(y) and abs(x.amount - y.amount) < DUST for x, y in zip(a, b)
    )
    if not same:
        raise LedgerConflictError("Balances changed since the debts were computed. Reload and try again")


def plan_settle_all(
    group_id: str,
    created_by: Optional[str],
    expenses: Sequence[Expense],
    members: Sequence[str],
    base_currency: str,
    rates: Optional[RateTable] = None,
    debts: Optional[Sequence[Union[Debt, Dict[str, Any]]]] = None,
) -> SettlementPlan:
    base = norm_ccy(base_currency)
    expected = simplify_debts(compute_balances(expenses, members, base, rates))

    if debts is None:
        chosen = expected
    else:
        chosen = _as_debts(debts)
        _check_debts_current(chosen, expected)

    if not chosen:
        raise LedgerValidationError("Nothing to settle")

    planned = [PlannedSplit.of(ex, sp) for ex in expenses if ex.counts_toward_balance for sp in ex.unsettled_splits()]

    return SettlementPlan(
        group_id=group_id,
        created_by=created_by,
        kind=KIND_ALL,
        currency=base,
        repayments=list(chosen),
        splits=planned,
    )


def outstanding_splits(
    expenses: Sequence[Expense],
    debtor_id: str,
    creditor_id: str,
) -> List[Tuple[Expense, Split]]:
    """Debtor's unsettled splits on counted expenses paid by the creditor, oldest first."""
    out: List[Tuple[Expense, Split]] = []
    for ex in sorted(expenses, key=lambda e: e.sort_key()):
        if not ex.counts_toward_balance or ex.payer_id != creditor_id:
            continue
        for sp in ex.unsettled_splits():
            if sp.user_id == debtor_id:
                out.append((ex, sp))
    return out


def to_cents(v: float) -> int:
    return int(Decimal(str(float(v))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) * 100)


def pick_subset(values: Sequence[int], target: int) -> Optional[List[int]]:
    """
    Indexes of a subset of `values` summing exactly to `target`, or None.

    Depth first, taking an item before skipping it, so among all exact subsets the
    one that keeps the earliest items is returned. Dead (index, remaining) pairs
    are remembered, which bounds the work by len(values) * target.
    """
    dead: Set[Tuple[int, int]] = set()
    n = len(values)

    def walk(i: int, remaining: int) -> Optional[List[int]]:
        if remaining == 0:
            return []
        if i == n or remaining < 0 or (i, remaining) in dead:
            return None
        if values[i] <= remaining:
            rest = walk(i + 1, remaining - values[i])
            if rest is not None:
                return [i] + rest
        rest = walk(i + 1, remaining)
        if rest is None:
            dead.add((i, remaining))
        return rest

    return walk(0, target)


def plan_settle_one(
    group_id: str,
    created_by: Optional[str],
    expenses: Sequence[Expense],
    debtor_id: str,
    creditor_id: str,
    amount: float,
    currency: str,
    rates: Optional[RateTable] = None,
) -> SettlementPlan:
    """
    Pick the debtor's outstanding splits whose values (in the payment currency,
    to the cent) add up exactly to the amount, keeping the oldest splits where
    several subsets match. No matching subset -> rejected before any write.
    """
    ccy = norm_ccy(currency)
    if debtor_id == creditor_id:
        raise LedgerValidationError("Debtor and creditor must be different members")
    if amount is None or float(amount) <= 0 or to_cents(amount) <= 0:
        raise LedgerValidationError("Invalid amount")
    if not ccy:
        raise LedgerValidationError("Currency is empty")

    candidates = outstanding_splits(expenses, debtor_id, creditor_id)
    if not candidates:
        raise LedgerValidationError("No outstanding splits between these members")

    values = [to_cents(convert_amount(sp.owed_amount, ex.currency, ccy, rates)) for ex, sp in candidates]
    picked = pick_subset(values, to_cents(amount))

    if picked is None:
        raise LedgerValidationError(
            f"Amount {float(amount):.2f} {ccy} does not match any set of outstanding splits "
            f"(outstanding {sum(values) / 100:.2f} {ccy})"
        )

    return SettlementPlan(
        group_id=group_id,
        created_by=created_by,
        kind=KIND_GRANULAR,
        currency=ccy,
        repayments=[Debt(from_id=debtor_id, to_id=creditor_id, amount=to_cents(amount) / 100)],
        splits=[PlannedSplit.of(*candidates[i]) for i in picked],
    )


def settlement_repayments(expenses: Sequence[Expense], settlement_id: str) -> List[Debt]:
    """Rebuild the transfers of a settlement from the repayment rows it created."""
    out: List[Debt] = []
    for ex in expenses:
        if not ex.is_repayment or ex.settlement_id != settlement_id:
            continue
        for sp in ex.splits:
            out.append(Debt(from_id=ex.payer_id, to_id=sp.user_id, amount=float(sp.owed_amount)))
    return out


# ------------------------
# Helpers
# ------------------------
def _notes(plan: SettlementPlan, names: Optional[Dict[str, str]]) -> List[RepaymentNote]:
    names = names or {}
    return [
        RepaymentNote(
            from_id=d.from_id,
            to_id=d.to_id,
            amount=d.amount,
            currency=plan.currency,
            from_name=names.get(d.from_id),
            to_name=names.get(d.to_id),
        )
        for d in plan.repayments
    ]


def _emit(on_event: Optional[EventListener], event: SettlementEvent) -> None:
    # Listeners (push fan-out etc.) must not turn a committed settlement into a failure
    if on_event is None:
        return
    try:
        on_event(event)
    except Exception:
        logger.exception("Settlement listener failed for %s %s", event.type, event.settlement_id)


def _snapshot(store, group_id: str, rates: Optional[RateTable]):
    group = store.get_group(group_id)
    members = store.get_members(group_id)
    expenses = store.fetch_expenses(group_id)
    if rates is None:
        rates = store.fetch_exchange_rates()
    return group, members, expenses, rates


def _commit(store, plan: SettlementPlan, actor_id, names, on_event) -> SettlementOutcome:
    if plan.kind == KIND_ALL:
        settlement = store.settle_all(plan)
    else:
        settlement = store.settle_one(plan)

    logger.info(
        "Settlement %s (%s) in group %s: %d repayment(s), %d split(s) marked",
        settlement.id,
        plan.kind,
        plan.group_id,
        len(plan.repayments),
        len(plan.split_keys),
    )

    change = SettlementCreated(kind=plan.kind, repayments=_notes(plan, names))
    activity_log.record(store, ActivityEvent(plan.group_id, actor_id, change, entity_id=settlement.id))

    event = SettlementEvent(SETTLEMENT_CREATE, plan.group_id, settlement.id, changes_payload(change))
    _emit(on_event, event)
    return SettlementOutcome(settlement=settlement, event=event, plan=plan)


# ------------------------
# Entry points
# ------------------------
def settle_all(
    store,
    group_id: str,
    actor_id: Optional[str],
    debts: Optional[Sequence[Union[Debt, Dict[str, Any]]]] = None,
    rates: Optional[RateTable] = None,
    names: Optional[Dict[str, str]] = None,
    on_event: Optional[EventListener] = None,
) -> SettlementOutcome:
    """
    Settle every simplified debt of the group at once.

    `debts` is the list the user confirmed; when given it must still match the
    current balances. Repayment rows record each transfer and every outstanding
    split of the snapshot is marked settled, so balances read zero afterwards.
    """
    group, members, expenses, rates = _snapshot(store, group_id, rates)
    plan = plan_settle_all(
        group_id,
        actor_id,
        expenses,
        members,
        group.get("base_currency") or "USD",
        rates=rates,
        debts=debts,
    )
    return _commit(store, plan, actor_id, names, on_event)


def settle_one(
    store,
    group_id: str,
    actor_id: Optional[str],
    debtor_id: str,
    creditor_id: str,
    amount: float,
    currency: str,
    rates: Optional[RateTable] = None,
    names: Optional[Dict[str, str]] = None,
    on_event: Optional[EventListener] = None,
) -> SettlementOutcome:
    """Record a payment of `amount` from debtor to creditor, clearing whole splits oldest first."""
    _, _, expenses, rates = _snapshot(store, group_id, rates)
    plan = plan_settle_one(group_id, actor_id, expenses, debtor_id, creditor_id, amount, currency, rates=rates)
    return _commit(store, plan, actor_id, names, on_event)


def undo_settlement(
    store,
    settlement_id: str,
    actor_id: Optional[str],
    on_event: Optional[EventListener] = None,
) -> SettlementOutcome:
    """
    Reverse a settlement: its repayment rows are deleted, the splits it marked become
    outstanding again and the settlement row is removed.
    Undoing twice raises LedgerNotFoundError the second time.
    """
    settlement = store.undo_settlement(settlement_id)
    logger.info("Settlement %s undone in group %s", settlement.id, settlement.group_id)

    activity_log.record(
        store,
        ActivityEvent(settlement.group_id, actor_id, SettlementUndone(), entity_id=settlement.id),
    )

    event = SettlementEvent(SETTLEMENT_UNDO, settlement.group_id, settlement.id, {})
    _emit(on_event, event)
    return SettlementOutcome(settlement=settlement, event=event)
