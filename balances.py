# balances.py
#
# Balance aggregation and debt simplification.
#
# Notes:
# - Pure functions over a fetched snapshot; nothing here touches storage
# - Balance sign: positive = member is owed, negative = member owes
# - Everything is expressed in the group's base currency

import math
from typing import Dict, Iterable, List, Optional

import pandas as pd

from currency import RateTable, convert_amount, norm_ccy
from models import Debt, Expense

# Sub-cent residue below this is treated as settled
DUST = 0.01


def round_cents(x: float) -> float:
    # half-up toward +inf, so -0.375 -> -0.37 and 0.375 -> 0.38
    return math.floor(float(x) * 100 + 0.5) / 100


# ------------------------
# Aggregation
# ------------------------
def compute_balances(
    expenses: Iterable[Expense],
    members: Iterable[str],
    base_currency: str,
    rates: Optional[RateTable] = None,
) -> Dict[str, float]:
    """
    Fold expenses into one net balance per member.

    - repayment rows and soft-deleted expenses are skipped
    - settled splits are skipped
    - each unsettled split debits its member and credits the payer
    Members without activity stay at 0. Unknown ids in splits get a key on demand.
    """
    balances: Dict[str, float] = {str(m): 0.0 for m in members}
    base = norm_ccy(base_currency)

    for ex in expenses:
        if not ex.counts_toward_balance:
            continue

        payer_credit = 0.0
        for sp in ex.splits:
            if sp.is_settled:
                continue
            v = convert_amount(sp.owed_amount, ex.currency, base, rates)
            balances[sp.user_id] = balances.get(sp.user_id, 0.0) - v
            payer_credit += v

        balances[ex.payer_id] = balances.get(ex.payer_id, 0.0) + payer_credit

    return balances


# ------------------------
# Simplification
# ------------------------
def simplify_debts(balances: Dict[str, float]) -> List[Debt]:
    """
    Greedy matching: most negative debtor pays largest creditor until one side is covered.

    Emits at most (#debtors + #creditors - 1) transfers. It is a heuristic, not
    guaranteed minimal for every topology. Sorts are stable, so members with equal
    balances keep their insertion order and output is deterministic.
    """
    debtors: List[List] = []
    creditors: List[List] = []

    for mid, amount in balances.items():
        # Round to 2 decimals to avoid floating point dust
        rounded = round_cents(amount)
        if rounded < -DUST:
            debtors.append([mid, rounded])
        elif rounded > DUST:
            creditors.append([mid, rounded])

    debtors.sort(key=lambda x: x[1])  # most negative first
    creditors.sort(key=lambda x: x[1], reverse=True)  # largest first

    debts: List[Debt] = []
    i = 0
    j = 0
    while i < len(debtors) and j < len(creditors):
        debtor = debtors[i]
        creditor = creditors[j]

        amount = min(abs(debtor[1]), creditor[1])
        debts.append(Debt(from_id=debtor[0], to_id=creditor[0], amount=round_cents(amount)))

        debtor[1] += amount
        creditor[1] -= amount

        if abs(debtor[1]) < DUST:
            i += 1
        if creditor[1] < DUST:
            j += 1

    return debts


# ------------------------
# Net matrix (per expense detail)
# ------------------------
def build_net_matrix(
    expenses: Iterable[Expense],
    members: Iterable[str],
    base_currency: str,
    rates: Optional[RateTable] = None,
    names: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    One row per counted expense, one column per member, amounts in base currency:
    - split members get -share (unsettled splits only)
    - payer additionally gets +sum of those shares
    Each row sums to 0 and each member column sums to compute_balances().
    Columns are labelled with names[member_id] when given, else the id.
    """
    base = norm_ccy(base_currency)
    names = names or {}

    member_ids = [str(m) for m in members]
    counted = sorted((e for e in expenses if e.counts_toward_balance), key=lambda e: e.sort_key())

    # ids only seen in splits/payers still get a column
    for ex in counted:
        for mid in [ex.payer_id] + [s.user_id for s in ex.splits]:
            if mid not in member_ids:
                member_ids.append(mid)

    labels = [names.get(mid, mid) for mid in member_ids]
    cols = ["Expense ID", "Date", "Title", "Currency"] + labels
    if not counted:
        return pd.DataFrame(columns=cols)

    rows = []
    for ex in counted:
        row = {
            "Expense ID": ex.id,
            "Date": ex.expense_date.isoformat() if ex.expense_date else "",
            "Title": ex.description,
            "Currency": ex.currency,
        }
        # start all members at 0
        for label in labels:
            row[label] = 0.0

        credit = 0.0
        for sp in ex.unsettled_splits():
            v = convert_amount(sp.owed_amount, ex.currency, base, rates)
            row[names.get(sp.user_id, sp.user_id)] -= v
            credit += v
        row[names.get(ex.payer_id, ex.payer_id)] += credit

        rows.append(row)

    df = pd.DataFrame(rows).reindex(columns=cols)

    # ensure numeric
    for label in labels:
        df[label] = pd.to_numeric(df[label], errors="coerce").fillna(0.0)

    return df


def balances_from_matrix(df: pd.DataFrame) -> Dict[str, float]:
    # Column totals of build_net_matrix (member columns only)
    meta_cols = {"Expense ID", "Date", "Title", "Currency"}
    member_cols = [c for c in df.columns if c not in meta_cols]
    return {str(c): float(pd.to_numeric(df[c], errors="coerce").fillna(0).sum()) for c in member_cols}
