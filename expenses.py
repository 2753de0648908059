# expenses.py
#
# Expense lifecycle (create / edit / soft delete / restore) and group setting edits.
#
# Notes:
# - Input checks happen here, before the store is called
# - Each store call is a single atomic write; activity is logged afterwards (best effort)
# - Repayment rows belong to settlements and are not editable here
# - Expenses with settled splits cannot be edited: replacing their splits would
#   detach them from the settlement and break undo

import logging
from datetime import date
from typing import Dict, Optional

import activity_log
from activity_log import (
    ActivityEvent,
    ExpenseCreated,
    ExpenseDeleted,
    ExpenseRestored,
    ExpenseUpdated,
    GroupUpdated,
    diff_expense,
    diff_fields,
)
from currency import CURRENCY_CHOICES, norm_ccy
from errors import LedgerNotFoundError, LedgerValidationError
from models import Expense
from splits import validate_splits

logger = logging.getLogger("ledger.expenses")


def _check_fields(description: str, amount: float, currency: str, splits: Dict[str, float]) -> None:
    if not description:
        raise LedgerValidationError("Title is empty")
    if amount is None or float(amount) <= 0:
        raise LedgerValidationError("Invalid amount")
    if currency not in CURRENCY_CHOICES:
        raise LedgerValidationError(f"Invalid currency: {currency} (allowed: {', '.join(CURRENCY_CHOICES)})")
    validate_splits(amount, splits)


def _require_expense(store, expense_id: str) -> Expense:
    ex = store.get_expense(expense_id)
    if ex is None:
        raise LedgerNotFoundError("Expense not found")
    if ex.is_repayment:
        raise LedgerValidationError("Repayments are managed by settlements")
    return ex


def add_expense(
    store,
    group_id: str,
    actor_id: Optional[str],
    payer_id: str,
    amount: float,
    currency: str,
    description: str,
    splits: Dict[str, float],
    expense_date: Optional[date] = None,
) -> Expense:
    description = (description or "").strip()
    currency_u = norm_ccy(currency)
    splits = {str(k): float(v) for k, v in (splits or {}).items()}
    _check_fields(description, amount, currency_u, splits)

    ex = store.create_expense(
        group_id=group_id,
        payer_id=str(payer_id),
        amount=float(amount),
        currency=currency_u,
        description=description,
        splits=splits,
        created_by=actor_id,
        expense_date=expense_date or date.today(),
    )
    activity_log.record(
        store,
        ActivityEvent(group_id, actor_id, ExpenseCreated(description, float(amount), currency_u), entity_id=ex.id),
    )
    return ex


def update_expense(
    store,
    expense_id: str,
    actor_id: Optional[str],
    payer_id: str,
    amount: float,
    currency: str,
    description: str,
    splits: Dict[str, float],
    expense_date: Optional[date] = None,
) -> Expense:
    """Replace the expense fields and all of its splits."""
    description = (description or "").strip()
    currency_u = norm_ccy(currency)
    splits = {str(k): float(v) for k, v in (splits or {}).items()}
    _check_fields(description, amount, currency_u, splits)

    old = _require_expense(store, expense_id)
    if old.is_deleted:
        raise LedgerNotFoundError("Expense not found")
    if any(sp.is_settled for sp in old.splits):
        raise LedgerValidationError("Expense has settled splits. Undo the settlement first")

    ex = store.update_expense(
        expense_id=expense_id,
        payer_id=str(payer_id),
        amount=float(amount),
        currency=currency_u,
        description=description,
        splits=splits,
        expense_date=expense_date or old.expense_date,
    )
    changes = diff_expense(old, str(payer_id), float(amount), currency_u, description)
    activity_log.record(
        store,
        ActivityEvent(old.group_id, actor_id, ExpenseUpdated(changes), entity_id=expense_id),
    )
    return ex


def delete_expense(store, expense_id: str, actor_id: Optional[str]) -> Expense:
    """Soft delete: the row is kept and can be restored."""
    _require_expense(store, expense_id)
    ex = store.soft_delete_expense(expense_id)
    activity_log.record(
        store,
        ActivityEvent(ex.group_id, actor_id, ExpenseDeleted(ex.description, ex.amount, ex.currency), entity_id=ex.id),
    )
    return ex


def restore_expense(store, expense_id: str, actor_id: Optional[str]) -> Expense:
    _require_expense(store, expense_id)
    ex = store.restore_expense(expense_id)
    activity_log.record(
        store,
        ActivityEvent(ex.group_id, actor_id, ExpenseRestored(ex.description, ex.amount, ex.currency), entity_id=ex.id),
    )
    return ex


def update_group_settings(store, group_id: str, actor_id: Optional[str], name: str, base_currency: str) -> Dict:
    name = (name or "").strip()
    base_u = norm_ccy(base_currency)
    if not name:
        raise LedgerValidationError("Group name is empty")
    if base_u not in CURRENCY_CHOICES:
        raise LedgerValidationError(f"Invalid currency: {base_u}")

    old = store.get_group(group_id)
    new = store.update_group(group_id, name=name, base_currency=base_u)

    changes = diff_fields(old, {"name": name, "base_currency": base_u})
    if changes:
        activity_log.record(store, ActivityEvent(group_id, actor_id, GroupUpdated(changes), entity_id=group_id))
    return new
