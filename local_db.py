# local_db.py
#
# In-process ledger store.
#
# Notes:
# - Same method set as db.SupabaseLedger, kept in memory. Used by the tests and for
#   running the engine without a Supabase project
# - Every write runs under one lock against a deep copy of the state; if anything
#   raises, the copy is put back so no partial change is ever visible
# - Reads return copies, so callers work on a snapshot

import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from currency import RateTable, normalize_rate_table
from errors import LedgerConflictError, LedgerNotFoundError
from models import Expense, ExpenseType, Settlement, Split, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class LocalLedger:
    def __init__(self):
        self._lock = threading.RLock()
        self._groups: Dict[str, Dict[str, Any]] = {}
        self._members: Dict[str, List[str]] = {}
        self._expenses: Dict[str, Expense] = {}
        self._settlements: Dict[str, Settlement] = {}
        self._activity: List[Dict[str, Any]] = []
        self._rates: Dict[str, RateTable] = {}
        self._last_ts: Optional[datetime] = None

    # ------------------------
    # Internals
    # ------------------------
    @contextmanager
    def _transaction(self):
        with self._lock:
            saved = copy.deepcopy((self._groups, self._members, self._expenses, self._settlements))
            try:
                yield
            except Exception:
                self._groups, self._members, self._expenses, self._settlements = saved
                raise

    def _now(self) -> datetime:
        # strictly increasing so created_at orders inserts
        now = utcnow()
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def _group(self, group_id: str) -> Dict[str, Any]:
        g = self._groups.get(group_id)
        if g is None:
            raise LedgerNotFoundError("Group not found")
        return g

    def _normal_expense(self, expense_id: str) -> Expense:
        ex = self._expenses.get(expense_id)
        if ex is None or ex.is_repayment:
            raise LedgerNotFoundError("Expense not found")
        return ex

    def _mark_splits(self, planned: Iterable[Any], settlement_id: str) -> None:
        for p in planned:
            ex = self._expenses.get(p.expense_id)
            sp = next((s for s in ex.splits if s.user_id == p.user_id), None) if ex else None
            if ex is None or sp is None or not ex.counts_toward_balance:
                raise LedgerConflictError(f"Split {p.expense_id}/{p.user_id} no longer exists")
            if sp.is_settled:
                raise LedgerConflictError(f"Split {p.expense_id}/{p.user_id} is already settled")
            # edited since the plan was made
            if (
                abs(float(sp.owed_amount) - float(p.owed_amount)) >= 0.005
                or ex.currency != p.currency
                or ex.payer_id != p.payer_id
            ):
                raise LedgerConflictError(f"Split {p.expense_id}/{p.user_id} changed since the settlement was planned")
            sp.settlement_id = settlement_id

    def _add_repayment(self, group_id: str, created_by, debt, currency: str, settlement_id: str, now) -> None:
        eid = _new_id()
        self._expenses[eid] = Expense(
            id=eid,
            group_id=group_id,
            payer_id=debt.from_id,
            amount=float(debt.amount),
            currency=currency,
            description="Repayment",
            expense_date=now.date(),
            type=ExpenseType.REPAYMENT,
            settlement_id=settlement_id,
            created_at=now,
            created_by=created_by,
            splits=[Split(eid, debt.to_id, float(debt.amount), settlement_id)],
        )

    def _apply_settlement(self, plan) -> Settlement:
        with self._transaction():
            self._group(plan.group_id)
            now = self._now()
            sid = _new_id()
            self._mark_splits(plan.splits, sid)
            for debt in plan.repayments:
                self._add_repayment(plan.group_id, plan.created_by, debt, plan.currency, sid, now)
            settlement = Settlement(id=sid, group_id=plan.group_id, created_by=plan.created_by, created_at=now)
            self._settlements[sid] = settlement
            return copy.deepcopy(settlement)

    # ------------------------
    # Seeding
    # ------------------------
    def add_group(
        self,
        name: str,
        base_currency: str = "USD",
        members: Iterable[str] = (),
        group_id: Optional[str] = None,
    ) -> str:
        with self._transaction():
            gid = group_id or _new_id()
            self._groups[gid] = {"id": gid, "name": name, "base_currency": base_currency.upper(), "archived_at": None}
            self._members[gid] = [str(m) for m in members]
            return gid

    def add_member(self, group_id: str, user_id: str) -> None:
        with self._transaction():
            self._group(group_id)
            if user_id not in self._members[group_id]:
                self._members[group_id].append(str(user_id))

    def set_exchange_rates(self, raw: Dict[str, Any], day: Optional[date] = None) -> None:
        with self._lock:
            self._rates[(day or date.today()).isoformat()] = normalize_rate_table(raw)

    # ------------------------
    # Reads
    # ------------------------
    def get_group(self, group_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._group(group_id))

    def get_members(self, group_id: str) -> List[str]:
        with self._lock:
            self._group(group_id)
            return list(self._members.get(group_id, []))

    def fetch_expenses(self, group_id: str, include_deleted: bool = False) -> List[Expense]:
        with self._lock:
            rows = [
                e
                for e in self._expenses.values()
                if e.group_id == group_id and (include_deleted or not e.is_deleted)
            ]
            rows.sort(key=lambda e: e.sort_key(), reverse=True)
            return copy.deepcopy(rows)

    def get_expense(self, expense_id: str) -> Optional[Expense]:
        with self._lock:
            ex = self._expenses.get(expense_id)
            return copy.deepcopy(ex) if ex else None

    def fetch_settlements(self, group_id: str) -> List[Settlement]:
        with self._lock:
            rows = [s for s in self._settlements.values() if s.group_id == group_id]
            rows.sort(key=lambda s: s.created_at, reverse=True)
            return copy.deepcopy(rows)

    def fetch_exchange_rates(self, day: Optional[date] = None) -> RateTable:
        # today's table, else the latest cached one
        with self._lock:
            key = (day or date.today()).isoformat()
            if key in self._rates:
                return dict(self._rates[key])
            if self._rates:
                return dict(self._rates[max(self._rates)])
            return {}

    def fetch_activity(self, group_id: str, page: int = 0, page_size: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            # newest first; append order breaks timestamp ties
            indexed = [(i, r) for i, r in enumerate(self._activity) if r.get("group_id") == group_id]
            indexed.sort(key=lambda p: (p[1].get("created_at") or "", p[0]), reverse=True)
            start = page * page_size
            return copy.deepcopy([r for _, r in indexed[start : start + page_size]])

    # ------------------------
    # Writes
    # ------------------------
    def create_expense(
        self,
        group_id: str,
        payer_id: str,
        amount: float,
        currency: str,
        description: str,
        splits: Dict[str, float],
        created_by: Optional[str] = None,
        expense_date: Optional[date] = None,
    ) -> Expense:
        with self._transaction():
            self._group(group_id)
            now = self._now()
            eid = _new_id()
            ex = Expense(
                id=eid,
                group_id=group_id,
                payer_id=payer_id,
                amount=float(amount),
                currency=currency,
                description=description,
                expense_date=expense_date or now.date(),
                created_at=now,
                created_by=created_by,
                splits=[Split(eid, str(uid), float(v)) for uid, v in splits.items()],
            )
            self._expenses[eid] = ex
            return copy.deepcopy(ex)

    def update_expense(
        self,
        expense_id: str,
        payer_id: str,
        amount: float,
        currency: str,
        description: str,
        splits: Dict[str, float],
        expense_date: Optional[date] = None,
    ) -> Expense:
        with self._transaction():
            ex = self._normal_expense(expense_id)
            if ex.is_deleted:
                raise LedgerNotFoundError("Expense not found")
            if any(s.is_settled for s in ex.splits):
                raise LedgerConflictError("Expense has settled splits")
            ex.payer_id = payer_id
            ex.amount = float(amount)
            ex.currency = currency
            ex.description = description
            if expense_date is not None:
                ex.expense_date = expense_date
            ex.splits = [Split(expense_id, str(uid), float(v)) for uid, v in splits.items()]
            return copy.deepcopy(ex)

    def soft_delete_expense(self, expense_id: str) -> Expense:
        with self._transaction():
            ex = self._normal_expense(expense_id)
            if ex.is_deleted:
                raise LedgerNotFoundError("Expense not found")
            ex.soft_delete(self._now())
            return copy.deepcopy(ex)

    def restore_expense(self, expense_id: str) -> Expense:
        with self._transaction():
            ex = self._normal_expense(expense_id)
            if not ex.is_deleted:
                raise LedgerNotFoundError("Expense not found")
            ex.restore()
            return copy.deepcopy(ex)

    def update_group(self, group_id: str, name: str, base_currency: str) -> Dict[str, Any]:
        with self._transaction():
            g = self._group(group_id)
            g["name"] = name
            g["base_currency"] = base_currency
            return dict(g)

    def settle_all(self, plan) -> Settlement:
        return self._apply_settlement(plan)

    def settle_one(self, plan) -> Settlement:
        return self._apply_settlement(plan)

    def undo_settlement(self, settlement_id: str) -> Settlement:
        with self._transaction():
            settlement = self._settlements.pop(settlement_id, None)
            if settlement is None:
                raise LedgerNotFoundError("Settlement not found")

            for eid in [
                e.id for e in self._expenses.values() if e.is_repayment and e.settlement_id == settlement_id
            ]:
                del self._expenses[eid]

            for ex in self._expenses.values():
                for sp in ex.splits:
                    if sp.settlement_id == settlement_id:
                        sp.settlement_id = None
            return copy.deepcopy(settlement)

    def append_activity(self, row: Dict[str, Any]) -> None:
        with self._lock:
            self._activity.append({"id": _new_id(), **copy.deepcopy(row)})
