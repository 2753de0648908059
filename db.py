# db.py (Supabase API version using supabase-py)
#
# Notes:
# - Uses Supabase REST API (PostgREST) via supabase-py
# - Reads go through _execute_with_retry (transport errors are retried with backoff)
# - Every write is ONE call: either a single-row update or an RPC defined in
#   sql/schema.sql that runs in one Postgres transaction. Writes are never retried.
# - Requires Streamlit secrets (or env vars, see config.py):
#   [supabase]
#   url = "https://<PROJECT_REF>.supabase.co"
#   service_role_key = "<SERVICE_ROLE_KEY>"

import logging
import random
import time
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import httpx
import streamlit as st
from postgrest.exceptions import APIError
from supabase import Client, create_client

from config import supabase_service_role_key, supabase_url
from currency import RateTable, normalize_rate_table
from errors import LedgerConflictError, LedgerError, LedgerNotFoundError, LedgerValidationError
from models import Expense, Settlement, utcnow

logger = logging.getLogger("ledger.db")

EXPENSE_COLUMNS = (
    "id,group_id,payer_id,amount,currency,description,date,type,settlement_id,"
    "deleted_at,created_at,created_by,"
    "expense_splits(expense_id,user_id,owed_amount,settlement_id)"
)

TRANSPORT_ERRORS = (
    httpx.RemoteProtocolError,
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.ConnectError,
)


# ------------------------
# Supabase client
# ------------------------
@st.cache_resource(show_spinner=False)
def _sb() -> Client:
    return create_client(supabase_url(), supabase_service_role_key())


def _ok(resp) -> Tuple[bool, Optional[str]]:
    err = getattr(resp, "error", None)
    if err:
        return False, str(err)
    return True, None


def _execute_with_retry(q, tries: int = 4, base_sleep: float = 0.35):
    last_exc = None
    for i in range(tries):
        try:
            return q.execute()
        except TRANSPORT_ERRORS as e:
            last_exc = e
            logger.warning("Supabase transport error (attempt %d/%d): %s", i + 1, tries, e)
            time.sleep(base_sleep * (2**i) + random.uniform(0.0, 0.2))
            try:
                _sb.clear()
            except Exception:
                pass
    raise last_exc


def _raise_for(e: APIError, action: str) -> None:
    """
    Map a PostgREST error to a typed failure.
    SQLSTATE codes come from the RAISE statements in sql/schema.sql.
    """
    code = str(getattr(e, "code", None) or "")
    msg = getattr(e, "message", None) or str(e)
    if code == "P0002":
        raise LedgerNotFoundError(msg) from e
    if code in ("40001", "40P01") or code.startswith("23"):
        raise LedgerConflictError(f"{action} failed: {msg}") from e
    if code == "P0001" or code.startswith("22"):
        raise LedgerValidationError(f"{action} failed: {msg}") from e
    raise LedgerError(f"{action} failed: {msg}") from e


def _first(data) -> Optional[Dict[str, Any]]:
    # RPCs return one json object; table writes return a list of rows
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


def _norm_id(v) -> str:
    if v is None:
        return ""
    return str(v).strip()


# ------------------------
# Store
# ------------------------
class SupabaseLedger:
    """
    Ledger store backed by Supabase. Method set matches local_db.LocalLedger.

    Tables: groups, group_members, expenses, expense_splits, settlements,
    activity_logs, exchange_rates (see sql/schema.sql).
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        return self._client if self._client is not None else _sb()

    def _read(self, q, what: str):
        try:
            resp = _execute_with_retry(q)
        except APIError as e:
            raise RuntimeError(f"DB error ({what}): {getattr(e, 'message', None) or e}") from e
        ok, msg = _ok(resp)
        if not ok:
            raise RuntimeError(f"DB error ({what}): {msg}")
        return resp.data or []

    def _write(self, q, action: str):
        try:
            resp = q.execute()
        except APIError as e:
            _raise_for(e, action)
        except httpx.HTTPError as e:
            raise LedgerError(f"{action} failed: {e}") from e
        ok, msg = _ok(resp)
        if not ok:
            raise LedgerError(f"{action} failed: {msg}")
        return resp.data

    def _rpc(self, fn: str, params: Dict[str, Any], action: str):
        return self._write(self.sb.rpc(fn, params), action)

    # ------------------------
    # Init
    # ------------------------
    def ping(self) -> None:
        try:
            self._read(self.sb.table("groups").select("id").limit(1), "ping")
        except RuntimeError as e:
            raise RuntimeError(f"Supabase connectivity check failed: {e}") from e

    # ------------------------
    # Reads
    # ------------------------
    def get_group(self, group_id: str) -> Dict[str, Any]:
        rows = self._read(
            self.sb.table("groups").select("id,name,base_currency,archived_at").eq("id", _norm_id(group_id)).limit(1),
            "group",
        )
        if not rows:
            raise LedgerNotFoundError("Group not found")
        return dict(rows[0])

    def get_members(self, group_id: str) -> List[str]:
        rows = self._read(
            self.sb.table("group_members")
            .select("user_id")
            .eq("group_id", _norm_id(group_id))
            .order("joined_at", desc=False),
            "members",
        )
        return [str(r["user_id"]) for r in rows]

    def fetch_expenses(self, group_id: str, include_deleted: bool = False) -> List[Expense]:
        q = self.sb.table("expenses").select(EXPENSE_COLUMNS).eq("group_id", _norm_id(group_id))
        if not include_deleted:
            q = q.is_("deleted_at", "null")
        rows = self._read(q.order("date", desc=True).order("created_at", desc=True), "expenses")
        return [Expense.from_row(r) for r in rows]

    def get_expense(self, expense_id: str) -> Optional[Expense]:
        rows = self._read(
            self.sb.table("expenses").select(EXPENSE_COLUMNS).eq("id", _norm_id(expense_id)).limit(1),
            "expense",
        )
        return Expense.from_row(rows[0]) if rows else None

    def fetch_settlements(self, group_id: str) -> List[Settlement]:
        rows = self._read(
            self.sb.table("settlements")
            .select("id,group_id,created_by,created_at")
            .eq("group_id", _norm_id(group_id))
            .order("created_at", desc=True),
            "settlements",
        )
        return [Settlement.from_row(r) for r in rows]

    def fetch_exchange_rates(self, day: Optional[date] = None) -> RateTable:
        """
        Today's cached table, else the latest one. Filling the cache is done by the
        rate provider job, not here. No table at all -> {} (every rate falls back to 1).
        """
        day_s = (day or date.today()).isoformat()
        rows = self._read(self.sb.table("exchange_rates").select("date,rates").eq("date", day_s).limit(1), "rates")
        if not rows:
            rows = self._read(
                self.sb.table("exchange_rates").select("date,rates").order("date", desc=True).limit(1),
                "rates",
            )
            if rows:
                logger.warning("No exchange rates for %s, using %s", day_s, rows[0].get("date"))
        if not rows:
            logger.warning("Exchange rate table is empty")
            return {}
        return normalize_rate_table(rows[0].get("rates") or {})

    def fetch_activity(self, group_id: str, page: int = 0, page_size: int = 20) -> List[Dict[str, Any]]:
        start = page * page_size
        return self._read(
            self.sb.table("activity_logs")
            .select("id,group_id,actor_id,action,entity_type,entity_id,changes,created_at")
            .eq("group_id", _norm_id(group_id))
            .order("created_at", desc=True)
            .range(start, start + page_size - 1),
            "activity",
        )

    # ------------------------
    # Expense writes
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
        data = self._rpc(
            "create_expense_with_splits",
            {
                "p_group_id": _norm_id(group_id),
                "p_payer_id": payer_id,
                "p_amount": float(amount),
                "p_currency": currency,
                "p_description": description,
                "p_date": (expense_date or date.today()).isoformat(),
                "p_created_by": created_by,
                "p_splits": [{"user_id": uid, "amount": float(v)} for uid, v in splits.items()],
            },
            "Save",
        )
        row = _first(data)
        if not row:
            raise LedgerError("Save failed")
        return Expense.from_row(row)

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
        data = self._rpc(
            "update_expense_details",
            {
                "p_expense_id": _norm_id(expense_id),
                "p_payer_id": payer_id,
                "p_amount": float(amount),
                "p_currency": currency,
                "p_description": description,
                "p_date": expense_date.isoformat() if expense_date else None,
                "p_splits": [{"user_id": uid, "amount": float(v)} for uid, v in splits.items()],
            },
            "Update",
        )
        row = _first(data)
        if not row:
            raise LedgerNotFoundError("Expense not found")
        return Expense.from_row(row)

    def soft_delete_expense(self, expense_id: str) -> Expense:
        rows = self._write(
            self.sb.table("expenses")
            .update({"deleted_at": utcnow().isoformat()})
            .eq("id", _norm_id(expense_id))
            .eq("type", "normal")
            .is_("deleted_at", "null"),
            "Delete",
        )
        if not rows:
            raise LedgerNotFoundError("Expense not found")
        return self.get_expense(expense_id)

    def restore_expense(self, expense_id: str) -> Expense:
        rows = self._write(
            self.sb.table("expenses")
            .update({"deleted_at": None})
            .eq("id", _norm_id(expense_id))
            .eq("type", "normal")
            .not_.is_("deleted_at", "null"),
            "Restore",
        )
        if not rows:
            raise LedgerNotFoundError("Expense not found")
        return self.get_expense(expense_id)

    def update_group(self, group_id: str, name: str, base_currency: str) -> Dict[str, Any]:
        rows = self._write(
            self.sb.table("groups").update({"name": name, "base_currency": base_currency}).eq("id", _norm_id(group_id)),
            "Update",
        )
        row = _first(rows)
        if not row:
            raise LedgerNotFoundError("Group not found")
        return dict(row)

    # ------------------------
    # Settlement writes
    # ------------------------
    @staticmethod
    def _split_params(plan) -> List[Dict[str, Any]]:
        # the RPC refuses splits whose amount, currency or payer moved since planning
        return [p.to_param() for p in plan.splits]

    def settle_all(self, plan) -> Settlement:
        data = self._rpc(
            "settle_group_expenses",
            {
                "p_group_id": _norm_id(plan.group_id),
                "p_created_by": plan.created_by,
                "p_currency": plan.currency,
                "p_repayments": [d.to_dict() for d in plan.repayments],
                "p_splits": self._split_params(plan),
            },
            "Settlement",
        )
        row = _first(data)
        if not row:
            raise LedgerError("Settlement failed")
        return Settlement.from_row(row)

    def settle_one(self, plan) -> Settlement:
        debt = plan.repayments[0]
        data = self._rpc(
            "settle_debt_rpc",
            {
                "p_group_id": _norm_id(plan.group_id),
                "p_created_by": plan.created_by,
                "p_debtor_id": debt.from_id,
                "p_creditor_id": debt.to_id,
                "p_amount": float(debt.amount),
                "p_currency": plan.currency,
                "p_splits": self._split_params(plan),
            },
            "Settlement",
        )
        row = _first(data)
        if not row:
            raise LedgerError("Settlement failed")
        return Settlement.from_row(row)

    def undo_settlement(self, settlement_id: str) -> Settlement:
        data = self._rpc("undo_settlement", {"p_settlement_id": _norm_id(settlement_id)}, "Undo")
        row = _first(data)
        if not row:
            raise LedgerNotFoundError("Settlement not found")
        return Settlement.from_row(row)

    # ------------------------
    # Activity
    # ------------------------
    def append_activity(self, row: Dict[str, Any]) -> None:
        self._rpc(
            "log_activity",
            {
                "p_group_id": row["group_id"],
                "p_actor_id": row.get("actor_id"),
                "p_action": row["action"],
                "p_entity_type": row["entity_type"],
                "p_entity_id": row.get("entity_id"),
                "p_changes": row.get("changes") or {},
            },
            "Activity log",
        )
