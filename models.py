# models.py
#
# Ledger entities.
#
# Notes:
# - Expenses, splits and settlements mirror the storage rows (see sql/schema.sql)
# - Balances and debts are derived values and are never stored
# - Rows are plain dicts as returned by PostgREST; from_row/to_row convert both ways
#   and tolerate missing keys so older rows still load

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ExpenseType(str, Enum):
    NORMAL = "normal"
    REPAYMENT = "repayment"


class ExpenseState(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        ts = v
    else:
        s = str(v).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        ts = datetime.fromisoformat(s)
    # timestamptz columns only; naive values are taken as UTC
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def parse_date(v: Any) -> Optional[date]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v).strip()[:10])


def _iso(v: Optional[Any]) -> Optional[str]:
    return v.isoformat() if v is not None else None


SplitKey = Tuple[str, str]


@dataclass
class Split:
    """One member's share of one expense, in the expense's currency."""

    expense_id: str
    user_id: str
    owed_amount: float
    settlement_id: Optional[str] = None

    @property
    def key(self) -> SplitKey:
        return (self.expense_id, self.user_id)

    @property
    def is_settled(self) -> bool:
        return self.settlement_id is not None

    def to_row(self) -> Dict[str, Any]:
        return {
            "expense_id": self.expense_id,
            "user_id": self.user_id,
            "owed_amount": float(self.owed_amount),
            "settlement_id": self.settlement_id,
        }

    @staticmethod
    def from_row(d: Dict[str, Any], expense_id: Optional[str] = None) -> "Split":
        return Split(
            expense_id=str(d.get("expense_id") or expense_id or ""),
            user_id=str(d["user_id"]),
            owed_amount=float(d.get("owed_amount") or 0.0),
            settlement_id=(str(d["settlement_id"]) if d.get("settlement_id") else None),
        )


@dataclass
class Expense:
    """
    Fields:
      - type: repayment rows are written by settlements and never count toward balances
      - state: ACTIVE or DELETED (soft delete); deleted_at records when it was deleted
      - settlement_id: set on repayment rows only, points at the settlement that created them
    """

    id: str
    group_id: str
    payer_id: str
    amount: float
    currency: str
    description: str = ""
    expense_date: Optional[date] = None
    type: ExpenseType = ExpenseType.NORMAL
    settlement_id: Optional[str] = None
    state: ExpenseState = ExpenseState.ACTIVE
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    splits: List[Split] = field(default_factory=list)

    @property
    def is_repayment(self) -> bool:
        return self.type == ExpenseType.REPAYMENT

    @property
    def is_deleted(self) -> bool:
        return self.state == ExpenseState.DELETED

    @property
    def counts_toward_balance(self) -> bool:
        return not self.is_repayment and not self.is_deleted

    def unsettled_splits(self) -> List[Split]:
        return [s for s in self.splits if not s.is_settled]

    def soft_delete(self, at: Optional[datetime] = None) -> None:
        self.state = ExpenseState.DELETED
        self.deleted_at = at or utcnow()

    def restore(self) -> None:
        self.state = ExpenseState.ACTIVE
        self.deleted_at = None

    def sort_key(self) -> Tuple[date, datetime, str]:
        # Oldest first: expense date, then insertion time, then id
        return (
            self.expense_date or date.min,
            self.created_at or datetime.min.replace(tzinfo=timezone.utc),
            self.id,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "payer_id": self.payer_id,
            "amount": float(self.amount),
            "currency": self.currency,
            "description": self.description,
            "date": _iso(self.expense_date),
            "type": self.type.value,
            "settlement_id": self.settlement_id,
            "deleted_at": _iso(self.deleted_at),
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
            "expense_splits": [s.to_row() for s in self.splits],
        }

    @staticmethod
    def from_row(d: Dict[str, Any]) -> "Expense":
        eid = str(d["id"])
        deleted_at = parse_ts(d.get("deleted_at"))
        return Expense(
            id=eid,
            group_id=str(d.get("group_id") or ""),
            payer_id=str(d["payer_id"]),
            amount=float(d.get("amount") or 0.0),
            currency=str(d.get("currency") or "").upper(),
            description=d.get("description") or "",
            expense_date=parse_date(d.get("date")),
            type=ExpenseType(d.get("type") or ExpenseType.NORMAL.value),
            settlement_id=(str(d["settlement_id"]) if d.get("settlement_id") else None),
            state=ExpenseState.DELETED if deleted_at is not None else ExpenseState.ACTIVE,
            deleted_at=deleted_at,
            created_at=parse_ts(d.get("created_at")),
            created_by=(str(d["created_by"]) if d.get("created_by") else None),
            splits=[Split.from_row(s, expense_id=eid) for s in (d.get("expense_splits") or [])],
        )


@dataclass
class Settlement:
    """Audit anchor for one settlement action. Amounts live on the rows that reference it."""

    id: str
    group_id: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    @staticmethod
    def from_row(d: Dict[str, Any]) -> "Settlement":
        return Settlement(
            id=str(d["id"]),
            group_id=str(d.get("group_id") or ""),
            created_by=(str(d["created_by"]) if d.get("created_by") else None),
            created_at=parse_ts(d.get("created_at")),
        )


@dataclass(frozen=True)
class Debt:
    """One suggested transfer: from_id pays to_id."""

    from_id: str
    to_id: str
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.from_id, "to": self.to_id, "amount": self.amount}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Debt":
        return Debt(from_id=str(d["from"]), to_id=str(d["to"]), amount=float(d["amount"]))
