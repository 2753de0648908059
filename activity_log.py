# activity_log.py
#
# Best-effort audit trail of mutating actions.
#
# Notes:
# - Each entry is an ActivityEvent whose `change` is exactly one of the variants below.
#   The variant decides the action name and the entity type
# - record() never raises and by default hands the write to one worker thread, so a
#   slow or failing log store does not hold up the mutation it describes
# - drain() waits for queued writes (tests, shutdown)

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Union

from models import Expense, utcnow

logger = logging.getLogger("ledger.activity")


@dataclass
class FieldChange:
    old: Any
    new: Any


# ------------------------
# Change variants
# ------------------------
@dataclass
class ExpenseCreated:
    ACTION: ClassVar[str] = "expense.create"
    ENTITY_TYPE: ClassVar[str] = "expense"

    description: str
    amount: float
    currency: str


@dataclass
class ExpenseUpdated:
    ACTION: ClassVar[str] = "expense.update"
    ENTITY_TYPE: ClassVar[str] = "expense"

    changes: Dict[str, FieldChange] = field(default_factory=dict)


@dataclass
class ExpenseDeleted:
    ACTION: ClassVar[str] = "expense.delete"
    ENTITY_TYPE: ClassVar[str] = "expense"

    description: str
    amount: float
    currency: str


@dataclass
class ExpenseRestored:
    ACTION: ClassVar[str] = "expense.restore"
    ENTITY_TYPE: ClassVar[str] = "expense"

    description: str
    amount: float
    currency: str


@dataclass
class RepaymentNote:
    from_id: str
    to_id: str
    amount: float
    currency: str
    from_name: Optional[str] = None
    to_name: Optional[str] = None


@dataclass
class SettlementCreated:
    ACTION: ClassVar[str] = "settlement.create"
    ENTITY_TYPE: ClassVar[str] = "settlement"

    kind: str  # "all" | "granular"
    repayments: List[RepaymentNote] = field(default_factory=list)


@dataclass
class SettlementUndone:
    ACTION: ClassVar[str] = "settlement.undo"
    ENTITY_TYPE: ClassVar[str] = "settlement"


@dataclass
class GroupUpdated:
    ACTION: ClassVar[str] = "group.update"
    ENTITY_TYPE: ClassVar[str] = "group"

    changes: Dict[str, FieldChange] = field(default_factory=dict)


ActivityChange = Union[
    ExpenseCreated,
    ExpenseUpdated,
    ExpenseDeleted,
    ExpenseRestored,
    SettlementCreated,
    SettlementUndone,
    GroupUpdated,
]


def changes_payload(change: ActivityChange) -> Dict[str, Any]:
    # Storage shape of the `changes` column
    if isinstance(change, (ExpenseUpdated, GroupUpdated)):
        return {k: {"old": v.old, "new": v.new} for k, v in change.changes.items()}
    if isinstance(change, SettlementCreated):
        repayments = []
        for r in change.repayments:
            item = {"from": r.from_id, "to": r.to_id, "amount": r.amount, "currency": r.currency}
            if r.from_name is not None:
                item["from_name"] = r.from_name
            if r.to_name is not None:
                item["to_name"] = r.to_name
            repayments.append(item)
        return {"type": change.kind, "repayments": repayments}
    return asdict(change)


@dataclass
class ActivityEvent:
    group_id: str
    actor_id: Optional[str]
    change: ActivityChange
    entity_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def action(self) -> str:
        return self.change.ACTION

    @property
    def entity_type(self) -> str:
        return self.change.ENTITY_TYPE

    def to_row(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "changes": changes_payload(self.change),
            "created_at": self.created_at.isoformat(),
        }


# ------------------------
# Diff helpers
# ------------------------
def diff_expense(
    old: Expense,
    payer_id: str,
    amount: float,
    currency: str,
    description: str,
) -> Dict[str, FieldChange]:
    changes: Dict[str, FieldChange] = {}
    if old.description != description:
        changes["description"] = FieldChange(old.description, description)
    if float(old.amount) != float(amount):
        changes["amount"] = FieldChange(float(old.amount), float(amount))
    if old.currency != currency:
        changes["currency"] = FieldChange(old.currency, currency)
    if old.payer_id != payer_id:
        changes["payer"] = FieldChange(old.payer_id, payer_id)
    return changes


def diff_fields(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, FieldChange]:
    return {k: FieldChange(old.get(k), v) for k, v in new.items() if old.get(k) != v}


# ------------------------
# Sink
# ------------------------
_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            # one worker keeps entries in submission order
            _executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="activity-log")
        return _executor


def _write(store, event: ActivityEvent) -> bool:
    try:
        store.append_activity(event.to_row())
        return True
    except Exception:
        logger.exception("Failed to log activity %s for group %s", event.action, event.group_id)
        return False


def record(store, event: ActivityEvent, background: bool = True) -> Optional[Future]:
    """
    Append one entry. Failures are logged, never raised.
    By default the write is queued on the worker thread and its Future returned;
    background=False writes inline and returns None.
    """
    if not background:
        _write(store, event)
        return None
    try:
        return _get_executor().submit(_write, store, event)
    except RuntimeError:
        # executor shut down (interpreter exit); write inline instead
        _write(store, event)
        return None


def drain(timeout: Optional[float] = None) -> None:
    """Block until every entry queued so far has been written."""
    with _executor_lock:
        executor = _executor
    if executor is None:
        return
    executor.submit(lambda: None).result(timeout=timeout)
