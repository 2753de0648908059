# splits.py
#
# Split allocation for the add/edit expense flow.
#
# Notes:
# - EQUAL / EXACT / PERCENT modes
# - Allocation works in currency units (1 for no-decimal currencies, else 0.01)
#   so the shares always sum exactly to the expense amount
# - The balance engine itself never re-checks these sums; it tolerates dust

from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional, Tuple

from currency import NO_DECIMAL_CURRENCIES, norm_ccy
from errors import LedgerValidationError

SPLIT_MODES = ("EQUAL", "EXACT", "PERCENT")


def norm_mode(mode: Optional[str]) -> str:
    m = (mode or "EQUAL").strip().upper()
    if m in ["$", "AMOUNT", "FIXED"]:
        return "EXACT"
    if m in ["%", "PERCENTAGE"]:
        return "PERCENT"
    if m in ["EVEN"]:
        return "EQUAL"
    return m if m in SPLIT_MODES else "EQUAL"


def ccy_scale(currency: str) -> int:
    return 0 if norm_ccy(currency) in NO_DECIMAL_CURRENCIES else 2


def _quant_unit(scale: int) -> Decimal:
    # scale=2 -> 0.01, scale=0 -> 1
    return Decimal("1") if scale == 0 else Decimal("0.01")


def _quantize_down(x: Decimal, scale: int) -> Decimal:
    return x.quantize(_quant_unit(scale), rounding=ROUND_DOWN)


def _dec(x) -> Decimal:
    return Decimal(str(float(x)))


def allocate_equal(amount: Decimal, user_ids: List[str], scale: int) -> Dict[str, Decimal]:
    """
    Split amount evenly:
    - floor to currency unit
    - distribute remainder by +1 unit to first members (stable order)
    """
    n = len(user_ids)
    if n <= 0:
        return {}

    unit = _quant_unit(scale)
    base = _quantize_down(amount / Decimal(n), scale)
    alloc = {uid: base for uid in user_ids}

    remainder = amount - base * Decimal(n)  # >= 0 and < n*unit
    steps = int((remainder / unit).to_integral_value(rounding=ROUND_DOWN))
    for i in range(steps):
        alloc[user_ids[i % n]] += unit

    # Final safety: force exact sum by adjusting last
    s = sum(alloc.values(), Decimal("0"))
    if s != amount:
        alloc[user_ids[-1]] += amount - s
    return alloc


def allocate_percent(amount: Decimal, percents: Dict[str, float], scale: int) -> Dict[str, Decimal]:
    """
    Allocate by percent:
    - floor each raw share to unit
    - remainder goes +1 unit at a time to the largest fractional parts
    """
    user_ids = list(percents.keys())
    if not user_ids:
        return {}

    total_pct = sum(_dec(p) for p in percents.values())
    if abs(total_pct - Decimal("100")) >= Decimal("0.1"):
        raise LedgerValidationError(f"Percentages must add up to 100 (got {total_pct})")

    unit = _quant_unit(scale)
    alloc: Dict[str, Decimal] = {}
    frac: List[Tuple[Decimal, int, str]] = []  # (fractional part, -position, uid)

    for pos, uid in enumerate(user_ids):
        raw = amount * _dec(percents[uid]) / Decimal("100")
        floor = _quantize_down(raw, scale)
        alloc[uid] = floor
        frac.append((raw - floor, -pos, uid))

    remainder = amount - sum(alloc.values(), Decimal("0"))
    steps = int((remainder / unit).to_integral_value(rounding=ROUND_DOWN))

    # biggest fractional part first, earlier member wins ties
    frac.sort(reverse=True)
    for i in range(steps):
        uid = frac[i % len(frac)][2]
        alloc[uid] += unit

    s = sum(alloc.values(), Decimal("0"))
    if s != amount:
        alloc[user_ids[-1]] += amount - s
    return alloc


def allocate_exact(amount: Decimal, shares: Dict[str, float], scale: int) -> Dict[str, Decimal]:
    # User-entered amounts must already add up; no auto-fix here
    q = _quant_unit(scale)
    alloc = {uid: _dec(v).quantize(q) for uid, v in shares.items()}
    s = sum(alloc.values(), Decimal("0"))
    if s != amount:
        raise LedgerValidationError(f"Share amounts do not sum to total. sum={s} total={amount}")
    return alloc


def compute_splits(
    amount: float,
    currency: str,
    mode: str = "EQUAL",
    user_ids: Optional[List[str]] = None,
    exact_amounts: Optional[Dict[str, float]] = None,
    percents: Optional[Dict[str, float]] = None,
) -> Dict[str, float]:
    """
    Returns {user_id: owed_amount} that sums exactly to amount (in currency units).
    Members with a zero share are left out.
    """
    if amount is None or float(amount) <= 0:
        raise LedgerValidationError("Invalid amount")

    scale = ccy_scale(currency)
    total = _dec(amount).quantize(_quant_unit(scale))
    mode_n = norm_mode(mode)

    if mode_n == "EQUAL":
        ids = [str(x) for x in (user_ids or [])]
        if not ids:
            raise LedgerValidationError("Please select at least one member")
        alloc = allocate_equal(total, ids, scale)
    elif mode_n == "PERCENT":
        alloc = allocate_percent(total, {str(k): v for k, v in (percents or {}).items() if float(v) > 0}, scale)
    else:
        alloc = allocate_exact(total, {str(k): v for k, v in (exact_amounts or {}).items() if float(v) > 0}, scale)

    if not alloc:
        raise LedgerValidationError("Please select at least one member")
    return {uid: float(v) for uid, v in alloc.items() if v > 0}


def validate_splits(amount: float, splits: Dict[str, float], tolerance: float = 0.01) -> None:
    if not splits:
        raise LedgerValidationError("Please select at least one member")
    if any(float(v) < 0 for v in splits.values()):
        raise LedgerValidationError("Share amounts cannot be negative")
    s = sum(float(v) for v in splits.values())
    if abs(s - float(amount)) >= tolerance:
        raise LedgerValidationError(f"Share amounts do not sum to total. sum={s:.2f} total={float(amount):.2f}")


def infer_mode(amount: float, splits: Dict[str, float]) -> str:
    """
    EQUAL when every non-zero share is within 0.05 of amount / n and the shares add up,
    otherwise EXACT (keeps precision when editing).
    """
    active = {k: float(v) for k, v in splits.items() if float(v) > 0.001}
    n = len(active)
    if n == 0:
        return "EXACT"
    if abs(float(amount) - sum(active.values())) >= 0.05:
        return "EXACT"
    expected = float(amount) / n
    if all(abs(v - expected) < 0.05 for v in active.values()):
        return "EQUAL"
    return "EXACT"
