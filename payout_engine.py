from typing import Any, Dict, List

from errors import InvalidStatusTransition
from money import ZERO, to_money, round_money

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

PAYOUT_TRANSITIONS = {
    PENDING: {PROCESSING},
    PROCESSING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}


def plan_farmer_payout(payments: List[Dict[str, Any]], remaining_credit) -> Dict[str, Any]:
    """
    one farmer's payout from their unpaid payments.

    referral credit offsets at most the commission collected in this run:
      applied = min(remaining_credit, commission total)
    """
    original = sum((to_money(p["amount"]) for p in payments), ZERO)
    commission_total = sum((to_money(p["commission"]) for p in payments), ZERO)
    available = max(ZERO, to_money(remaining_credit))

    applied = ZERO
    if available > 0 and commission_total > 0:
        applied = min(available, commission_total)

    original = round_money(original)
    applied = round_money(applied)
    return {
        "original_amount": original,
        "commission_total": round_money(commission_total),
        "credit_applied": applied,
        "amount": original + applied,
        "remaining_credit_after": round_money(available - applied),
        "payment_ids": [p["id"] for p in payments],
    }


def check_payout_transition(current: str, target: str) -> None:
    if target not in PAYOUT_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(f"Payout status cannot move from {current} to {target}")


def payout_reference(farmer_id, run_date) -> str:
    return f"FreshFarmily-{run_date.isoformat()}-{str(farmer_id)[-6:]}"
