import secrets
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from money import ZERO, to_money, round_money

MAX_LIFETIME_FREE_DELIVERIES = 30
MAX_LIFETIME_CASHBACK = Decimal("300.00")
FREE_DELIVERIES_PER_REFERRAL = 3
CASHBACK_PER_FARMER_REFERRAL = Decimal("30.00")

FARMER = "farmer"
CONSUMER = "consumer"

FARMER_CODE_PREFIX = "FF"
CUSTOMER_CODE_PREFIX = "FC"

# (referrer role, referred role) -> referral type
REFERRAL_TYPES = {
    (FARMER, FARMER): "farmer_to_farmer",
    (FARMER, CONSUMER): "farmer_to_customer",
    (CONSUMER, FARMER): "customer_to_farmer",
    (CONSUMER, CONSUMER): "customer_to_customer",
}

PENDING = "pending"
ACTIVE = "active"
COMPLETED = "completed"
BLOCKED = "blocked"

# allowed forward moves; nothing leaves completed or blocked
STATUS_TRANSITIONS = {
    PENDING: {ACTIVE, COMPLETED, BLOCKED},
    ACTIVE: {COMPLETED, BLOCKED},
    COMPLETED: set(),
    BLOCKED: set(),
}


def failure(reason: str, message: str) -> Dict[str, Any]:
    """structured business-rule failure; callers show it, they don't retry it as an error."""
    return {"success": False, "reason": reason, "message": message}


def classify_referral(referrer_role: str, referred_role: str) -> Optional[str]:
    return REFERRAL_TYPES.get((referrer_role, referred_role))


def generate_referral_code(prefix: str) -> str:
    """prefix + 8 upper-case hex chars, e.g. FC1A2B3C4D."""
    return prefix + secrets.token_hex(4).upper()


def would_create_cycle(child_id, parent_id, get_referrer: Callable[[Any], Any]) -> bool:
    """
    walk UP from parent; linking child under parent is a cycle if we ever reach child.
    """
    current = parent_id
    seen = set()
    while current is not None and current not in seen:
        if current == child_id:
            return True
        seen.add(current)
        current = get_referrer(current)
    return False


def next_status(current: str, target: str) -> str:
    """
    move a referral status forward. staying put is allowed; regressing is not.
    """
    if current == target:
        return current
    if target not in STATUS_TRANSITIONS.get(current, set()):
        raise ValueError(f"Referral status cannot move from {current} to {target}")
    return target


def capped_free_deliveries(total_free_deliveries: int) -> int:
    """free deliveries grantable now without passing the lifetime cap (0 when at cap)."""
    remaining = MAX_LIFETIME_FREE_DELIVERIES - int(total_free_deliveries)
    return max(0, min(FREE_DELIVERIES_PER_REFERRAL, remaining))


def capped_cashback(total_earned_credit) -> Decimal:
    """cashback grantable now without passing the lifetime cap (0 when at cap)."""
    remaining = MAX_LIFETIME_CASHBACK - to_money(total_earned_credit)
    return round_money(max(ZERO, min(CASHBACK_PER_FARMER_REFERRAL, remaining)))


def grant_free_deliveries(info: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
    """
    returns (field updates, granted count) for a free-delivery grant on `info`.
    """
    granted = capped_free_deliveries(info["total_free_deliveries"])
    updates = {
        "free_deliveries_remaining": int(info["free_deliveries_remaining"]) + granted,
        "total_free_deliveries": int(info["total_free_deliveries"]) + granted,
    }
    return updates, granted


def grant_cashback(info: Dict[str, Any]) -> Tuple[Dict[str, Any], Decimal]:
    """
    returns (field updates, granted amount) for a cashback grant on `info`.
    """
    granted = capped_cashback(info["total_earned_credit"])
    updates = {
        "remaining_credit": to_money(info["remaining_credit"]) + granted,
        "total_earned_credit": to_money(info["total_earned_credit"]) + granted,
    }
    return updates, granted
