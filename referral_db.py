import logging
from datetime import datetime, timezone
from functools import partial
from typing import Dict, Any, Optional

from psycopg import Connection

from db.db import get_conn
from db.repositories import (
    get_order,
    get_order_charges,
    get_referral_history,
    get_referral_info,
    get_referral_info_by_code,
    get_referred_users,
    insert_referral_history,
    insert_referral_info,
    referral_code_exists,
    set_order_free_delivery,
    update_referral_history,
    update_referral_info,
    waive_order_charges_delivery_fee,
)
from errors import NotFound
from referral_engine import (
    ACTIVE,
    COMPLETED,
    CONSUMER,
    CUSTOMER_CODE_PREFIX,
    FARMER,
    FARMER_CODE_PREFIX,
    MAX_LIFETIME_CASHBACK,
    PENDING,
    classify_referral,
    failure,
    generate_referral_code,
    grant_cashback,
    grant_free_deliveries,
    next_status,
    would_create_cycle,
)
from money import to_money

logger = logging.getLogger(__name__)


def _run_in_tx(fn, *args) -> Dict[str, Any]:
    """
    run a ledger mutation in one transaction.
    structured failures roll back like exceptions do; only successes commit.
    """
    with get_conn() as conn:
        try:
            result = fn(conn, *args)
            if result.get("success"):
                conn.commit()
            else:
                conn.rollback()
            return result
        except Exception:
            conn.rollback()
            raise


def _unique_code(conn: Connection, prefix: str) -> str:
    while True:
        candidate = generate_referral_code(prefix)
        if not referral_code_exists(conn, candidate):
            return candidate


def _get_or_create_info(conn: Connection, user_id: int) -> Dict[str, Any]:
    info = get_referral_info(conn, user_id, for_update=True)
    if info is not None:
        return info

    info = insert_referral_info(
        conn,
        user_id,
        farmer_code=_unique_code(conn, FARMER_CODE_PREFIX),
        customer_code=_unique_code(conn, CUSTOMER_CODE_PREFIX),
    )
    logger.info("created referral info for user %s", user_id)
    return info


def _referrer_of(conn: Connection, user_id: int) -> Optional[int]:
    info = get_referral_info(conn, user_id)
    return info["referred_by"] if info else None


def create_referral_info_db(user_id: int) -> Dict[str, Any]:
    """
    return the user's referral info (with both codes), creating it on first use.
    """
    with get_conn() as conn:
        try:
            info = _get_or_create_info(conn, user_id)
            conn.commit()
            return info
        except Exception:
            conn.rollback()
            raise


# ---------
# registration
# ---------

def process_referral_db(referral_code: str, new_user_id: int, new_user_role: str) -> Dict[str, Any]:
    """
    attach a newly registered user to the owner of `referral_code`.

    rules:
      - code must match a farmer or customer code slot
      - referrer/referred roles must form one of the four referral types
      - a user is referred at most once (first referrer wins)
      - no self-referral, no cycles
      - a referred consumer gets free deliveries now, as does a consumer referrer;
        farmer cashback waits for the first sale
    """
    if not referral_code:
        return failure("invalid_code", "No referral code provided")
    return _run_in_tx(_process_referral_in_tx, referral_code, new_user_id, new_user_role)


def _process_referral_in_tx(conn: Connection, referral_code: str, new_user_id: int, new_user_role: str) -> Dict[str, Any]:
    # 1) resolve the referrer from either code slot
    referrer = get_referral_info_by_code(conn, referral_code, for_update=True)
    if referrer is None:
        logger.warning("invalid referral code %s for user %s", referral_code, new_user_id)
        return failure("invalid_code", "Invalid referral code")

    referrer_id = referrer["user_id"]
    if referrer_id == new_user_id:
        return failure("self_referral", "User cannot refer themselves")

    referral_type = classify_referral(referrer["role"], new_user_role)
    if referral_type is None:
        return failure("invalid_role_combination", "Invalid user role combination")

    # 2) the referred user must not already have a referrer
    referred = _get_or_create_info(conn, new_user_id)
    if referred["referred_by"] is not None:
        logger.warning("user %s already referred by %s", new_user_id, referred["referred_by"])
        return failure("already_referred", "User already referred by someone else")

    if would_create_cycle(new_user_id, referrer_id, partial(_referrer_of, conn)):
        return failure("referral_cycle", f"Linking {new_user_id} under {referrer_id} would create a cycle")

    # 3) link
    status = next_status(referred["referral_status"], ACTIVE)
    update_referral_info(
        conn,
        new_user_id,
        referred_by=referrer_id,
        referral_type=referral_type,
        referral_status=status,
    )

    history = {
        "referrer_id": referrer_id,
        "referred_id": new_user_id,
        "referral_code": referral_code,
        "referral_type": referral_type,
        "status": PENDING,
    }
    referred_granted = 0
    referrer_granted = 0

    # 4) consumer rewards are immediate
    if new_user_role == CONSUMER:
        updates, referred_granted = grant_free_deliveries(referred)
        update_referral_info(
            conn,
            new_user_id,
            referral_status=next_status(status, COMPLETED),
            **(updates if referred_granted else {}),
        )

        if referrer["role"] == CONSUMER:
            updates, referrer_granted = grant_free_deliveries(referrer)
            if referrer_granted:
                update_referral_info(conn, referrer_id, **updates)

        history.update(
            {
                "status": COMPLETED,
                "referred_reward_type": "free_deliveries" if referred_granted else "none",
                "referred_free_deliveries": referred_granted,
                "referrer_reward_type": "free_deliveries" if referrer_granted else "none",
                "referrer_free_deliveries": referrer_granted,
            }
        )

    insert_referral_history(conn, history)

    logger.info("processed %s referral: %s -> %s", referral_type, referrer_id, new_user_id)
    return {
        "success": True,
        "message": "Referral processed successfully",
        "referral_type": referral_type,
        "referrer_id": referrer_id,
        "referred_free_deliveries": referred_granted,
        "referrer_free_deliveries": referrer_granted,
    }


# ---------
# farmer cashback (first sale)
# ---------

def apply_farmer_referral_cashback_db(farmer_id: int) -> Dict[str, Any]:
    """
    grant referral cashback once a referred farmer makes their first sale.
    the referrer gets the same capped amount only if they are a farmer too.
    """
    return _run_in_tx(_apply_farmer_cashback_in_tx, farmer_id)


def _apply_farmer_cashback_in_tx(conn: Connection, farmer_id: int) -> Dict[str, Any]:
    info = get_referral_info(conn, farmer_id, for_update=True)
    if info is None:
        return failure("not_found", "Farmer referral information not found")
    if info["referred_by"] is None:
        return failure("not_referred", "Farmer was not referred by anyone")
    if info["referral_status"] == COMPLETED:
        return failure("already_completed", "Referral cashback already applied")
    if to_money(info["total_earned_credit"]) >= MAX_LIFETIME_CASHBACK:
        return failure("cap_reached", "Farmer has reached maximum lifetime cashback")

    # 1) farmer
    updates, cashback = grant_cashback(info)
    update_referral_info(
        conn,
        farmer_id,
        referral_status=next_status(info["referral_status"], COMPLETED),
        **updates,
    )

    # 2) referrer, independently capped
    referrer_id = info["referred_by"]
    referrer_cashback = to_money(0)
    referrer = get_referral_info(conn, referrer_id, for_update=True)
    if referrer is not None and referrer["role"] == FARMER:
        updates, referrer_cashback = grant_cashback(referrer)
        if referrer_cashback > 0:
            update_referral_info(conn, referrer_id, **updates)

    # 3) history
    history = get_referral_history(conn, referrer_id, farmer_id, for_update=True)
    if history is not None:
        update_referral_history(
            conn,
            history["id"],
            status=COMPLETED,
            referred_reward_type="cashback",
            referred_reward_amount=cashback,
            referrer_reward_type="cashback" if referrer_cashback > 0 else "none",
            referrer_reward_amount=referrer_cashback,
            qualification_event="first_sale",
            qualification_date=datetime.now(timezone.utc),
        )

    logger.info("applied farmer referral cashback %s to %s (referrer %s: %s)", cashback, farmer_id, referrer_id, referrer_cashback)
    return {
        "success": True,
        "message": f"Cashback of ${cashback} applied successfully",
        "cashback_amount": cashback,
        "referrer_cashback_amount": referrer_cashback,
    }


# ---------
# free deliveries
# ---------

def apply_free_delivery_if_available_db(order_id: int, user_id: int) -> Dict[str, Any]:
    """
    spend one free delivery on an order, if the user has any.
    having none is a normal outcome (success, free_delivery_applied=False).
    """
    if not order_id or not user_id:
        return {"success": False, "free_delivery_applied": False, "reason": "invalid_request",
                "message": "Invalid order or user ID"}

    with get_conn() as conn:
        try:
            result = _apply_free_delivery_in_tx(conn, order_id, user_id)
            if result["free_delivery_applied"]:
                conn.commit()
            else:
                conn.rollback()
            return result
        except Exception:
            conn.rollback()
            raise


def _apply_free_delivery_in_tx(conn: Connection, order_id: int, user_id: int) -> Dict[str, Any]:
    info = get_referral_info(conn, user_id, for_update=True)
    if info is None or info["free_deliveries_remaining"] <= 0:
        return {"success": True, "free_delivery_applied": False, "message": "No free deliveries available"}

    order = get_order(conn, order_id, for_update=True)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    if order["free_delivery_applied"]:
        return {
            "success": True,
            "free_delivery_applied": False,
            "message": "Free delivery already applied to this order",
            "remaining": info["free_deliveries_remaining"],
        }

    # already priced: the credit is only spent if there is a fee left to waive
    charges = get_order_charges(conn, order_id)
    if charges is not None and charges["customer_delivery_fee"] <= 0:
        return {
            "success": True,
            "free_delivery_applied": False,
            "message": "Order has no delivery fee to waive",
            "remaining": info["free_deliveries_remaining"],
        }

    remaining = info["free_deliveries_remaining"] - 1
    update_referral_info(conn, user_id, free_deliveries_remaining=remaining)
    set_order_free_delivery(conn, order_id)
    if charges is not None:
        waive_order_charges_delivery_fee(conn, order_id)

    logger.info("applied free delivery to order %s for user %s, %d remaining", order_id, user_id, remaining)
    return {
        "success": True,
        "free_delivery_applied": True,
        "message": "Free delivery applied successfully",
        "remaining": remaining,
    }


# ---------
# stats (read-only projection)
# ---------

def get_referral_stats_db(user_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        info = get_referral_info(conn, user_id)
        if info is None:
            return failure("not_found", "Referral information not found")
        referred = get_referred_users(conn, user_id)

    referred_users = [
        {
            "id": r["user_id"],
            "name": f"{r['first_name'] or ''} {r['last_name'] or ''}".strip() or "Unknown User",
            "role": r["role"],
            "referral_date": r["created_at"],
            "status": r["status"],
            "reward_type": r["referrer_reward_type"],
            "reward_amount": r["referrer_reward_amount"],
            "free_deliveries": r["referrer_free_deliveries"],
        }
        for r in referred
    ]

    return {
        "success": True,
        "referral_info": {
            "farmer_referral_code": info["farmer_referral_code"],
            "customer_referral_code": info["customer_referral_code"],
            "remaining_credit": info["remaining_credit"],
            "total_earned_credit": info["total_earned_credit"],
            "free_deliveries_remaining": info["free_deliveries_remaining"],
            "total_free_deliveries": info["total_free_deliveries"],
            "referral_status": info["referral_status"],
            "referred_by": info["referred_by"],
        },
        "stats": {
            "total_referrals": len(referred),
            "farmer_referrals": sum(1 for r in referred if r["role"] == FARMER),
            "customer_referrals": sum(1 for r in referred if r["role"] == CONSUMER),
            "pending_referrals": sum(1 for r in referred if r["status"] == PENDING),
        },
        "referred_users": referred_users,
    }
