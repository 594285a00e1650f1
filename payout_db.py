import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

import psycopg
from psycopg import Connection

from db.db import get_conn
from db.repositories import (
    get_farmer_payout,
    get_referral_info,
    get_unpaid_farmer_ids,
    insert_farmer_payout,
    lock_unpaid_farmer_payments,
    mark_farmer_payments_paid,
    update_farmer_payout_status,
    update_referral_info,
)
from errors import NotFound
from payout_engine import check_payout_transition, payout_reference, plan_farmer_payout
from settings import get_settings

logger = logging.getLogger(__name__)


def process_weekly_payouts_db(run_date: Optional[date] = None) -> Dict[str, Any]:
    """
    batch every farmer's unpaid payments into one payout per farmer.

    each farmer is its own transaction: claim their unpaid rows, spend referral
    credit against the commission, write the payout, mark the rows paid, commit.
    a farmer that fails is rolled back and reported; farmers already committed stay
    committed and the run moves on.
    """
    run_date = run_date or datetime.now(timezone.utc).date()
    payouts = []
    failures = []

    with get_conn() as conn:
        farmer_ids = get_unpaid_farmer_ids(conn)
        conn.commit()

        for farmer_id in farmer_ids:
            try:
                payout = _process_farmer_payout_in_tx(conn, farmer_id, run_date)
                conn.commit()
            except (ValueError, psycopg.Error) as e:
                conn.rollback()
                logger.error("payout for farmer %s failed and was rolled back: %s", farmer_id, e)
                failures.append({"farmer_id": farmer_id, "error": str(e)})
                continue

            if payout is not None:
                payouts.append(payout)

    logger.info("processed %d farmer payouts (%d failed)", len(payouts), len(failures))
    return {
        "success": not failures,
        "payout_count": len(payouts),
        "payouts": payouts,
        "failures": failures,
    }


def _process_farmer_payout_in_tx(conn: Connection, farmer_id: int, run_date: date) -> Optional[Dict[str, Any]]:
    # 1) claim unpaid rows; empty means a concurrent run already holds them
    payments = lock_unpaid_farmer_payments(conn, farmer_id)
    if not payments:
        return None

    # 2) referral credit, read and written under the same lock
    info = get_referral_info(conn, farmer_id, for_update=True)
    remaining_credit = info["remaining_credit"] if info else 0

    plan = plan_farmer_payout(payments, remaining_credit)
    if plan["credit_applied"] > 0:
        update_referral_info(conn, farmer_id, remaining_credit=plan["remaining_credit_after"])

    # 3) payout + mark payments
    payout = insert_farmer_payout(
        conn,
        farmer_id,
        payments[0].get("farm_name"),
        plan,
        payment_method=get_settings().payout_payment_method,
        payment_reference=payout_reference(farmer_id, run_date),
    )
    mark_farmer_payments_paid(conn, plan["payment_ids"], payout["id"])

    logger.info(
        "payout %s for farmer %s: %s (+%s credit) over %d payments",
        payout["id"],
        farmer_id,
        plan["original_amount"],
        plan["credit_applied"],
        len(payments),
    )
    return {**payout, "payment_count": len(payments)}


def update_payout_status_db(payout_id: int, status: str, failure_reason: Optional[str] = None) -> Dict[str, Any]:
    """move a payout along pending -> processing -> completed | failed."""
    with get_conn() as conn:
        try:
            payout = get_farmer_payout(conn, payout_id, for_update=True)
            if payout is None:
                raise NotFound(f"Payout {payout_id} not found")

            check_payout_transition(payout["status"], status)
            update_farmer_payout_status(conn, payout_id, status, failure_reason)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("payout %s: %s -> %s", payout_id, payout["status"], status)
    return {"payout_id": payout_id, "previous_status": payout["status"], "status": status}
