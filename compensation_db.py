import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import Connection
from psycopg.errors import UniqueViolation

from compensation_engine import ComponentFn, DriverCompensationEngine
from db.db import get_conn
from db.repositories import (
    get_active_compensation_config,
    get_average_rating,
    get_completed_batches,
    get_driver_earnings,
    get_user,
    insert_driver_earnings,
    mark_driver_earnings_paid,
    set_user_stripe_account,
)
from errors import AlreadyCompleted, AlreadyPaid, NotFound, ProviderError
from money import to_minor_units
from payment_provider import get_payment_provider
from settings import get_settings

logger = logging.getLogger(__name__)

MANUAL_REFERENCE = "manual"


def _compensation_engine(conn: Connection, components: Optional[Dict[str, ComponentFn]] = None) -> DriverCompensationEngine:
    return DriverCompensationEngine(
        get_config=partial(get_active_compensation_config, conn),
        get_driver=partial(get_user, conn),
        get_completed_batches=partial(get_completed_batches, conn),
        get_average_rating=partial(get_average_rating, conn),
        components=components,
        timezone_name=get_settings().local_timezone,
    )


def calculate_period_earnings_db(
    driver_id: int,
    start_date: datetime,
    end_date: datetime,
    components: Optional[Dict[str, ComponentFn]] = None,
) -> Dict[str, Any]:
    """draft earnings for a pay period; nothing is written."""
    with get_conn() as conn:
        return _compensation_engine(conn, components).calculate_period_earnings(driver_id, start_date, end_date)


def estimate_delivery_earnings_db(
    order_id,
    driver_id: int,
    distance_km,
    time_minutes,
    flags: Optional[Dict[str, bool]] = None,
) -> Dict[str, Any]:
    with get_conn() as conn:
        return _compensation_engine(conn).estimate_delivery_earnings(
            order_id, driver_id, distance_km, time_minutes, flags
        )


def save_driver_earnings_db(earnings: Dict[str, Any]) -> Dict[str, Any]:
    """persist a draft earnings record; one row per driver per pay period."""
    with get_conn() as conn:
        try:
            row = insert_driver_earnings(conn, earnings)
            conn.commit()
        except UniqueViolation:
            conn.rollback()
            raise AlreadyCompleted(
                f"Earnings for driver {earnings['driver_id']} already recorded for this pay period"
            )
        except Exception:
            conn.rollback()
            raise

    logger.info("saved earnings %s for driver %s: %s", row["id"], row["driver_id"], row["total_earnings"])
    return row


# ---------
# payment
# ---------

def process_driver_payment_db(earnings_id: int, payment_reference: str, provider=None) -> Dict[str, Any]:
    """
    pay one earnings record.

    'manual' marks it paid without calling the provider. otherwise the transfer must
    succeed before the record is marked paid; a provider error leaves it unpaid.
    the earnings row stays locked for the whole call so it can't be paid twice.
    """
    with get_conn() as conn:
        try:
            result = _process_driver_payment_in_tx(conn, earnings_id, payment_reference, provider)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise


def _process_driver_payment_in_tx(conn: Connection, earnings_id: int, payment_reference: str, provider) -> Dict[str, Any]:
    earnings = get_driver_earnings(conn, earnings_id, for_update=True)
    if earnings is None:
        raise NotFound(f"Earnings record not found: {earnings_id}")
    if earnings["is_paid"]:
        raise AlreadyPaid(f"Earnings record already paid: {earnings_id}")

    driver = get_user(conn, earnings["driver_id"])
    if driver is None:
        raise NotFound(f"Driver not found: {earnings['driver_id']}")

    if payment_reference == MANUAL_REFERENCE:
        reference = f"MANUAL-{datetime.now(timezone.utc).date().isoformat()}"
        row = mark_driver_earnings_paid(conn, earnings_id, reference)
        logger.info("marked earnings %s paid manually", earnings_id)
        return row

    if not driver.get("stripe_account_id"):
        raise NotFound(f"Driver has no payout account: {earnings['driver_id']}")

    provider = provider or get_payment_provider()
    start = earnings["pay_period_start"].date().isoformat()
    end = earnings["pay_period_end"].date().isoformat()

    # the transfer is keyed on the earnings id: if the commit below fails, paying the
    # record again gets the same transfer back from the provider and only marks it paid
    transfer = provider.transfer(
        to_minor_units(earnings["total_earnings"]),
        get_settings().currency,
        driver["stripe_account_id"],
        metadata={
            "driver_id": earnings["driver_id"],
            "earnings_id": earnings_id,
            "pay_period_start": start,
            "pay_period_end": end,
        },
        description=f"FreshFarmily Driver Payment: {start} - {end}",
        idempotency_key=f"driver-earnings-{earnings_id}",
    )

    row = mark_driver_earnings_paid(conn, earnings_id, transfer["id"])
    logger.info("paid earnings %s to driver %s: %s", earnings_id, earnings["driver_id"], transfer["id"])
    return row


def process_driver_payments_db(earnings_ids: List[int], payment_reference: str = None, provider=None) -> Dict[str, Any]:
    """
    pay several earnings records one at a time. each record commits on its own;
    failures are reported per item and don't stop the rest.
    """
    provider = provider or (None if payment_reference == MANUAL_REFERENCE else get_payment_provider())
    results = []

    for earnings_id in earnings_ids:
        try:
            row = process_driver_payment_db(earnings_id, payment_reference, provider)
        except (ValueError, ProviderError, psycopg.Error) as e:
            logger.error("driver payment for earnings %s failed: %s", earnings_id, e)
            results.append({"earnings_id": earnings_id, "status": "failed", "error": str(e)})
            continue

        results.append(
            {
                "earnings_id": earnings_id,
                "driver_id": row["driver_id"],
                "amount": row["total_earnings"],
                "payment_reference": row["payment_reference"],
                "status": "success",
            }
        )

    failed = sum(1 for r in results if r["status"] == "failed")
    return {
        "success": failed == 0,
        "processed_count": len(results) - failed,
        "failed_count": failed,
        "payments": results,
    }


def create_driver_connect_account_db(driver_id: int, country: str = "CA", provider=None) -> Dict[str, Any]:
    """open a connected payout account for a driver and remember its id."""
    with get_conn() as conn:
        try:
            driver = get_user(conn, driver_id)
            if driver is None:
                raise NotFound(f"Driver not found: {driver_id}")

            provider = provider or get_payment_provider()
            account = provider.create_connect_account(
                driver["email"],
                first_name=driver.get("first_name") or "",
                last_name=driver.get("last_name") or "",
                country=country,
                metadata={"driver_id": driver_id},
            )
            set_user_stripe_account(conn, driver_id, account["account_id"])
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("created connect account %s for driver %s", account["account_id"], driver_id)
    return {"success": True, **account}
