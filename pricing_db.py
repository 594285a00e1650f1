import logging
from functools import partial
from typing import Any, Callable, Dict, Optional

from psycopg import Connection

from commission_engine import split_by_farm, platform_commission_total
from db.db import get_conn
from db.repositories import (
    farmer_payments_exist,
    get_active_commission_config,
    get_active_pricing_config,
    get_order,
    get_order_charges,
    get_order_items,
    get_referral_info,
    insert_farmer_payment,
    insert_order_charges,
    set_order_payment_status,
)
from errors import AlreadyCompleted, LedgerError, NotFound
from money import round_money
from pricing_engine import PricingEngine, customer_summary
from referral_db import _apply_free_delivery_in_tx
from settings import get_settings

logger = logging.getLogger(__name__)


def _has_free_delivery(conn: Connection, user_id) -> bool:
    info = get_referral_info(conn, user_id)
    return bool(info) and info["free_deliveries_remaining"] > 0


def _pricing_engine(conn: Connection, has_free_delivery: Optional[Callable[[Any], bool]] = None) -> PricingEngine:
    return PricingEngine(
        get_config=partial(get_active_pricing_config, conn),
        has_free_delivery=has_free_delivery or partial(_has_free_delivery, conn),
        default_jurisdiction=get_settings().default_tax_jurisdiction,
    )


def calculate_order_charges_db(
    order: Dict[str, Any],
    user_id=None,
    delivery_details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    price an order draft against the active configuration. nothing is written.

    the free-delivery check only looks at the user's balance here; the credit is
    spent when the charges are saved.
    """
    with get_conn() as conn:
        return _pricing_engine(conn).calculate_order_charges(order, user_id, delivery_details)


def save_order_charges_db(charges: Dict[str, Any]) -> Dict[str, Any]:
    """
    persist charges for an order; an order is charged once.
    charges priced with a referral free delivery spend the credit in the same transaction.
    """
    with get_conn() as conn:
        try:
            order = get_order(conn, charges["order_id"], for_update=True)
            if order is None:
                raise NotFound(f"Order {charges['order_id']} not found")

            if charges.get("free_delivery_applied") and not order["free_delivery_applied"]:
                spent = _apply_free_delivery_in_tx(conn, order["id"], order["user_id"])
                if not spent["free_delivery_applied"]:
                    raise LedgerError(f"Free delivery is no longer available for order {order['id']}")

            charge_id, created = insert_order_charges(conn, charges)
            if not created:
                raise AlreadyCompleted(f"Order {charges['order_id']} already has charges ({charge_id})")
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("saved charges %s for order %s: total %s", charge_id, charges["order_id"], charges["final_total"])
    return {**charges, "id": charge_id}


def price_order_db(order_id: int, delivery_details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    price a stored order from its items and save the charges in one transaction.

    the delivery fee is waived only when a referral free delivery has already been
    spent on this order (apply_free_delivery_if_available_db).
    """
    with get_conn() as conn:
        try:
            order = get_order(conn, order_id, for_update=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found")

            items = get_order_items(conn, order_id)
            engine = _pricing_engine(conn, has_free_delivery=lambda _user_id: bool(order["free_delivery_applied"]))
            charges = engine.calculate_order_charges(
                {"id": order_id, "items": items},
                order["user_id"],
                delivery_details,
            )

            charge_id, created = insert_order_charges(conn, charges)
            if not created:
                raise AlreadyCompleted(f"Order {order_id} already has charges ({charge_id})")

            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("priced order %s: total %s", order_id, charges["final_total"])
    return {**charges, "id": charge_id}


def get_customer_order_summary_db(order_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        charges = get_order_charges(conn, order_id)
    if charges is None:
        raise NotFound(f"Charges for order {order_id} not found")
    return customer_summary(charges)


def get_detailed_order_charges_db(order_id: int) -> Dict[str, Any]:
    with get_conn() as conn:
        charges = get_order_charges(conn, order_id)
    if charges is None:
        raise NotFound(f"Charges for order {order_id} not found")
    return charges


def record_order_payment_db(order_id: int) -> Dict[str, Any]:
    """
    payment succeeded for an order: write one farmer payment per farm and flip the
    order's payment status, all in one transaction.
    """
    with get_conn() as conn:
        try:
            result = _record_order_payment_in_tx(conn, order_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(
        "recorded payment for order %s: %d farmer payments, platform commission %s",
        order_id,
        len(result["farmer_payments"]),
        result["platform_commission"],
    )
    return result


def _record_order_payment_in_tx(conn: Connection, order_id: int) -> Dict[str, Any]:
    # 1) lock the order so two payment callbacks can't both write payments
    order = get_order(conn, order_id, for_update=True)
    if order is None:
        raise NotFound(f"Order {order_id} not found")

    if farmer_payments_exist(conn, order_id):
        raise AlreadyCompleted(f"Farmer payments already recorded for order {order_id}")

    # 2) commission rate in force now (stored on each payment row)
    commission_config = get_active_commission_config(conn)
    if commission_config is not None:
        rate = commission_config.rate
    else:
        rate = get_settings().platform_commission_rate

    # 3) split and persist per farm
    items = get_order_items(conn, order_id)
    if not items:
        raise NotFound(f"Order {order_id} has no items")

    split = split_by_farm(items, rate)
    payments = [insert_farmer_payment(conn, order_id, farm) for farm in split.values()]

    set_order_payment_status(conn, order_id, "succeeded")

    return {
        "order_id": order_id,
        "commission_rate": rate,
        "platform_commission": round_money(platform_commission_total(split)),
        "farmer_payments": payments,
    }
