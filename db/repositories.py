from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Tuple, Dict, Any, List

from psycopg import Connection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from commission_engine import CommissionConfiguration
from compensation_engine import CompensationConfiguration
from errors import ConfigurationNotFound
from pricing_engine import PricingConfiguration


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lock(for_update: bool) -> str:
    return " FOR UPDATE" if for_update else ""


def _fetch_one(conn: Connection, sql: str, params=()) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params)
        return cur.fetchone()


def _fetch_all(conn: Connection, sql: str, params=()) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params)
        return cur.fetchall()


def _update_columns(
    conn: Connection,
    table: str,
    row_id: int,
    fields: Dict[str, Any],
    allowed: set,
    key: str = "id",
) -> None:
    """
    UPDATE a whitelisted set of columns on one row; fails if the row is gone.
    """
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"cannot update {table} columns: {sorted(unknown)}")
    if not fields:
        return

    columns = sorted(fields)
    assignments = ", ".join(f"{col} = %s" for col in columns)
    params = [fields[col] for col in columns] + [row_id]
    with conn.cursor() as cur:
        cur.execute(
            f"UPDATE {table} SET {assignments}, updated_at = NOW() WHERE {key} = %s",
            params,
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to update {table} row {row_id}")


# ---------
# active configurations
# ---------

ACTIVE_AT = """
    is_active = TRUE
    AND effective_date <= %(now)s
    AND (expiration_date IS NULL OR expiration_date > %(now)s)
"""


def get_active_pricing_config(conn: Connection, now: Optional[datetime] = None) -> PricingConfiguration:
    row = _fetch_one(
        conn,
        f"""
        SELECT id, name, effective_date, expiration_date, is_active,
               platform_fee_rate, payment_processing_fee_rate,
               delivery_fee_flat, free_delivery_threshold
        FROM pricing_configurations
        WHERE {ACTIVE_AT}
        ORDER BY effective_date DESC
        LIMIT 1
        """,
        {"now": now or _now()},
    )
    if row is None:
        raise ConfigurationNotFound("No active pricing configuration found")
    return PricingConfiguration(**row)


def get_active_compensation_config(conn: Connection, now: Optional[datetime] = None) -> CompensationConfiguration:
    row = _fetch_one(
        conn,
        f"""
        SELECT *
        FROM compensation_configurations
        WHERE {ACTIVE_AT}
        ORDER BY effective_date DESC
        LIMIT 1
        """,
        {"now": now or _now()},
    )
    if row is None:
        raise ConfigurationNotFound("No active driver compensation configuration found")

    milestones = []
    for n in (1, 2, 3):
        months = row.pop(f"retention_milestone{n}_months")
        bonus = row.pop(f"retention_milestone{n}_bonus")
        if months is not None and bonus is not None:
            milestones.append((months, bonus))
    row["retention_milestones"] = tuple(milestones)
    return CompensationConfiguration(**row)


def get_active_commission_config(conn: Connection, now: Optional[datetime] = None) -> Optional[CommissionConfiguration]:
    """versioned platform commission rate, or None if the table has no active row."""
    row = _fetch_one(
        conn,
        f"""
        SELECT id, rate, effective_date, expiration_date, is_active
        FROM commission_configurations
        WHERE {ACTIVE_AT}
        ORDER BY effective_date DESC
        LIMIT 1
        """,
        {"now": now or _now()},
    )
    return CommissionConfiguration(**row) if row else None


# ---------
# users
# ---------

def get_user(conn: Connection, user_id: int) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        """
        SELECT id, email, first_name, last_name, role, stripe_account_id, created_at
        FROM users WHERE id = %s
        """,
        (user_id,),
    )


def set_user_stripe_account(conn: Connection, user_id: int, account_id: str) -> None:
    _update_columns(conn, "users", user_id, {"stripe_account_id": account_id}, {"stripe_account_id"})


# ---------
# orders and charges
# ---------

def get_order(conn: Connection, order_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        "SELECT id, user_id, status, payment_status, delivery_fee, free_delivery_applied "
        "FROM orders WHERE id = %s" + _lock(for_update),
        (order_id,),
    )


def get_order_items(conn: Connection, order_id: int) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        """
        SELECT oi.id, oi.farm_id, f.owner_id AS farmer_id, f.name AS farm_name,
               oi.product_id, oi.product_name, oi.quantity, oi.price, oi.subtotal
        FROM order_items oi
        JOIN farms f ON f.id = oi.farm_id
        WHERE oi.order_id = %s
        ORDER BY oi.id
        """,
        (order_id,),
    )


def set_order_free_delivery(conn: Connection, order_id: int) -> None:
    _update_columns(
        conn,
        "orders",
        order_id,
        {"delivery_fee": Decimal("0"), "free_delivery_applied": True, "free_delivery_source": "referral"},
        {"delivery_fee", "free_delivery_applied", "free_delivery_source"},
    )


def set_order_payment_status(conn: Connection, order_id: int, status: str) -> None:
    _update_columns(conn, "orders", order_id, {"payment_status": status}, {"payment_status"})


ORDER_CHARGE_COLUMNS = (
    "order_id",
    "pricing_config_id",
    "product_subtotal",
    "customer_delivery_fee",
    "customer_platform_fee",
    "payment_processing_fee",
    "gst_amount",
    "pst_amount",
    "tax_amount",
    "final_total",
    "free_delivery_applied",
    "tax_jurisdiction",
)


def insert_order_charges(conn: Connection, charges: Dict[str, Any]) -> Tuple[Optional[int], bool]:
    """
    insert charges once per order.
    returns (charge_id, created: bool); created is False when the order already has charges.
    """
    cols = ", ".join(ORDER_CHARGE_COLUMNS)
    placeholders = ", ".join(["%s"] * len(ORDER_CHARGE_COLUMNS))
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO order_charges ({cols})
            VALUES ({placeholders})
            ON CONFLICT (order_id) DO NOTHING
            RETURNING id
            """,
            tuple(charges.get(c) for c in ORDER_CHARGE_COLUMNS),
        )
        row = cur.fetchone()
        if row is None:
            cur.execute("SELECT id FROM order_charges WHERE order_id = %s", (charges["order_id"],))
            existing = cur.fetchone()
            return (existing[0] if existing else None, False)
        return (row[0], True)


def get_order_charges(conn: Connection, order_id: int) -> Optional[Dict[str, Any]]:
    cols = ", ".join(ORDER_CHARGE_COLUMNS)
    return _fetch_one(
        conn,
        f"SELECT id, {cols}, created_at FROM order_charges WHERE order_id = %s",
        (order_id,),
    )


def waive_order_charges_delivery_fee(conn: Connection, order_id: int) -> Optional[Dict[str, Any]]:
    """restate saved charges with the delivery fee waived; the fee comes off the total."""
    cols = ", ".join(ORDER_CHARGE_COLUMNS)
    return _fetch_one(
        conn,
        f"""
        UPDATE order_charges
        SET final_total = final_total - customer_delivery_fee,
            customer_delivery_fee = 0,
            free_delivery_applied = TRUE
        WHERE order_id = %s
        RETURNING id, {cols}, created_at
        """,
        (order_id,),
    )


# ---------
# farmer payments / payouts
# ---------

def farmer_payments_exist(conn: Connection, order_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM farmer_payments WHERE order_id = %s LIMIT 1", (order_id,))
        return cur.fetchone() is not None


def insert_farmer_payment(conn: Connection, order_id: int, farm: Dict[str, Any]) -> Dict[str, Any]:
    details = {
        "items": [
            {
                "product_id": i["product_id"],
                "product_name": i["product_name"],
                "quantity": i["quantity"],
                "price": str(i["price"]),
                "subtotal": str(i["subtotal"]),
                "commission": str(i["commission"]),
            }
            for i in farm["items"]
        ]
    }
    return _fetch_one(
        conn,
        """
        INSERT INTO farmer_payments
            (order_id, farmer_id, farm_id, farm_name, amount, commission, commission_rate, details)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, order_id, farmer_id, farm_id, amount, commission, commission_rate, is_paid
        """,
        (
            order_id,
            farm["farmer_id"],
            farm["farm_id"],
            farm["farm_name"],
            farm["amount"],
            farm["commission"],
            farm["commission_rate"],
            Jsonb(details),
        ),
    )


def get_unpaid_farmer_ids(conn: Connection) -> List[int]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT farmer_id
            FROM farmer_payments
            WHERE is_paid = FALSE
            GROUP BY farmer_id
            ORDER BY MIN(created_at)
            """
        )
        return [r[0] for r in cur.fetchall()]


def lock_unpaid_farmer_payments(conn: Connection, farmer_id: int) -> List[Dict[str, Any]]:
    """
    claim a farmer's unpaid payments for this transaction.
    SKIP LOCKED keeps a concurrent payout run from seeing rows we already hold.
    """
    return _fetch_all(
        conn,
        """
        SELECT id, order_id, farmer_id, farm_name, amount, commission
        FROM farmer_payments
        WHERE farmer_id = %s AND is_paid = FALSE
        ORDER BY created_at
        FOR UPDATE SKIP LOCKED
        """,
        (farmer_id,),
    )


def insert_farmer_payout(
    conn: Connection,
    farmer_id: int,
    farm_name: Optional[str],
    plan: Dict[str, Any],
    payment_method: str,
    payment_reference: str,
) -> Dict[str, Any]:
    return _fetch_one(
        conn,
        """
        INSERT INTO farmer_payouts
            (farmer_id, farm_name, amount, original_amount, credit_applied,
             status, payment_method, payment_reference)
        VALUES (%s, %s, %s, %s, %s, 'pending', %s, %s)
        RETURNING id, farmer_id, farm_name, amount, original_amount, credit_applied,
                  status, payment_method, payment_reference, created_at
        """,
        (
            farmer_id,
            farm_name,
            plan["amount"],
            plan["original_amount"],
            plan["credit_applied"],
            payment_method,
            payment_reference,
        ),
    )


def mark_farmer_payments_paid(conn: Connection, payment_ids: List[int], payout_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE farmer_payments
            SET is_paid = TRUE, payout_id = %s
            WHERE id = ANY(%s) AND is_paid = FALSE
            """,
            (payout_id, payment_ids),
        )
        if cur.rowcount != len(payment_ids):
            raise ValueError(f"Failed to mark payments {payment_ids} paid for payout {payout_id}")


def get_farmer_payout(conn: Connection, payout_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        "SELECT * FROM farmer_payouts WHERE id = %s" + _lock(for_update),
        (payout_id,),
    )


def update_farmer_payout_status(
    conn: Connection,
    payout_id: int,
    status: str,
    failure_reason: Optional[str] = None,
) -> None:
    fields = {"status": status}
    if status in ("completed", "failed"):
        fields["processed_at"] = _now()
    if failure_reason is not None:
        fields["failure_reason"] = failure_reason
    _update_columns(
        conn, "farmer_payouts", payout_id, fields, {"status", "processed_at", "failure_reason"}
    )


# ---------
# driver activity and earnings
# ---------

def get_completed_batches(conn: Connection, driver_id: int, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        """
        SELECT id, completed_at, actual_duration, delivery_count, total_distance
        FROM delivery_batches
        WHERE driver_id = %s
          AND status = 'completed'
          AND completed_at >= %s
          AND completed_at <= %s
        ORDER BY completed_at
        """,
        (driver_id, start, end),
    )


def get_average_rating(conn: Connection, driver_id: int, start: datetime, end: datetime) -> Optional[Decimal]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT AVG(rating)
            FROM delivery_ratings
            WHERE driver_id = %s AND created_at >= %s AND created_at <= %s
            """,
            (driver_id, start, end),
        )
        row = cur.fetchone()
        return row[0] if row else None


EARNINGS_COLUMNS = (
    "driver_id",
    "config_id",
    "pay_period_start",
    "pay_period_end",
    "hours_worked",
    "deliveries_completed",
    "distance_driven",
    "base_hourly_pay",
    "delivery_bonus_amount",
    "mileage_amount",
    "efficiency_bonus_amount",
    "batch_bonus_amount",
    "satisfaction_bonus_amount",
    "retention_bonus_amount",
    "special_condition_amount",
    "total_earnings",
)


def insert_driver_earnings(conn: Connection, earnings: Dict[str, Any]) -> Dict[str, Any]:
    cols = ", ".join(EARNINGS_COLUMNS)
    placeholders = ", ".join(["%s"] * len(EARNINGS_COLUMNS))
    return _fetch_one(
        conn,
        f"""
        INSERT INTO driver_earnings ({cols})
        VALUES ({placeholders})
        RETURNING *
        """,
        tuple(earnings.get(c) for c in EARNINGS_COLUMNS),
    )


def get_driver_earnings(conn: Connection, earnings_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        "SELECT * FROM driver_earnings WHERE id = %s" + _lock(for_update),
        (earnings_id,),
    )


def mark_driver_earnings_paid(conn: Connection, earnings_id: int, payment_reference: str) -> Dict[str, Any]:
    row = _fetch_one(
        conn,
        """
        UPDATE driver_earnings
        SET is_paid = TRUE, payment_date = NOW(), payment_reference = %s
        WHERE id = %s AND is_paid = FALSE
        RETURNING *
        """,
        (payment_reference, earnings_id),
    )
    if row is None:
        raise ValueError(f"Failed to mark earnings {earnings_id} paid")
    return row


# ---------
# referral info / history
# ---------

REFERRAL_INFO_COLUMNS = {
    "referred_by",
    "referral_type",
    "referral_status",
    "remaining_credit",
    "total_earned_credit",
    "free_deliveries_remaining",
    "total_free_deliveries",
}


def get_referral_info(conn: Connection, user_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        """
        SELECT ri.*, u.role
        FROM referral_info ri
        JOIN users u ON u.id = ri.user_id
        WHERE ri.user_id = %s
        """ + (" FOR UPDATE OF ri" if for_update else ""),
        (user_id,),
    )


def get_referral_info_by_code(conn: Connection, referral_code: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
    """resolve a referrer from either of a user's two code slots."""
    return _fetch_one(
        conn,
        """
        SELECT ri.*, u.role
        FROM referral_info ri
        JOIN users u ON u.id = ri.user_id
        WHERE ri.farmer_referral_code = %s OR ri.customer_referral_code = %s
        """ + (" FOR UPDATE OF ri" if for_update else ""),
        (referral_code, referral_code),
    )


def referral_code_exists(conn: Connection, code: str) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM referral_info WHERE farmer_referral_code = %s OR customer_referral_code = %s",
            (code, code),
        )
        return cur.fetchone() is not None


def insert_referral_info(
    conn: Connection,
    user_id: int,
    farmer_code: str,
    customer_code: str,
    referral_status: str = "pending",
) -> Dict[str, Any]:
    row = _fetch_one(
        conn,
        """
        INSERT INTO referral_info
            (user_id, farmer_referral_code, customer_referral_code, referral_status)
        VALUES (%s, %s, %s, %s)
        RETURNING id
        """,
        (user_id, farmer_code, customer_code, referral_status),
    )
    return get_referral_info(conn, user_id, for_update=True) if row else None


def update_referral_info(conn: Connection, user_id: int, **fields) -> None:
    _update_columns(conn, "referral_info", user_id, fields, REFERRAL_INFO_COLUMNS, key="user_id")


def insert_referral_history(conn: Connection, history: Dict[str, Any]) -> int:
    columns = (
        "referrer_id",
        "referred_id",
        "referral_code",
        "referral_type",
        "status",
        "referrer_reward_type",
        "referrer_reward_amount",
        "referrer_free_deliveries",
        "referred_reward_type",
        "referred_reward_amount",
        "referred_free_deliveries",
    )
    defaults = {
        "status": "pending",
        "referrer_reward_type": "none",
        "referrer_reward_amount": Decimal("0"),
        "referrer_free_deliveries": 0,
        "referred_reward_type": "none",
        "referred_reward_amount": Decimal("0"),
        "referred_free_deliveries": 0,
    }
    values = {**defaults, **history}
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO referral_history ({", ".join(columns)})
            VALUES ({", ".join(["%s"] * len(columns))})
            RETURNING id
            """,
            tuple(values[c] for c in columns),
        )
        return cur.fetchone()[0]


def get_referral_history(conn: Connection, referrer_id: int, referred_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        """
        SELECT * FROM referral_history
        WHERE referrer_id = %s AND referred_id = %s
        ORDER BY created_at DESC
        LIMIT 1
        """ + _lock(for_update),
        (referrer_id, referred_id),
    )


def update_referral_history(conn: Connection, history_id: int, **fields) -> None:
    _update_columns(
        conn,
        "referral_history",
        history_id,
        fields,
        {
            "status",
            "referrer_reward_type",
            "referrer_reward_amount",
            "referrer_free_deliveries",
            "referred_reward_type",
            "referred_reward_amount",
            "referred_free_deliveries",
            "qualification_event",
            "qualification_date",
        },
    )


def get_referred_users(conn: Connection, referrer_id: int) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        """
        SELECT rh.id, rh.referral_type, rh.status, rh.referrer_reward_type,
               rh.referrer_reward_amount, rh.referrer_free_deliveries, rh.created_at,
               u.id AS user_id, u.first_name, u.last_name, u.role
        FROM referral_history rh
        JOIN users u ON u.id = rh.referred_id
        WHERE rh.referrer_id = %s
        ORDER BY rh.created_at DESC
        """,
        (referrer_id,),
    )
