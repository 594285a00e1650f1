import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from errors import NotFound
from money import ZERO, to_money, round_money

MINUTES_PER_HOUR = Decimal("60")

# local hours outside [DAY_START_HOUR, DAY_END_HOUR) count as after-hours
DAY_START_HOUR = 8
DAY_END_HOUR = 20

SPECIAL_CONDITION_FLAGS = (
    "is_weekend_holiday",
    "is_after_hours",
    "is_remote_area",
    "is_difficult_access",
)


@dataclass(frozen=True)
class CompensationConfiguration:
    id: Any
    name: str
    effective_date: datetime
    base_hourly_rate: Decimal
    delivery_completion_bonus: Decimal
    mileage_compensation: Decimal
    weekend_holiday_surcharge: Decimal = ZERO
    after_hours_surcharge: Decimal = ZERO
    remote_area_surcharge: Decimal = ZERO
    difficult_access_surcharge: Decimal = ZERO
    efficiency_threshold: Decimal = ZERO
    efficiency_bonus: Decimal = ZERO
    batch_delivery_threshold: int = 0
    batch_delivery_bonus: Decimal = ZERO
    satisfaction_rating_threshold: Decimal = ZERO
    satisfaction_weekly_bonus: Decimal = ZERO
    # ((months_of_service, bonus), ...)
    retention_milestones: Tuple[Tuple[int, Decimal], ...] = ()
    expiration_date: Optional[datetime] = None
    is_active: bool = True

    def is_effective_at(self, instant: datetime) -> bool:
        if not self.is_active or self.effective_date > instant:
            return False
        return self.expiration_date is None or self.expiration_date > instant


def _utc(ts: datetime) -> datetime:
    # naive timestamps (store rows, request dates without an offset) are UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _local(ts: datetime, tz: ZoneInfo) -> datetime:
    return _utc(ts).astimezone(tz)


def is_weekend(ts: datetime, tz: ZoneInfo) -> bool:
    return _local(ts, tz).weekday() >= 5


def is_after_hours(ts: datetime, tz: ZoneInfo) -> bool:
    hour = _local(ts, tz).hour
    return hour < DAY_START_HOUR or hour >= DAY_END_HOUR


def aggregate_batches(batches: Iterable[Dict[str, Any]], tz: ZoneInfo) -> Dict[str, Any]:
    """
    fold completed delivery batches into the activity totals pay is computed from.
    hours stay unrounded; `hours_worked` is the 2 dp display value.
    """
    minutes = ZERO
    deliveries = 0
    distance = ZERO
    batch_sizes: List[int] = []
    weekend = False
    after_hours = False

    for batch in batches:
        minutes += to_money(batch.get("actual_duration"))
        count = int(batch.get("delivery_count") or 0)
        deliveries += count
        batch_sizes.append(count)
        distance += to_money(batch.get("total_distance"))

        completed_at = batch["completed_at"]
        weekend = weekend or is_weekend(completed_at, tz)
        after_hours = after_hours or is_after_hours(completed_at, tz)

    hours = minutes / MINUTES_PER_HOUR
    return {
        "hours": hours,
        "hours_worked": round_money(hours),
        "deliveries": deliveries,
        "distance": distance,
        "batch_sizes": batch_sizes,
        "is_weekend_holiday": weekend,
        "is_after_hours": after_hours,
        "is_remote_area": False,
        "is_difficult_access": False,
    }


def add_months(ts: datetime, months: int) -> datetime:
    month_index = ts.month - 1 + months
    year = ts.year + month_index // 12
    month = month_index % 12 + 1
    day = min(ts.day, calendar.monthrange(year, month)[1])
    return ts.replace(year=year, month=month, day=day)


# ---------
# pay components: (activity, config) -> unrounded Decimal
# ---------

def hourly_pay(activity, config: CompensationConfiguration) -> Decimal:
    return to_money(activity["hours"]) * to_money(config.base_hourly_rate)


def delivery_bonus(activity, config: CompensationConfiguration) -> Decimal:
    return int(activity["deliveries"]) * to_money(config.delivery_completion_bonus)


def mileage(activity, config: CompensationConfiguration) -> Decimal:
    return to_money(activity["distance"]) * to_money(config.mileage_compensation)


def efficiency_bonus(activity, config: CompensationConfiguration) -> Decimal:
    """per-delivery bonus once deliveries-per-hour reaches the threshold."""
    hours = to_money(activity["hours"])
    threshold = to_money(config.efficiency_threshold)
    if hours <= 0 or threshold <= 0:
        return ZERO
    if Decimal(activity["deliveries"]) / hours < threshold:
        return ZERO
    return int(activity["deliveries"]) * to_money(config.efficiency_bonus)


def batch_bonus(activity, config: CompensationConfiguration) -> Decimal:
    """flat bonus per batch carrying at least the threshold number of deliveries."""
    threshold = int(config.batch_delivery_threshold or 0)
    if threshold <= 0:
        return ZERO
    qualifying = sum(1 for size in activity.get("batch_sizes", []) if size >= threshold)
    return qualifying * to_money(config.batch_delivery_bonus)


def satisfaction_bonus(activity, config: CompensationConfiguration) -> Decimal:
    rating = activity.get("average_rating")
    if rating is None:
        return ZERO
    if to_money(rating) < to_money(config.satisfaction_rating_threshold):
        return ZERO
    return to_money(config.satisfaction_weekly_bonus)


def retention_bonus(activity, config: CompensationConfiguration) -> Decimal:
    """milestone bonuses whose service anniversary falls inside the pay period."""
    started_at = activity.get("driver_started_at")
    start, end = activity.get("period_start"), activity.get("period_end")
    if started_at is None or start is None or end is None:
        return ZERO

    started_at, start, end = _utc(started_at), _utc(start), _utc(end)
    total = ZERO
    for months, bonus in config.retention_milestones:
        anniversary = add_months(started_at, int(months))
        if start <= anniversary <= end:
            total += to_money(bonus)
    return total


def special_conditions(activity, config: CompensationConfiguration) -> Decimal:
    total = ZERO
    if activity.get("is_weekend_holiday"):
        total += to_money(config.weekend_holiday_surcharge)
    if activity.get("is_after_hours"):
        total += to_money(config.after_hours_surcharge)
    if activity.get("is_remote_area"):
        total += to_money(config.remote_area_surcharge)
    if activity.get("is_difficult_access"):
        total += to_money(config.difficult_access_surcharge)
    return total


ComponentFn = Callable[[Dict[str, Any], CompensationConfiguration], Decimal]

# earnings field -> component function
DEFAULT_COMPONENTS: Dict[str, ComponentFn] = {
    "base_hourly_pay": hourly_pay,
    "delivery_bonus_amount": delivery_bonus,
    "mileage_amount": mileage,
    "efficiency_bonus_amount": efficiency_bonus,
    "batch_bonus_amount": batch_bonus,
    "satisfaction_bonus_amount": satisfaction_bonus,
    "retention_bonus_amount": retention_bonus,
    "special_condition_amount": special_conditions,
}


def compute_pay(
    activity: Dict[str, Any],
    config: CompensationConfiguration,
    components: Optional[Dict[str, ComponentFn]] = None,
) -> Dict[str, Decimal]:
    """
    run each component independently; components are shown rounded,
    total is the unrounded sum rounded once.
    """
    components = components or DEFAULT_COMPONENTS
    raw = {field: fn(activity, config) for field, fn in components.items()}

    pay = {field: round_money(value) for field, value in raw.items()}
    pay["total_earnings"] = round_money(sum(raw.values(), ZERO))
    return pay


class DriverCompensationEngine:
    """
    stateless driver pay component.

    get_config:            () -> CompensationConfiguration (raises ConfigurationNotFound)
    get_driver:            (driver_id) -> dict with `created_at`, or None
    get_completed_batches: (driver_id, start, end) -> completed batches in [start, end]
    get_average_rating:    (driver_id, start, end) -> Decimal | None (optional)
    components:            overrides merged over DEFAULT_COMPONENTS
    """

    def __init__(
        self,
        get_config: Callable[[], CompensationConfiguration],
        get_driver: Callable[[Any], Optional[Dict[str, Any]]],
        get_completed_batches: Callable[[Any, datetime, datetime], List[Dict[str, Any]]],
        get_average_rating: Optional[Callable[[Any, datetime, datetime], Optional[Decimal]]] = None,
        components: Optional[Dict[str, ComponentFn]] = None,
        timezone_name: str = "America/Toronto",
    ):
        self.get_config = get_config
        self.get_driver = get_driver
        self.get_completed_batches = get_completed_batches
        self.get_average_rating = get_average_rating
        self.components = {**DEFAULT_COMPONENTS, **(components or {})}
        self.tz = ZoneInfo(timezone_name)

    def calculate_period_earnings(self, driver_id, start_date: datetime, end_date: datetime) -> Dict[str, Any]:
        """draft (unsaved) earnings for one driver and pay period."""
        config = self.get_config()

        driver = self.get_driver(driver_id)
        if driver is None:
            raise NotFound(f"Driver {driver_id} not found")

        batches = self.get_completed_batches(driver_id, start_date, end_date)
        activity = aggregate_batches(batches, self.tz)

        rating = None
        if self.get_average_rating is not None:
            rating = self.get_average_rating(driver_id, start_date, end_date)

        activity.update(
            {
                "average_rating": rating,
                "driver_started_at": driver.get("created_at"),
                "period_start": start_date,
                "period_end": end_date,
            }
        )

        pay = compute_pay(activity, config, self.components)

        return {
            "driver_id": driver_id,
            "config_id": config.id,
            "pay_period_start": start_date,
            "pay_period_end": end_date,
            "hours_worked": activity["hours_worked"],
            "deliveries_completed": activity["deliveries"],
            "distance_driven": round_money(activity["distance"]),
            "is_weekend_holiday": activity["is_weekend_holiday"],
            "is_after_hours": activity["is_after_hours"],
            **pay,
            "is_paid": False,
        }

    def estimate_delivery_earnings(
        self,
        order_id,
        driver_id,
        distance_km,
        time_minutes,
        flags: Optional[Dict[str, bool]] = None,
    ) -> Dict[str, Any]:
        """
        advisory earnings for a single delivery before the driver accepts it.
        each surcharge applies only when its flag is set; flags are independent.
        """
        config = self.get_config()
        flags = flags or {}

        minutes = to_money(time_minutes)
        hours = minutes / MINUTES_PER_HOUR
        activity = {
            "hours": hours,
            "deliveries": 1,
            "distance": to_money(distance_km),
            **{name: bool(flags.get(name)) for name in SPECIAL_CONDITION_FLAGS},
        }

        raw = {
            "base_hourly_pay": hourly_pay(activity, config),
            "delivery_bonus": delivery_bonus(activity, config),
            "mileage_amount": mileage(activity, config),
            "special_condition_amount": special_conditions(activity, config),
        }

        return {
            "estimated_earnings": round_money(sum(raw.values(), ZERO)),
            "breakdown": {
                **{k: round_money(v) for k, v in raw.items()},
                "estimated_time": {"minutes": minutes, "hours": round_money(hours)},
                "estimated_distance": to_money(distance_km),
            },
            "order_id": order_id,
            "driver_id": driver_id,
            "config_id": config.id,
            "timestamp": datetime.now(timezone.utc),
        }
