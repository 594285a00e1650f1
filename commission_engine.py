from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from money import ZERO, to_money, round_money


@dataclass(frozen=True)
class CommissionConfiguration:
    """effective-dated platform commission rate (same activation rule as pricing)."""

    id: Any
    rate: Decimal
    effective_date: datetime
    expiration_date: Optional[datetime] = None
    is_active: bool = True

    def is_effective_at(self, instant: datetime) -> bool:
        if not self.is_active or self.effective_date > instant:
            return False
        return self.expiration_date is None or self.expiration_date > instant


def item_subtotal(item: Dict[str, Any]) -> Decimal:
    if item.get("subtotal") is not None:
        return to_money(item["subtotal"])
    return to_money(item["price"]) * int(item["quantity"])


def split_by_farm(
    order_items: Iterable[Dict[str, Any]],
    commission_rate,
) -> Dict[Any, Dict[str, Any]]:
    """
    partition an order's items into per-farm farmer amount + platform commission.

    per item: commission = subtotal * rate, farmer amount = subtotal - commission.
    sums are kept unrounded per farm; the farm commission is rounded once and the
    farmer amount is derived from it, so amount + commission == farm subtotal exactly.
    """
    rate = to_money(commission_rate)
    farms: Dict[Any, Dict[str, Any]] = {}

    for item in order_items:
        farm_id = item["farm_id"]
        sub = item_subtotal(item)
        commission = sub * rate

        farm = farms.get(farm_id)
        if farm is None:
            farm = {
                "farm_id": farm_id,
                "farmer_id": item.get("farmer_id"),
                "farm_name": item.get("farm_name"),
                "subtotal": ZERO,
                "commission": ZERO,
                "items": [],
            }
            farms[farm_id] = farm

        farm["subtotal"] += sub
        farm["commission"] += commission
        farm["items"].append(
            {
                "product_id": item.get("product_id"),
                "product_name": item.get("product_name"),
                "quantity": int(item["quantity"]),
                "price": to_money(item["price"]),
                "subtotal": sub,
                "commission": commission,
            }
        )

    result = {}
    for farm_id, farm in farms.items():
        subtotal = round_money(farm["subtotal"])
        commission = round_money(farm["commission"])
        result[farm_id] = {
            "farm_id": farm_id,
            "farmer_id": farm["farmer_id"],
            "farm_name": farm["farm_name"],
            "amount": subtotal - commission,
            "commission": commission,
            "commission_rate": rate,
            "items": farm["items"],
        }
    return result


def platform_commission_total(split: Dict[Any, Dict[str, Any]]) -> Decimal:
    return sum((farm["commission"] for farm in split.values()), ZERO)
