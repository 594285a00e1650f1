from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from money import ZERO, to_money, round_money
from tax_engine import DEFAULT_JURISDICTION, calculate_taxes

PICKUP = "pickup"


@dataclass(frozen=True)
class PricingConfiguration:
    id: Any
    name: str
    effective_date: datetime
    platform_fee_rate: Decimal
    payment_processing_fee_rate: Decimal
    delivery_fee_flat: Decimal
    free_delivery_threshold: Decimal
    expiration_date: Optional[datetime] = None
    is_active: bool = True

    def is_effective_at(self, instant: datetime) -> bool:
        if not self.is_active or self.effective_date > instant:
            return False
        return self.expiration_date is None or self.expiration_date > instant


def select_active_config(configs: Iterable, instant: datetime):
    """
    pick the most recently effective configuration in force at `instant`.
    works for any config object exposing is_effective_at / effective_date.
    returns None when nothing is active.
    """
    active = [c for c in configs if c.is_effective_at(instant)]
    if not active:
        return None
    return max(active, key=lambda c: c.effective_date)


def product_subtotal(items: Iterable[Dict[str, Any]]) -> Decimal:
    total = ZERO
    for item in items:
        total += to_money(item["price"]) * int(item["quantity"])
    return total


def price_order(
    items: Iterable[Dict[str, Any]],
    config: PricingConfiguration,
    delivery_details: Optional[Dict[str, Any]] = None,
    free_delivery_available: bool = False,
    default_jurisdiction: str = DEFAULT_JURISDICTION,
) -> Dict[str, Any]:
    """
    customer-facing charges for an order.

    composition order:
      platform fee   = subtotal * platform_fee_rate
      processing fee = (subtotal + platform fee) * payment_processing_fee_rate
      tax            = on the goods subtotal only (fees are not taxed)
      final total    = subtotal + delivery + platform + processing + tax, rounded once
    """
    delivery_details = delivery_details or {}
    subtotal = product_subtotal(items)

    # 1) delivery fee
    method = (delivery_details.get("method") or "delivery").lower()
    waived_by_referral = False
    if method == PICKUP:
        delivery_fee = ZERO
    elif subtotal >= to_money(config.free_delivery_threshold):
        delivery_fee = ZERO
    elif free_delivery_available:
        delivery_fee = ZERO
        waived_by_referral = True
    else:
        delivery_fee = to_money(config.delivery_fee_flat)

    # 2) fees
    platform_fee = subtotal * to_money(config.platform_fee_rate)
    processing_fee = (subtotal + platform_fee) * to_money(config.payment_processing_fee_rate)

    # 3) tax on goods
    jurisdiction = delivery_details.get("jurisdiction") or delivery_details.get("province")
    taxes = calculate_taxes(subtotal, jurisdiction, default_jurisdiction)

    final_total = subtotal + delivery_fee + platform_fee + processing_fee + taxes["total_tax_amount"]

    return {
        "pricing_config_id": config.id,
        "product_subtotal": round_money(subtotal),
        "customer_delivery_fee": round_money(delivery_fee),
        "customer_platform_fee": round_money(platform_fee),
        "payment_processing_fee": round_money(processing_fee),
        "gst_amount": taxes["gst_amount"],
        "pst_amount": taxes["pst_amount"],
        "tax_amount": taxes["total_tax_amount"],
        "final_total": round_money(final_total),
        "free_delivery_applied": waived_by_referral,
        "tax_jurisdiction": jurisdiction,
    }


class PricingEngine:
    """
    stateless pricing component.

    get_config: () -> PricingConfiguration, raises ConfigurationNotFound when none is active
    has_free_delivery: (user_id) -> bool, read-only referral signal (optional)
    """

    def __init__(
        self,
        get_config: Callable[[], PricingConfiguration],
        has_free_delivery: Optional[Callable[[Any], bool]] = None,
        default_jurisdiction: str = DEFAULT_JURISDICTION,
    ):
        self.get_config = get_config
        self.has_free_delivery = has_free_delivery
        self.default_jurisdiction = default_jurisdiction

    def calculate_order_charges(
        self,
        order: Dict[str, Any],
        user_id=None,
        delivery_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        config = self.get_config()

        free_delivery = False
        if user_id is not None and self.has_free_delivery is not None:
            free_delivery = bool(self.has_free_delivery(user_id))

        charges = price_order(
            order["items"],
            config,
            delivery_details,
            free_delivery_available=free_delivery,
            default_jurisdiction=self.default_jurisdiction,
        )
        charges["order_id"] = order.get("id")
        return charges


def customer_summary(charges: Dict[str, Any]) -> Dict[str, Any]:
    """simplified view of saved charges for the customer."""
    return {
        "order_id": charges["order_id"],
        "product_subtotal": charges["product_subtotal"],
        "delivery_fee": charges["customer_delivery_fee"],
        "platform_service_charge": charges["customer_platform_fee"],
        "payment_processing_fee": charges["payment_processing_fee"],
        "tax_amount": charges["tax_amount"],
        "total": charges["final_total"],
    }
