from decimal import Decimal

from commission_engine import platform_commission_total, split_by_farm


def test_split_two_farms():
    """
    5% commission, items from two farms:
      farm 10: 2 x 12.50 + 1 x 5.00 = 30.00 -> commission 1.50, farmer 28.50
      farm 20: 3 x 7.00 = 21.00          -> commission 1.05, farmer 19.95
    """
    items = [
        {"farm_id": 10, "farmer_id": 1, "farm_name": "Green Acres", "product_id": 1, "quantity": 2, "price": Decimal("12.50")},
        {"farm_id": 20, "farmer_id": 2, "farm_name": "Hill Farm", "product_id": 2, "quantity": 3, "price": Decimal("7.00")},
        {"farm_id": 10, "farmer_id": 1, "farm_name": "Green Acres", "product_id": 3, "quantity": 1, "price": Decimal("5.00")},
    ]

    split = split_by_farm(items, Decimal("0.05"))

    assert set(split) == {10, 20}
    assert split[10]["amount"] == Decimal("28.50")
    assert split[10]["commission"] == Decimal("1.50")
    assert split[10]["farmer_id"] == 1
    assert len(split[10]["items"]) == 2
    assert split[20]["amount"] == Decimal("19.95")
    assert split[20]["commission"] == Decimal("1.05")

    assert platform_commission_total(split) == Decimal("2.55")


def test_amount_plus_commission_is_exactly_the_farm_subtotal():
    """
    awkward prices: per-item commissions don't round cleanly,
    but each farm's amount + commission must still equal its subtotal to the cent.
    """
    items = [
        {"farm_id": 1, "quantity": 3, "price": Decimal("3.33")},
        {"farm_id": 1, "quantity": 1, "price": Decimal("0.07")},
        {"farm_id": 1, "quantity": 7, "price": Decimal("1.19")},
    ]

    farm = split_by_farm(items, Decimal("0.05"))[1]

    assert farm["amount"] + farm["commission"] == Decimal("18.39")


def test_precomputed_item_subtotal_is_used():
    items = [{"farm_id": 1, "quantity": 2, "price": Decimal("10.00"), "subtotal": Decimal("18.00")}]

    farm = split_by_farm(items, Decimal("0.10"))[1]

    assert farm["commission"] == Decimal("1.80")
    assert farm["amount"] == Decimal("16.20")
    assert farm["commission_rate"] == Decimal("0.10")


def test_empty_order_has_no_farms():
    assert split_by_farm([], Decimal("0.05")) == {}
