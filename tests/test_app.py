from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import app as app_module
from app import app
from errors import AlreadyPaid, ConfigurationNotFound, NotFound, ProviderError

client = TestClient(app)


def test_pricing_calculate_serialises_money_as_strings(monkeypatch):
    seen = {}

    def fake_calculate(order, user_id, delivery_details):
        seen.update(order=order, user_id=user_id, delivery_details=delivery_details)
        return {"order_id": None, "final_total": Decimal("126.14"), "free_delivery_applied": False}

    monkeypatch.setattr(app_module, "calculate_order_charges_db", fake_calculate)

    res = client.post(
        "/api/pricing/calculate",
        json={
            "user_id": 9,
            "items": [{"quantity": 2, "price": "50.00"}],
            "delivery_details": {"jurisdiction": "BC"},
        },
    )

    assert res.status_code == 200
    assert res.json() == {"order_id": None, "final_total": "126.14", "free_delivery_applied": False}
    assert seen["user_id"] == 9
    assert seen["order"]["items"][0]["price"] == Decimal("50.00")
    assert seen["delivery_details"] == {"method": "delivery", "jurisdiction": "BC"}


def test_pricing_save_requires_order_id():
    res = client.post("/api/pricing/calculate", json={"items": [{"quantity": 1, "price": "1.00"}], "save": True})

    assert res.status_code == 400


def test_missing_configuration_is_503(monkeypatch):
    def no_config(order, user_id, delivery_details):
        raise ConfigurationNotFound("No active pricing configuration found")

    monkeypatch.setattr(app_module, "calculate_order_charges_db", no_config)

    res = client.post("/api/pricing/calculate", json={"items": [{"quantity": 1, "price": "1.00"}]})

    assert res.status_code == 503


def test_order_summary_not_found(monkeypatch):
    def missing(order_id):
        raise NotFound(f"Charges for order {order_id} not found")

    monkeypatch.setattr(app_module, "get_customer_order_summary_db", missing)

    res = client.get("/api/pricing/orders/5/summary")

    assert res.status_code == 404
    assert res.json()["detail"] == "Charges for order 5 not found"


def test_referral_register_failure_is_400_with_reason(monkeypatch):
    monkeypatch.setattr(
        app_module,
        "process_referral_db",
        lambda code, user_id, role: {"success": False, "reason": "already_referred", "message": "User already referred by someone else"},
    )

    res = client.post("/api/referral/register", json={"user_id": 2, "role": "consumer", "referral_code": "FC1A2B3C4D"})

    assert res.status_code == 400
    assert res.json()["detail"]["reason"] == "already_referred"


def test_referral_register_success(monkeypatch):
    calls = []

    def fake_process(code, user_id, role):
        calls.append((code, user_id, role))
        return {"success": True, "referral_type": "customer_to_customer", "referred_free_deliveries": 3}

    monkeypatch.setattr(app_module, "process_referral_db", fake_process)

    res = client.post("/api/referral/register", json={"user_id": 2, "role": "consumer", "referral_code": "FC1A2B3C4D"})

    assert res.status_code == 200
    assert res.json()["referred_free_deliveries"] == 3
    assert calls == [("FC1A2B3C4D", 2, "consumer")]


def test_free_delivery_none_left_is_still_200(monkeypatch):
    monkeypatch.setattr(
        app_module,
        "apply_free_delivery_if_available_db",
        lambda order_id, user_id: {"success": True, "free_delivery_applied": False, "message": "No free deliveries available"},
    )

    res = client.post("/api/referral/free-delivery", json={"order_id": 1, "user_id": 2})

    assert res.status_code == 200
    assert res.json()["free_delivery_applied"] is False


def test_driver_pay_conflict_and_provider_error(monkeypatch):
    def already_paid(earnings_id, reference):
        raise AlreadyPaid(f"Earnings record already paid: {earnings_id}")

    monkeypatch.setattr(app_module, "process_driver_payment_db", already_paid)
    assert client.post("/api/driver/earnings/3/pay").status_code == 409

    def provider_down(earnings_id, reference):
        raise ProviderError("card_declined")

    monkeypatch.setattr(app_module, "process_driver_payment_db", provider_down)
    res = client.post("/api/driver/earnings/3/pay", json={"payment_reference": None})
    assert res.status_code == 502


def test_driver_earnings_calculate(monkeypatch):
    def fake_calculate(driver_id, start, end):
        return {"driver_id": driver_id, "total_earnings": Decimal("194"), "pay_period_start": start}

    monkeypatch.setattr(app_module, "calculate_period_earnings_db", fake_calculate)

    res = client.post(
        "/api/driver/earnings/calculate",
        json={"driver_id": 5, "start_date": "2025-06-01T00:00:00Z", "end_date": "2025-06-08T00:00:00Z"},
    )

    assert res.status_code == 200
    body = res.json()
    assert body["total_earnings"] == "194.00"
    assert datetime.fromisoformat(body["pay_period_start"]) == datetime(2025, 6, 1, tzinfo=timezone.utc)


def test_driver_earnings_calculate_rejects_inverted_period():
    res = client.post(
        "/api/driver/earnings/calculate",
        json={"driver_id": 5, "start_date": "2025-06-08T00:00:00Z", "end_date": "2025-06-01T00:00:00Z"},
    )

    assert res.status_code == 400


def test_weekly_payouts(monkeypatch):
    monkeypatch.setattr(
        app_module,
        "process_weekly_payouts_db",
        lambda run_date: {
            "success": False,
            "payout_count": 1,
            "payouts": [{"id": 101, "amount": Decimal("1940")}],
            "failures": [{"farmer_id": 2, "error": "boom"}],
        },
    )

    res = client.post("/api/payouts/weekly", json={"run_date": "2025-06-06"})

    assert res.status_code == 200
    assert res.json()["payouts"][0]["amount"] == "1940.00"
    assert res.json()["failures"][0]["farmer_id"] == 2


@pytest.mark.parametrize("status", ["pending", "paid"])
def test_payout_status_rejects_unknown_targets(status):
    res = client.post("/api/payouts/1/status", json={"status": status})

    assert res.status_code == 422


def test_unexpected_error_is_500(monkeypatch):
    def broken(order_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(app_module, "record_order_payment_db", broken)

    res = client.post("/api/orders/1/payment-succeeded")

    assert res.status_code == 500
    assert res.json()["detail"] == "Internal server error"
