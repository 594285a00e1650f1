from datetime import date
from decimal import Decimal

import pytest

from errors import InvalidStatusTransition
from payout_engine import check_payout_transition, payout_reference, plan_farmer_payout


def test_credit_applied_up_to_available_credit():
    """
    farmer holds $40 credit and $100 of commission was collected this run:
    all 40 is applied, credit drops to 0, payout = original + 40.
    """
    payments = [
        {"id": 1, "amount": Decimal("950.00"), "commission": Decimal("50.00")},
        {"id": 2, "amount": Decimal("950.00"), "commission": Decimal("50.00")},
    ]

    plan = plan_farmer_payout(payments, Decimal("40.00"))

    assert plan["original_amount"] == Decimal("1900.00")
    assert plan["commission_total"] == Decimal("100.00")
    assert plan["credit_applied"] == Decimal("40.00")
    assert plan["remaining_credit_after"] == Decimal("0.00")
    assert plan["amount"] == Decimal("1940.00")
    assert plan["payment_ids"] == [1, 2]


def test_credit_capped_by_commission():
    payments = [{"id": 1, "amount": Decimal("95.00"), "commission": Decimal("5.00")}]

    plan = plan_farmer_payout(payments, Decimal("40.00"))

    assert plan["credit_applied"] == Decimal("5.00")
    assert plan["remaining_credit_after"] == Decimal("35.00")
    assert plan["amount"] == Decimal("100.00")


def test_no_credit():
    payments = [{"id": 1, "amount": Decimal("95.00"), "commission": Decimal("5.00")}]

    plan = plan_farmer_payout(payments, None)

    assert plan["credit_applied"] == Decimal("0.00")
    assert plan["amount"] == Decimal("95.00")


def test_payout_status_transitions():
    check_payout_transition("pending", "processing")
    check_payout_transition("processing", "completed")
    check_payout_transition("processing", "failed")

    with pytest.raises(InvalidStatusTransition):
        check_payout_transition("completed", "processing")
    with pytest.raises(InvalidStatusTransition):
        check_payout_transition("pending", "completed")


def test_payout_reference():
    assert payout_reference(1234567, date(2025, 6, 6)) == "FreshFarmily-2025-06-06-234567"
