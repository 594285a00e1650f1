from datetime import datetime, timezone
from decimal import Decimal

import psycopg
import pytest
from psycopg.errors import UniqueViolation

import compensation_db
from errors import AlreadyCompleted, AlreadyPaid, NotFound, ProviderError


class FakeProvider:
    def __init__(self, fail_for=()):
        self.transfers = []
        self.fail_for = set(fail_for)
        # idempotency_key -> transfer, replayed like the provider does
        self.by_key = {}

    def transfer(self, amount_minor_units, currency, destination, metadata=None, description=None, idempotency_key=None):
        if destination in self.fail_for:
            raise ProviderError("card_declined")
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        self.transfers.append(
            {
                "amount": amount_minor_units,
                "currency": currency,
                "destination": destination,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        transfer = {"id": f"tr_{len(self.transfers)}", "status": "succeeded"}
        if idempotency_key:
            self.by_key[idempotency_key] = transfer
        return transfer

    def create_connect_account(self, email, first_name="", last_name="", country="CA", metadata=None):
        return {"account_id": "acct_new", "onboarding_url": "https://connect.example/onboard"}


class FakeEarningsStore:
    def __init__(self):
        self.earnings = {}
        self.users = {}
        # earnings ids whose update fails at the database
        self.broken = set()

    def add_earnings(self, earnings_id, driver_id, total):
        self.earnings[earnings_id] = {
            "id": earnings_id,
            "driver_id": driver_id,
            "total_earnings": Decimal(total),
            "pay_period_start": datetime(2025, 6, 1, tzinfo=timezone.utc),
            "pay_period_end": datetime(2025, 6, 8, tzinfo=timezone.utc),
            "is_paid": False,
            "payment_reference": None,
        }

    def get_driver_earnings(self, conn, earnings_id, for_update=False):
        row = self.earnings.get(earnings_id)
        return dict(row) if row else None

    def get_user(self, conn, user_id):
        return self.users.get(user_id)

    def mark_driver_earnings_paid(self, conn, earnings_id, payment_reference):
        if earnings_id in self.broken:
            raise psycopg.errors.DeadlockDetected("deadlock detected")
        self.earnings[earnings_id].update({"is_paid": True, "payment_reference": payment_reference})
        return dict(self.earnings[earnings_id])

    def insert_driver_earnings(self, conn, earnings):
        key = (earnings["driver_id"], earnings["pay_period_start"], earnings["pay_period_end"])
        for row in self.earnings.values():
            if (row["driver_id"], row["pay_period_start"], row["pay_period_end"]) == key:
                raise UniqueViolation("duplicate key value violates unique constraint")
        earnings_id = len(self.earnings) + 1
        self.earnings[earnings_id] = {"id": earnings_id, **earnings}
        return dict(self.earnings[earnings_id])

    def set_user_stripe_account(self, conn, user_id, account_id):
        self.users[user_id]["stripe_account_id"] = account_id


PATCHED = (
    "get_driver_earnings",
    "get_user",
    "mark_driver_earnings_paid",
    "insert_driver_earnings",
    "set_user_stripe_account",
)


@pytest.fixture
def store(monkeypatch, patch_conn):
    s = FakeEarningsStore()
    for name in PATCHED:
        monkeypatch.setattr(compensation_db, name, getattr(s, name))
    s.conn = patch_conn(compensation_db)
    s.users[5] = {"id": 5, "email": "d@example.com", "first_name": "Dana", "last_name": "Lee", "stripe_account_id": "acct_5"}
    s.users[6] = {"id": 6, "email": "e@example.com", "first_name": None, "last_name": None, "stripe_account_id": None}
    return s


def test_payment_transfers_then_marks_paid(store):
    store.add_earnings(1, 5, "194.00")
    provider = FakeProvider()

    row = compensation_db.process_driver_payment_db(1, None, provider)

    assert row["is_paid"] is True
    assert row["payment_reference"] == "tr_1"
    assert provider.transfers[0]["amount"] == 19400
    assert provider.transfers[0]["currency"] == "cad"
    assert provider.transfers[0]["destination"] == "acct_5"
    assert provider.transfers[0]["idempotency_key"] == "driver-earnings-1"
    assert store.conn.commits == 1


def test_paying_twice_is_rejected(store):
    """
    the second call fails with AlreadyPaid and never reaches the provider.
    """
    store.add_earnings(1, 5, "194.00")
    provider = FakeProvider()
    compensation_db.process_driver_payment_db(1, None, provider)

    with pytest.raises(AlreadyPaid):
        compensation_db.process_driver_payment_db(1, None, provider)

    assert len(provider.transfers) == 1
    assert store.earnings[1]["payment_reference"] == "tr_1"


def test_manual_payment_skips_provider(store):
    store.add_earnings(1, 5, "50.00")
    provider = FakeProvider()

    row = compensation_db.process_driver_payment_db(1, "manual", provider)

    assert row["is_paid"] is True
    assert row["payment_reference"].startswith("MANUAL-")
    assert provider.transfers == []


def test_provider_failure_leaves_earnings_unpaid(store):
    store.add_earnings(1, 5, "194.00")
    provider = FakeProvider(fail_for={"acct_5"})

    with pytest.raises(ProviderError):
        compensation_db.process_driver_payment_db(1, None, provider)

    assert store.earnings[1]["is_paid"] is False
    assert store.conn.rollbacks == 1
    assert store.conn.commits == 0


def test_driver_without_payout_account(store):
    store.add_earnings(1, 6, "20.00")

    with pytest.raises(NotFound):
        compensation_db.process_driver_payment_db(1, None, FakeProvider())

    with pytest.raises(NotFound):
        compensation_db.process_driver_payment_db(404, None, FakeProvider())


def test_manual_payment_needs_a_known_driver(store):
    store.add_earnings(1, 77, "50.00")

    with pytest.raises(NotFound):
        compensation_db.process_driver_payment_db(1, "manual")

    assert store.earnings[1]["is_paid"] is False
    assert store.conn.rollbacks == 1


def test_retry_after_failed_commit_reuses_the_transfer(store, monkeypatch):
    """
    the transfer went through but the commit didn't: paying again replays the same
    transfer and marks the record paid, with no second transfer.
    """
    store.add_earnings(1, 5, "194.00")
    provider = FakeProvider()
    unpaid = dict(store.earnings[1])
    commits = []

    def flaky_commit():
        commits.append(1)
        if len(commits) == 1:
            raise psycopg.OperationalError("server closed the connection unexpectedly")

    def rollback():
        store.earnings[1] = dict(unpaid)

    monkeypatch.setattr(store.conn, "commit", flaky_commit)
    monkeypatch.setattr(store.conn, "rollback", rollback)

    with pytest.raises(psycopg.OperationalError):
        compensation_db.process_driver_payment_db(1, None, provider)
    assert store.earnings[1]["is_paid"] is False

    row = compensation_db.process_driver_payment_db(1, None, provider)

    assert row["is_paid"] is True
    assert row["payment_reference"] == "tr_1"
    assert len(provider.transfers) == 1


def test_batch_reports_each_item(store):
    store.add_earnings(1, 5, "10.00")
    store.add_earnings(2, 6, "20.00")
    store.add_earnings(3, 5, "30.00")
    provider = FakeProvider()

    result = compensation_db.process_driver_payments_db([1, 2, 3], None, provider)

    assert result["success"] is False
    assert result["processed_count"] == 2
    assert result["failed_count"] == 1
    assert [p["status"] for p in result["payments"]] == ["success", "failed", "success"]
    assert store.earnings[2]["is_paid"] is False
    assert store.earnings[3]["is_paid"] is True


def test_batch_reports_database_errors_per_item(store):
    store.add_earnings(1, 5, "10.00")
    store.add_earnings(2, 5, "20.00")
    store.broken.add(2)

    result = compensation_db.process_driver_payments_db([1, 2], None, FakeProvider())

    assert [p["status"] for p in result["payments"]] == ["success", "failed"]
    assert "deadlock" in result["payments"][1]["error"]
    assert result["processed_count"] == 1
    assert store.earnings[1]["is_paid"] is True
    assert store.earnings[2]["is_paid"] is False


def test_saving_same_period_twice(store):
    draft = {
        "driver_id": 5,
        "pay_period_start": datetime(2025, 6, 1, tzinfo=timezone.utc),
        "pay_period_end": datetime(2025, 6, 8, tzinfo=timezone.utc),
        "total_earnings": Decimal("194.00"),
        "is_paid": False,
    }

    row = compensation_db.save_driver_earnings_db(draft)
    assert row["id"] == 1

    with pytest.raises(AlreadyCompleted):
        compensation_db.save_driver_earnings_db(dict(draft))
    assert store.conn.rollbacks == 1


def test_connect_account_is_remembered(store):
    result = compensation_db.create_driver_connect_account_db(6, provider=FakeProvider())

    assert result == {"success": True, "account_id": "acct_new", "onboarding_url": "https://connect.example/onboard"}
    assert store.users[6]["stripe_account_id"] == "acct_new"
