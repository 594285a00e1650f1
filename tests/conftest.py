import contextlib

import pytest


class FakeConn:
    """
    stands in for a psycopg connection in store-backed tests.
    repository functions are patched out, so only the transaction calls matter.
    """

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def fake_conn():
    return FakeConn()


@pytest.fixture
def patch_conn(monkeypatch, fake_conn):
    """
    point `get_conn` of the given modules at one shared FakeConn.
    """

    def _patch(*modules):
        @contextlib.contextmanager
        def _get_conn():
            yield fake_conn

        for module in modules:
            monkeypatch.setattr(module, "get_conn", _get_conn)
        return fake_conn

    return _patch
