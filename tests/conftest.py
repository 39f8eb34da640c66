"""
Shared fixtures: an in-memory fake driver that records every forwarded call.
"""

import random

import pytest

from shared.models import DSN, FetchMode
from balancer.main import QueryRouter

CATALOG = [
    "get_one", "get_col", "get_all", "get_row", "get_assoc", "limit_query",
    "quote_smart", "get_tables", "prepare", "provides", "table_info",
    "get_option", "get_list_of", "commit", "rollback", "auto_commit",
    "disconnect", "set_option", "set_fetch_mode", "affected_rows",
]


class FakeResult:
    """Minimal query result."""

    def __init__(self, rows=None):
        self.rows = list(rows or [])

    def num_rows(self):
        return len(self.rows)


class FakeConnection:
    """
    Connection double.

    ``responses`` maps an operation to a value (or a callable receiving the
    call args); ``errors`` maps an operation to an exception to raise.
    """

    backend = "fake"

    def __init__(self, dsn: DSN):
        self.dsn = dsn
        self.fetch_mode = FetchMode.ORDERED
        self.options = {"debug": 0}
        self.last_query = None
        self.calls = []
        self.responses = {"query": FakeResult([("row",)])}
        self.errors = {}

    def _record(self, operation, *args):
        self.calls.append((operation, args))
        if args and isinstance(args[0], str) and operation in ("query", "get_one", "get_all", "get_row"):
            self.last_query = args[0]
        if operation in self.errors:
            raise self.errors[operation]
        value = self.responses.get(operation)
        return value(*args) if callable(value) else value

    def count(self, operation):
        return sum(1 for name, _ in self.calls if name == operation)

    def query(self, sql, params=()):
        return self._record("query", sql, params)


def _make_method(operation):
    def method(self, *args):
        return self._record(operation, *args)
    method.__name__ = operation
    return method


for _operation in CATALOG:
    setattr(FakeConnection, _operation, _make_method(_operation))


class FakeDriver:
    """Driver double; hosts listed in ``refuse`` fail to connect."""

    def __init__(self):
        self.connections = {}
        self.connect_attempts = []
        self.refuse = set()

    def connect(self, dsn):
        self.connect_attempts.append(dsn.hostspec)
        if dsn.hostspec in self.refuse:
            raise ConnectionRefusedError(f"connection refused by {dsn.hostspec}")
        connection = FakeConnection(dsn)
        self.connections[dsn.hostspec] = connection
        return connection


class ScriptedRandom(random.Random):
    """Random source replaying fixed draws."""

    def __init__(self, draws):
        super().__init__(0)
        self.draws = list(draws)

    def randint(self, a, b):
        return self.draws.pop(0)


@pytest.fixture
def fake_driver():
    """Create a fake driver."""
    return FakeDriver()


@pytest.fixture
def fake_result():
    """Factory for fake query results."""
    return FakeResult


@pytest.fixture
def scripted_random():
    """Factory for random sources with fixed draws."""
    return ScriptedRandom


@pytest.fixture
def router(fake_driver):
    """Router with a master and two replicas on the fake driver."""
    query_router = QueryRouter(driver=fake_driver, rng=random.Random(1234))
    query_router.attach_master("fake://master/app", 50)
    query_router.attach_node("fake://replica-1/app", 25)
    query_router.attach_node("fake://replica-2/app", 25)
    return query_router
