"""
Shared fakes for the storefront test suite.

External collaborators (catalog store, payment provider, Redis) are
replaced by in-memory fakes; SQL-bound helpers are monkeypatched per test.
"""

import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from storefront.errors import ProviderFailure
from storefront.models import CartLineItem, Identity, Product


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self, channel: str | None = None) -> list[str]:
        return [m["event_type"] for c, m in self.published if channel is None or c == channel]


class BrokenRedis:
    """Redis that is down: every publish fails at the connection."""

    def __init__(self):
        self.attempts = 0

    async def publish(self, channel: str, message: str) -> int:
        self.attempts += 1
        raise ConnectionError("Error 111 connecting to redis:6379. Connection refused.")


class FakeSession:
    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


class ScriptedResult:
    def __init__(self, rowcount: int = 1, rows=(), scalar=None):
        self.rowcount = rowcount
        self.rows = [SimpleNamespace(**r) if isinstance(r, dict) else r for r in rows]
        self.scalar = scalar

    def fetchall(self):
        return list(self.rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def scalar_one_or_none(self):
        return self.scalar

    def scalar_one(self):
        if self.scalar is None:
            raise AssertionError("scalar_one() on an empty result")
        return self.scalar


class _Savepoint:
    def __init__(self, session: "ScriptedSession"):
        self.session = session

    async def __aenter__(self):
        self.session.savepoints += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class ScriptedSession(FakeSession):
    """
    Records every statement executed on it and answers from a script.

    ``respond(sql, params)`` gets the whitespace-collapsed SQL and returns a
    ScriptedResult, or None for a default one-row-affected result.
    """

    def __init__(self, respond=None):
        super().__init__()
        self.respond = respond or (lambda sql, params: None)
        self.statements: list[tuple[str, dict]] = []
        self.savepoints = 0

    async def execute(self, stmt, params=None):
        sql = " ".join(str(stmt).split())
        params = dict(params or {})
        self.statements.append((sql, params))
        return self.respond(sql, params) or ScriptedResult()

    def begin_nested(self):
        return _Savepoint(self)

    def executed(self, prefix: str) -> list[dict]:
        """Params of every statement whose SQL starts with ``prefix``."""
        return [params for sql, params in self.statements if sql.startswith(prefix)]


class FakeProvider:
    def __init__(self, sessions: dict | None = None, fail: bool = False):
        self.sessions = sessions or {}
        self.fail = fail
        self.created: list[dict] = []
        self.expired: list[str] = []

    async def create_checkout_session(self, params: dict) -> dict:
        if self.fail:
            raise ProviderFailure()
        self.created.append(params)
        session_id = f"cs_test_{len(self.created)}"
        return {"id": session_id, "url": f"https://pay.example/{session_id}"}

    async def retrieve_checkout_session(self, session_id: str, expand=None) -> dict:
        if self.fail:
            raise ProviderFailure()
        return self.sessions[session_id]

    async def expire_checkout_session(self, session_id: str) -> dict:
        self.expired.append(session_id)
        return {**self.sessions[session_id], "status": "expired"}


def make_product(product_id: str = "prod-1", name: str = "Oak Chair", price: str = "19.99",
                 stock: int = 10, **kwargs) -> Product:
    return Product(id=product_id, name=name, price=Decimal(price), stock=stock, **kwargs)


def make_item(product_id: str = "prod-1", quantity: int = 1, name: str = "Oak Chair",
              price: str | None = "1.00") -> CartLineItem:
    return CartLineItem(
        product_id=product_id,
        name=name,
        price=Decimal(price) if price is not None else None,
        quantity=quantity,
    )


def catalog_of(*products: Product):
    """Builds an async fetch callable over a fixed snapshot, recording every call."""
    calls: list[list[str]] = []

    async def fetch(ids: list[str]) -> list[Product]:
        calls.append(list(ids))
        return [p for p in products if p.id in ids]

    fetch.calls = calls
    return fetch


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def db_session():
    return FakeSession()


@pytest.fixture
def identity():
    return Identity(user_id="user_1", email="ada@example.com", name="Ada")


@pytest.fixture
def other_identity():
    return Identity(user_id="user_2", email="bob@example.com", name="Bob")


@pytest.fixture
def broken_redis():
    return BrokenRedis()
