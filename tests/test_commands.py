import json
from decimal import Decimal

import pytest

from storefront import commands, event_store, queries
from storefront.checkout import parse_session
from storefront.errors import ConcurrentModification

from .conftest import FakeProvider, ScriptedResult, ScriptedSession

ORDER_ID = "7d6c1f7e-4c9b-4e55-9a57-2b0a3c1f0e11"


def session_data(**overrides):
    data = {
        "id": "cs_1",
        "status": "complete",
        "payment_status": "paid",
        "amount_total": 5997,
        "metadata": {"userId": "user_1", "productIds": "a,b", "quantities": "2,1"},
        "customer_details": {"email": "ada@example.com", "name": "Ada Lovelace"},
        "shipping_details": {
            "name": "Ada Lovelace",
            "address": {"line1": "12 Analytical St", "city": "London", "postal_code": "N1 9GU", "country": "GB"},
        },
        "line_items": {"data": [
            {"description": "Desk", "quantity": 2, "amount_total": 3998,
             "price": {"unit_amount": 1999, "product": {"metadata": {"productId": "a"}}}},
            {"description": "Lamp", "quantity": 1, "amount_total": 1999,
             "price": {"unit_amount": 1999, "product": "prod_xyz"}},
        ]},
    }
    data.update(overrides)
    return data


# ── order creation helpers ───────────────────────

def test_order_items_use_price_charged_by_provider():
    data = session_data()
    items = commands.order_items_from_session(parse_session(data), data["line_items"]["data"])
    assert [(i.product_id, i.quantity, i.price) for i in items] == [
        ("a", 2, Decimal("19.99")),
        ("b", 1, Decimal("19.99")),
    ]
    assert items[0].product_name == "Desk"


def test_order_items_reject_mismatched_product_echo():
    data = session_data(metadata={"userId": "user_1", "productIds": "b,a", "quantities": "2,1"})
    with pytest.raises(ValueError):
        commands.order_items_from_session(parse_session(data), data["line_items"]["data"])


def test_order_items_reject_missing_line_items():
    data = session_data()
    with pytest.raises(ValueError):
        commands.order_items_from_session(parse_session(data), data["line_items"]["data"][:1])


def test_shipping_address_from_session():
    address = commands.shipping_address_from_session(session_data())
    assert address.name == "Ada Lovelace"
    assert (address.city, address.country) == ("London", "GB")
    assert commands.shipping_address_from_session(session_data(shipping_details=None, customer_details={})) is None


def test_order_number_format():
    from datetime import datetime, timezone

    number = commands.make_order_number(datetime(2026, 10, 18, tzinfo=timezone.utc))
    assert number.startswith("ORD-20261018-")
    assert len(number) == len("ORD-20261018-") + 6


# ── create_order_from_session ────────────────────

INSERT_ORDER = "INSERT INTO orders"


@pytest.fixture
def stored_orders(monkeypatch):
    """Read side of the orders table: what a lookup by session id sees."""
    state = {"by_session": None, "lookups": 0}

    async def find_order_by_checkout_session(session, checkout_session_id):
        state["lookups"] += 1
        return state["by_session"] if state["lookups"] > 1 else None

    async def get_order(session, order_id):
        return {"id": str(order_id), "checkout_session_id": "cs_1"}

    monkeypatch.setattr(queries, "find_order_by_checkout_session", find_order_by_checkout_session)
    monkeypatch.setattr(queries, "get_order", get_order)
    return state


def reserved_session_data():
    return session_data(metadata={
        "userId": "user_1", "userEmail": "ada@example.com",
        "productIds": "a,b", "quantities": "2,1", "reservationId": "res-7",
    })


@pytest.mark.asyncio
async def test_new_order_writes_items_consumes_reservation_and_records_event(stored_orders, redis):
    def respond(sql, params):
        if sql.startswith(INSERT_ORDER):
            return ScriptedResult(scalar=params["id"])
        if sql.startswith("DELETE FROM stock_reservations"):
            return ScriptedResult(rows=[{"product_id": "a", "quantity": 2}, {"product_id": "b", "quantity": 1}])
        return None

    session = ScriptedSession(respond)

    order, created = await commands.create_order_from_session(session, redis, reserved_session_data())

    assert created is True
    assert [sql.split(" (")[0] for sql, _ in session.statements] == [
        "INSERT INTO orders",
        "INSERT INTO order_items",
        "INSERT INTO order_items",
        "DELETE FROM stock_reservations WHERE reservation_id = :rid RETURNING product_id, quantity",
        "INSERT INTO order_events",
    ]
    [insert] = session.executed(INSERT_ORDER)
    assert "ON CONFLICT (checkout_session_id) DO NOTHING RETURNING id" in session.statements[0][0]
    assert (insert["sid"], insert["status"], insert["total"]) == ("cs_1", "paid", Decimal("59.97"))
    assert json.loads(insert["address"])["city"] == "London"
    assert order["id"] == insert["id"]

    assert [(i["position"], i["product_id"], i["quantity"], i["price"])
            for i in session.executed("INSERT INTO order_items")] == [
        (0, "a", 2, Decimal("19.99")),
        (1, "b", 1, Decimal("19.99")),
    ]
    assert session.executed("DELETE FROM stock_reservations") == [{"rid": "res-7"}]
    assert session.executed("UPDATE products") == []

    [event] = session.executed("INSERT INTO order_events")
    assert (event["evt_type"], event["version"]) == ("OrderPlaced", 1)
    assert json.loads(event["evt_data"])["checkout_session_id"] == "cs_1"
    assert session.savepoints == 1
    assert (session.commits, session.rollbacks) == (1, 0)
    assert redis.event_types("order_events") == ["OrderPlaced"]


@pytest.mark.asyncio
async def test_order_created_concurrently_is_returned_not_duplicated(stored_orders, redis):
    stored_orders["by_session"] = {"id": ORDER_ID, "checkout_session_id": "cs_1"}

    def respond(sql, params):
        if sql.startswith(INSERT_ORDER):
            return ScriptedResult(scalar=None)
        return None

    session = ScriptedSession(respond)

    order, created = await commands.create_order_from_session(session, redis, reserved_session_data())

    assert (order, created) == ({"id": ORDER_ID, "checkout_session_id": "cs_1"}, False)
    assert [sql.split(" (")[0] for sql, _ in session.statements] == ["INSERT INTO orders"]
    assert (session.commits, session.rollbacks) == (0, 1)
    assert stored_orders["lookups"] == 2
    assert redis.published == []


@pytest.mark.asyncio
async def test_new_order_survives_event_bus_outage(stored_orders, broken_redis):
    session = ScriptedSession(
        lambda sql, params: ScriptedResult(scalar=params["id"]) if sql.startswith(INSERT_ORDER) else None
    )

    order, created = await commands.create_order_from_session(session, broken_redis, session_data())

    assert created is True
    assert session.commits == 1
    assert broken_redis.attempts == 1


# ── complete_checkout ────────────────────────────

@pytest.mark.asyncio
async def test_complete_checkout_hides_other_users_session(db_session, redis, other_identity):
    provider = FakeProvider({"cs_1": session_data()})
    result = await commands.complete_checkout(db_session, redis, provider, other_identity, "cs_1")
    assert result == {"success": False, "error": "Session not found", "code": "not_found"}


@pytest.mark.asyncio
async def test_complete_checkout_requires_payment(db_session, redis, identity):
    provider = FakeProvider({"cs_1": session_data(payment_status="unpaid", status="open")})
    result = await commands.complete_checkout(db_session, redis, provider, identity, "cs_1")
    assert result["code"] == "illegal_transition"


@pytest.mark.asyncio
async def test_complete_checkout_is_idempotent(monkeypatch, db_session, redis, identity):
    existing = {"id": ORDER_ID, "checkout_session_id": "cs_1", "user_id": "user_1"}

    async def find_order_by_checkout_session(session, checkout_session_id):
        return existing if checkout_session_id == "cs_1" else None

    monkeypatch.setattr(queries, "find_order_by_checkout_session", find_order_by_checkout_session)
    provider = FakeProvider({"cs_1": session_data()})

    first = await commands.complete_checkout(db_session, redis, provider, identity, "cs_1")
    second = await commands.complete_checkout(db_session, redis, provider, identity, "cs_1")

    assert first == second == {"success": True, "order": existing, "created": False}
    assert db_session.commits == 0
    assert redis.published == []


# ── update_order_status ──────────────────────────

@pytest.fixture
def order_row(monkeypatch):
    state = {"exists": True, "status": "paid", "version": 1, "appended": [], "written": [], "conflict": False}

    async def lock_status(session, order_id):
        return state["exists"], state["status"]

    async def write_status(session, order_id, status, now):
        state["written"].append(status.value)

    async def current_version(session, order_id):
        return state["version"]

    async def append_event(session, order_id, event_type, event_data, expected_version):
        if state["conflict"]:
            raise ConcurrentModification()
        state["appended"].append((event_type, event_data["from_status"], event_data["to_status"], expected_version))
        return expected_version + 1

    monkeypatch.setattr(commands, "_lock_status", lock_status)
    monkeypatch.setattr(commands, "_write_status", write_status)
    monkeypatch.setattr(event_store, "current_version", current_version)
    monkeypatch.setattr(event_store, "append_event", append_event)
    return state


@pytest.mark.asyncio
async def test_legal_transition_is_recorded(order_row, db_session, redis):
    result = await commands.update_order_status(db_session, redis, ORDER_ID, "shipped")

    assert result == {"success": True, "order_id": ORDER_ID, "status": "shipped", "changed": True}
    assert order_row["appended"] == [("OrderStatusChanged", "paid", "shipped", 1)]
    assert order_row["written"] == ["shipped"]
    assert db_session.commits == 1
    assert redis.event_types("order_events") == ["OrderStatusChanged"]


@pytest.mark.asyncio
async def test_unset_status_transitions_as_pending(order_row, db_session, redis):
    order_row["status"] = None
    result = await commands.update_order_status(db_session, redis, ORDER_ID, "paid")
    assert result["status"] == "paid"
    assert order_row["appended"][0][1] == "pending"


@pytest.mark.asyncio
async def test_illegal_transition_is_rejected(order_row, db_session, redis):
    order_row["status"] = "delivered"
    result = await commands.update_order_status(db_session, redis, ORDER_ID, "shipped")

    assert result["success"] is False
    assert result["code"] == "illegal_transition"
    assert order_row["written"] == []
    assert db_session.commits == 0
    assert redis.published == []


@pytest.mark.asyncio
async def test_same_status_is_a_no_op(order_row, db_session, redis):
    result = await commands.update_order_status(db_session, redis, ORDER_ID, "paid")
    assert result == {"success": True, "order_id": ORDER_ID, "status": "paid", "changed": False}
    assert order_row["appended"] == []


@pytest.mark.asyncio
async def test_missing_order_is_not_found(order_row, db_session, redis):
    order_row["exists"] = False
    assert (await commands.update_order_status(db_session, redis, ORDER_ID, "shipped"))["code"] == "not_found"
    assert (await commands.update_order_status(db_session, redis, "nope", "shipped"))["code"] == "not_found"


@pytest.mark.asyncio
async def test_concurrent_edit_is_reported(order_row, db_session, redis):
    order_row["conflict"] = True
    result = await commands.update_order_status(db_session, redis, ORDER_ID, "shipped")
    assert result["code"] == "conflict"
    assert order_row["written"] == []


@pytest.mark.asyncio
async def test_committed_transition_is_reported_when_event_bus_is_down(order_row, db_session, broken_redis):
    result = await commands.update_order_status(db_session, broken_redis, ORDER_ID, "shipped")

    assert result == {"success": True, "order_id": ORDER_ID, "status": "shipped", "changed": True}
    assert order_row["written"] == ["shipped"]
    assert (db_session.commits, db_session.rollbacks) == (1, 0)
    assert broken_redis.attempts == 1
