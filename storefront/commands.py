"""
Storefront Service — コマンドハンドラ (注文の書き込み側)

注文を変更する操作はここに集める。

    complete_checkout     支払い済みセッションから注文を作る
    update_order_status   管理画面からのステータス変更

注文作成は決済セッション ID をキーに冪等。プロバイダが同じ通知を
何度送ってきても、完了ページが再読み込みされても注文は1件だけになる。
注文の明細価格は「購入時にプロバイダが請求した金額」で固定し、
あとからカタログの価格が変わっても再計算しない。
"""

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, event_store, events, queries
from .checkout import parse_session
from .errors import (
    IllegalTransition,
    NotFound,
    StorefrontError,
    Unauthenticated,
    failure,
    unexpected,
)
from .models import CheckoutSession, Identity, OrderItem, ShippingAddress
from .payments import PaymentProvider
from .status import OrderStatus, check_transition

logger = logging.getLogger(__name__)

SESSION_EXPAND = ["line_items", "line_items.data.price.product", "customer_details"]


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def make_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def order_items_from_session(parsed: CheckoutSession, line_items: list[dict]) -> list[OrderItem]:
    """
    メタデータの並行リストとプロバイダの明細を位置で突き合わせる。

    個数・数量・商品 ID が食い違えば ValueError(壊れたセッション)。
    """
    if len(line_items) != len(parsed.product_ids):
        raise ValueError(
            f"Session {parsed.id} has {len(line_items)} line items "
            f"but {len(parsed.product_ids)} product ids"
        )
    items = []
    for product_id, quantity, li in zip(parsed.product_ids, parsed.quantities, line_items):
        price = li.get("price") or {}
        product = price.get("product")
        if isinstance(product, dict):
            echoed = (product.get("metadata") or {}).get("productId")
            if echoed and echoed != product_id:
                raise ValueError(f"Session {parsed.id} line item {echoed} does not match {product_id}")
        if li.get("quantity") is not None and li["quantity"] != quantity:
            raise ValueError(f"Session {parsed.id} quantity mismatch for {product_id}")

        unit_amount = price.get("unit_amount")
        if unit_amount is None:
            unit_amount = li["amount_total"] // quantity
        items.append(OrderItem(
            product_id=product_id,
            product_name=li.get("description") or "",
            quantity=quantity,
            price=from_minor_units(unit_amount),
        ))
    return items


def shipping_address_from_session(data: dict) -> ShippingAddress | None:
    shipping = (
        data.get("shipping_details")
        or (data.get("collected_information") or {}).get("shipping_details")
        or {}
    )
    details = data.get("customer_details") or {}
    address = shipping.get("address") or details.get("address")
    if not address:
        return None
    return ShippingAddress(
        name=shipping.get("name") or details.get("name"),
        line1=address.get("line1"),
        line2=address.get("line2"),
        city=address.get("city"),
        postal_code=address.get("postal_code"),
        country=address.get("country"),
    )


# ── 注文作成 ─────────────────────────────────────

async def create_order_from_session(
    session: AsyncSession,
    redis: aioredis.Redis,
    data: dict,
) -> tuple[dict, bool]:
    """
    支払い済みセッションから注文を作る。(注文, 新規作成したか) を返す。

    1. 同じセッションの注文がすでにあればそれを返す
    2. orders に INSERT (checkout_session_id の一意制約で二重作成を防ぐ)
    3. 明細を INSERT し、在庫予約を確定する
    4. OrderPlaced イベントを記録して発行する
    """
    parsed = parse_session(data)
    existing = await queries.find_order_by_checkout_session(session, parsed.id)
    if existing:
        return existing, False

    items = order_items_from_session(parsed, ((data.get("line_items") or {}).get("data") or []))
    address = shipping_address_from_session(data)
    metadata = data.get("metadata") or {}
    now = datetime.now(timezone.utc)
    order_id = uuid4()
    order_number = make_order_number(now)
    total = from_minor_units(data.get("amount_total") or 0)

    result = await session.execute(
        text("""
            INSERT INTO orders
                (id, order_number, user_id, email, status, total, address,
                 checkout_session_id, created_at, updated_at)
            VALUES
                (:id, :order_number, :user_id, :email, :status, :total,
                 CAST(:address AS JSONB), :sid, :now, :now)
            ON CONFLICT (checkout_session_id) DO NOTHING
            RETURNING id
        """),
        {
            "id": str(order_id),
            "order_number": order_number,
            "user_id": parsed.user_id,
            "email": metadata.get("userEmail") or (data.get("customer_details") or {}).get("email") or "",
            "status": OrderStatus.PAID.value,
            "total": total,
            "address": address.model_dump_json() if address else None,
            "sid": parsed.id,
            "now": now,
        },
    )
    if result.scalar_one_or_none() is None:
        # 同時に届いた別の通知が先に作成した
        await session.rollback()
        return await queries.find_order_by_checkout_session(session, parsed.id), False

    for position, item in enumerate(items):
        await session.execute(
            text("""
                INSERT INTO order_items
                    (order_id, position, product_id, product_name, quantity, price)
                VALUES
                    (:order_id, :position, :product_id, :product_name, :quantity, :price)
            """),
            {"order_id": str(order_id), "position": position, **item.model_dump()},
        )

    if metadata.get("reservationId"):
        await catalog.consume_reservation(session, metadata["reservationId"])

    event = events.OrderPlaced(
        order_id=str(order_id),
        order_number=order_number,
        user_id=parsed.user_id,
        checkout_session_id=parsed.id,
        total=total,
        timestamp=now,
    )
    await event_store.append_event(
        session, order_id, "OrderPlaced", event.model_dump(mode="json"), 0
    )
    await session.commit()

    await events.publish(redis, events.ORDER_CHANNEL, event)
    logger.info("Order %s (%s) created from session %s", order_number, order_id, parsed.id)
    return await queries.get_order(session, order_id), True


async def complete_checkout(
    session: AsyncSession,
    redis: aioredis.Redis,
    provider: PaymentProvider,
    identity: Identity | None,
    checkout_session_id: str,
) -> dict:
    """完了ページから呼ばれる。支払い済みなら注文を作る(冪等)。"""
    try:
        if identity is None:
            raise Unauthenticated("Not authenticated")
        data = await provider.retrieve_checkout_session(checkout_session_id, expand=SESSION_EXPAND)
        if (data.get("metadata") or {}).get("userId") != identity.user_id:
            raise NotFound("Session not found")
        if data.get("payment_status") != "paid":
            raise IllegalTransition("Payment has not been completed")

        order, created = await create_order_from_session(session, redis, data)
        return {"success": True, "order": order, "created": created}
    except StorefrontError as e:
        return failure(e)
    except Exception as e:
        return unexpected(e, "Complete checkout")


# ── ステータス変更 ───────────────────────────────

async def _lock_status(session: AsyncSession, order_id: UUID) -> tuple[bool, str | None]:
    """注文行をロックして (存在するか, 現在のステータス) を返す。"""
    result = await session.execute(
        text("SELECT status FROM orders WHERE id = :id FOR UPDATE"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    return (row is not None, row.status if row else None)


async def _write_status(session: AsyncSession, order_id: UUID, status: OrderStatus, now: datetime) -> None:
    await session.execute(
        text("""
            UPDATE orders
            SET status = :status, updated_at = :now
            WHERE id = :id
        """),
        {"status": status.value, "now": now, "id": str(order_id)},
    )


async def update_order_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    target: str,
) -> dict:
    """
    注文ステータス変更コマンド

    遷移表にない変更は IllegalTransition で拒否する。
    現在と同じステータスへの変更は何もしない。
    変更できるのは status だけ(価格・明細・住所はこの経路では変えない)。
    """
    try:
        try:
            parsed = UUID(order_id)
        except ValueError:
            raise NotFound() from None

        exists, stored = await _lock_status(session, parsed)
        if not exists:
            raise NotFound()
        current, new_status = check_transition(stored, target)
        if current is new_status:
            await session.rollback()
            return {"success": True, "order_id": str(parsed), "status": current.value, "changed": False}

        now = datetime.now(timezone.utc)
        event = events.OrderStatusChanged(
            order_id=str(parsed),
            from_status=current.value,
            to_status=new_status.value,
            timestamp=now,
        )
        version = await event_store.current_version(session, parsed)
        await event_store.append_event(
            session, parsed, "OrderStatusChanged", event.model_dump(mode="json"), version
        )
        await _write_status(session, parsed, new_status, now)
        await session.commit()

        await events.publish(redis, events.ORDER_CHANNEL, event)
        logger.info("Order %s status %s -> %s", parsed, current.value, new_status.value)
        return {"success": True, "order_id": str(parsed), "status": new_status.value, "changed": True}
    except StorefrontError as e:
        await session.rollback()
        return failure(e)
    except Exception as e:
        await session.rollback()
        return unexpected(e, "Update order status")
