"""
Storefront Service — クエリハンドラ (注文の読み取り側)

利用者向けの読み取りは2つ:
    - 自分の注文一覧(新しい順)
    - 注文1件(所有者チェック付き)

他人の注文は「存在しない」と同じ結果を返す。
注文の有無を他人に知られないようにするため。
"""

import json
from uuid import UUID

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound, StorefrontError, Unauthenticated, failure, unexpected
from .models import Identity
from .status import display_for, resolve_status


def _json(value):
    return json.loads(value) if isinstance(value, str) else value


def _to_order(row, items: list[dict]) -> dict:
    status = resolve_status(row.status)
    return {
        "id": str(row.id),
        "order_number": row.order_number,
        "user_id": row.user_id,
        "email": row.email,
        "status": status.value,
        "status_label": display_for(status.value).label,
        "items": items,
        "total": float(row.total),
        "address": _json(row.address),
        "checkout_session_id": row.checkout_session_id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    if not order_ids:
        return {}
    stmt = text("""
        SELECT order_id, product_id, product_name, quantity, price
        FROM order_items
        WHERE order_id IN :ids
        ORDER BY order_id, position
    """).bindparams(bindparam("ids", expanding=True))
    result = await session.execute(stmt, {"ids": order_ids})
    items: dict[str, list[dict]] = {oid: [] for oid in order_ids}
    for row in result.fetchall():
        items[str(row.order_id)].append({
            "product_id": row.product_id,
            "product_name": row.product_name,
            "quantity": row.quantity,
            "price": float(row.price),
        })
    return items


async def _to_orders(session: AsyncSession, rows) -> list[dict]:
    items = await _load_items(session, [str(row.id) for row in rows])
    return [_to_order(row, items[str(row.id)]) for row in rows]


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return (await _to_orders(session, [row]))[0]


async def list_orders_for_user(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM orders WHERE user_id = :user_id ORDER BY created_at DESC"),
        {"user_id": user_id},
    )
    return await _to_orders(session, result.fetchall())


async def list_orders(session: AsyncSession) -> list[dict]:
    """全注文一覧(管理画面用、新しい順)"""
    result = await session.execute(text("SELECT * FROM orders ORDER BY created_at DESC"))
    return await _to_orders(session, result.fetchall())


async def find_order_by_checkout_session(session: AsyncSession, checkout_session_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT id FROM orders WHERE checkout_session_id = :sid"),
        {"sid": checkout_session_id},
    )
    order_id = result.scalar_one_or_none()
    return await get_order(session, order_id) if order_id else None


# ── 呼び出し元向け (一律の結果 dict を返す) ───────

async def get_user_orders(session: AsyncSession, identity: Identity | None) -> dict:
    try:
        if identity is None:
            raise Unauthenticated("Not authenticated")
        orders = await list_orders_for_user(session, identity.user_id)
        return {"success": True, "orders": orders}
    except StorefrontError as e:
        return {**failure(e), "orders": []}
    except Exception as e:
        return {**unexpected(e, "Fetch orders"), "error": "Failed to fetch orders", "orders": []}


async def get_order_by_id(session: AsyncSession, identity: Identity | None, order_id: str) -> dict:
    """
    注文を1件返す。存在しない場合も他人の注文の場合も同じ NotFound。
    """
    try:
        if identity is None:
            raise Unauthenticated("Not authenticated")
        try:
            parsed = UUID(order_id)
        except ValueError:
            raise NotFound() from None
        order = await get_order(session, parsed)
        if order is None or order["user_id"] != identity.user_id:
            raise NotFound()
        return {"success": True, "order": order}
    except StorefrontError as e:
        return failure(e)
    except Exception as e:
        return {**unexpected(e, "Fetch order"), "error": "Failed to fetch order"}
