"""
Storefront Service — カタログ (商品の読み取りと在庫の引き当て)

カタログの価格と在庫は「読み取った瞬間」だけ正しい。
読み取りと決済セッション作成の間に他の購入者が在庫を減らしうるので、
在庫は読み取りでは確保せず、reserve_stock の条件付き減算で確保する:

    UPDATE products SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty

1件でも減算できなければ予約全体をロールバックする。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ValidationFailed
from .models import Product, ValidatedLineItem
from .search import ProductFilters, build_filter_clause, search_products

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 5

_PRODUCT_COLUMNS = """
    p.id, p.name, p.slug, p.description, p.price, p.stock, p.image_url,
    p.color, p.material, p.featured,
    COALESCE(c.slug, '') AS category_slug,
    COALESCE(c.title, '') AS category_title
"""


def _to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        slug=row.slug,
        description=row.description or "",
        price=row.price,
        stock=row.stock,
        image_url=row.image_url,
        category_slug=row.category_slug,
        category_title=row.category_title,
        color=row.color or "",
        material=row.material or "",
        featured=row.featured,
    )


# ── 読み取り ─────────────────────────────────────

async def get_products_by_ids(session: AsyncSession, ids: list[str]) -> list[Product]:
    """
    指定 ID の商品を返す。存在しない ID は結果に含まれないだけで、エラーにはしない。
    """
    if not ids:
        return []
    stmt = text(f"""
        SELECT {_PRODUCT_COLUMNS}
        FROM products p LEFT JOIN categories c ON c.id = p.category_id
        WHERE p.id IN :ids
    """).bindparams(bindparam("ids", expanding=True))
    result = await session.execute(stmt, {"ids": sorted(set(ids))})
    return [_to_product(row) for row in result.fetchall()]


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    products = await get_products_by_ids(session, [product_id])
    return products[0] if products else None


async def filter_products(
    session: AsyncSession,
    filters: ProductFilters,
    sort: str | None = None,
) -> list[Product]:
    """構造化条件は SQL で、検索語と並び順は search モジュールで適用する。"""
    where, params = build_filter_clause(filters)
    result = await session.execute(
        text(f"""
            SELECT {_PRODUCT_COLUMNS}
            FROM products p LEFT JOIN categories c ON c.id = p.category_id
            WHERE {where}
        """),
        params,
    )
    products = [_to_product(row) for row in result.fetchall()]
    return search_products(products, filters, sort)


async def list_low_stock(session: AsyncSession) -> list[Product]:
    result = await session.execute(
        text(f"""
            SELECT {_PRODUCT_COLUMNS}
            FROM products p LEFT JOIN categories c ON c.id = p.category_id
            WHERE p.stock > 0 AND p.stock <= :threshold
            ORDER BY p.stock ASC, p.name ASC
        """),
        {"threshold": LOW_STOCK_THRESHOLD},
    )
    return [_to_product(row) for row in result.fetchall()]


async def list_out_of_stock(session: AsyncSession) -> list[Product]:
    result = await session.execute(
        text(f"""
            SELECT {_PRODUCT_COLUMNS}
            FROM products p LEFT JOIN categories c ON c.id = p.category_id
            WHERE p.stock = 0
            ORDER BY p.name ASC
        """),
    )
    return [_to_product(row) for row in result.fetchall()]


# ── 管理画面からの編集 ───────────────────────────

_EDITABLE_FIELDS = ("price", "stock", "featured")


async def update_product_fields(
    session: AsyncSession,
    product_id: str,
    changes: dict,
) -> Product | None:
    """価格・在庫・おすすめフラグだけを更新できる。"""
    changes = {k: v for k, v in changes.items() if k in _EDITABLE_FIELDS and v is not None}
    if changes:
        assignments = ", ".join(f"{k} = :{k}" for k in changes)
        result = await session.execute(
            text(f"UPDATE products SET {assignments}, updated_at = :now WHERE id = :id"),
            {**changes, "now": datetime.now(timezone.utc), "id": product_id},
        )
        if result.rowcount == 0:
            await session.rollback()
            return None
        await session.commit()
        logger.info("Product %s updated: %s", product_id, sorted(changes))
    return await get_product(session, product_id)


# ── 在庫の引き当て / 解放 ─────────────────────────

async def reserve_stock(
    session: AsyncSession,
    reservation_id: str,
    items: list[ValidatedLineItem],
) -> None:
    """
    検証済み明細の在庫を1トランザクションで引き当てる。

    条件付き減算が1件でも失敗したら全体をロールバックし、
    検証失敗と同じ扱い(ValidationFailed)にする。
    """
    now = datetime.now(timezone.utc)
    try:
        for item in items:
            result = await session.execute(
                text("""
                    UPDATE products
                    SET stock = stock - :qty, updated_at = :now
                    WHERE id = :id AND stock >= :qty
                """),
                {"qty": item.quantity, "now": now, "id": item.product_id},
            )
            if result.rowcount != 1:
                raise ValidationFailed(
                    [f'"{item.product.name}" is no longer available in the requested quantity']
                )
            await session.execute(
                text("""
                    INSERT INTO stock_reservations (reservation_id, product_id, quantity, created_at)
                    VALUES (:rid, :pid, :qty, :now)
                    ON CONFLICT (reservation_id, product_id)
                    DO UPDATE SET quantity = stock_reservations.quantity + EXCLUDED.quantity
                """),
                {"rid": reservation_id, "pid": item.product_id, "qty": item.quantity, "now": now},
            )
    except Exception:
        await session.rollback()
        raise
    await session.commit()
    logger.info("Stock reserved: reservation=%s items=%d", reservation_id, len(items))


async def _take_reservation(session: AsyncSession, reservation_id: str) -> list[tuple[str, int]]:
    result = await session.execute(
        text("""
            DELETE FROM stock_reservations
            WHERE reservation_id = :rid
            RETURNING product_id, quantity
        """),
        {"rid": reservation_id},
    )
    return [(row.product_id, row.quantity) for row in result.fetchall()]


async def release_stock(session: AsyncSession, reservation_id: str) -> list[tuple[str, int]]:
    """
    予約を取り消して在庫を戻す(補償トランザクション)。

    予約がすでに消費・解放済みなら何もしない。
    """
    released = await _take_reservation(session, reservation_id)
    now = datetime.now(timezone.utc)
    for product_id, quantity in released:
        await session.execute(
            text("""
                UPDATE products
                SET stock = stock + :qty, updated_at = :now
                WHERE id = :id
            """),
            {"qty": quantity, "now": now, "id": product_id},
        )
    await session.commit()
    if released:
        logger.info("Stock released: reservation=%s items=%d", reservation_id, len(released))
    return released


async def consume_reservation(session: AsyncSession, reservation_id: str) -> list[tuple[str, int]]:
    """
    注文作成時に予約を確定する。在庫はすでに減算済みなので戻さない。
    コミットは呼び出し側(注文作成と同じトランザクション)で行う。
    """
    return await _take_reservation(session, reservation_id)
