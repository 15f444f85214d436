"""
Storefront Service — FastAPI エントリーポイント

Command (POST / PATCH) と Query (GET) のエンドポイントを分けて公開する。
各操作は一律の結果 dict を返し、ここで HTTP ステータスに対応付ける。

    ┌──────────┐     ┌────────────┐     ┌────────────────────┐
    │ Frontend │────▶│ Storefront │────▶│ PostgreSQL (商品/注文) │
    │          │     │            │────▶│ 決済プロバイダ          │
    │          │     │            │────▶│ 認証プロバイダ          │
    │          │     │            │────▶│ Redis Pub/Sub         │
    └──────────┘     └────────────┘     └────────────────────┘
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from . import catalog, checkout, commands, config, db, event_store, queries
from .auth import AuthClient, bearer_token
from .models import CartLineItem, Identity
from .payments import PaymentProvider
from .search import ProductFilters

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = db.make_engine()
async_session = db.make_session_factory(engine)
redis_pool: aioredis.Redis | None = None
payments: PaymentProvider | None = None
auth_client: AuthClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, payments, auth_client
    await db.init_schema(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    payments = PaymentProvider()
    auth_client = AuthClient()
    logger.info("Storefront service started")
    yield
    await auth_client.aclose()
    await payments.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────

class CheckoutRequest(BaseModel):
    items: list[CartLineItem] = []


class UpdateProductRequest(BaseModel):
    price: Decimal | None = Field(None, ge=0)
    stock: int | None = Field(None, ge=0)
    featured: bool | None = None


class UpdateStatusRequest(BaseModel):
    status: str


# ── 認証 ─────────────────────────────────────────

async def current_identity(authorization: str | None = Header(default=None)) -> Identity | None:
    return await auth_client.current_identity(bearer_token(authorization))


async def require_admin(identity: Identity | None = Depends(current_identity)) -> Identity:
    if identity is None:
        raise HTTPException(401, "Not authenticated")
    if not identity.is_admin:
        raise HTTPException(403, "Forbidden")
    return identity


_STATUS_BY_CODE = {
    "unauthenticated": 401,
    "not_found": 404,
    "conflict": 409,
    "empty_cart": 422,
    "validation_failed": 422,
    "illegal_transition": 422,
    "provider_failure": 502,
}


def _respond(result: dict) -> dict:
    if not result["success"]:
        raise HTTPException(_STATUS_BY_CODE.get(result.get("code"), 500), result["error"])
    return result


# ── Catalog ──────────────────────────────────────

@app.get("/api/products")
async def search_products(
    q: str = "",
    category: str = "",
    color: str = "",
    material: str = "",
    min_price: Decimal = Decimal(0),
    max_price: Decimal = Decimal(0),
    in_stock: bool = False,
    sort: str | None = None,
):
    """商品検索。空文字 / 0 / false の条件は絞り込みに使わない。"""
    filters = ProductFilters(
        search_term=q,
        category_slug=category,
        color=color,
        material=material,
        min_price=min_price,
        max_price=max_price,
        in_stock=in_stock,
    )
    async with async_session() as session:
        products = await catalog.filter_products(session, filters, sort)
        return [p.model_dump(mode="json") for p in products]


# ── Checkout ─────────────────────────────────────

@app.post("/api/checkout")
async def create_checkout(req: CheckoutRequest, identity: Identity | None = Depends(current_identity)):
    async with async_session() as session:
        return _respond(await checkout.create_checkout_session(
            session, redis_pool, payments, identity, req.items,
        ))


@app.get("/api/checkout/sessions/{session_id}")
async def get_checkout_session(session_id: str, identity: Identity | None = Depends(current_identity)):
    return _respond(await checkout.get_checkout_session(payments, identity, session_id))


@app.post("/api/checkout/sessions/{session_id}/complete")
async def complete_checkout(session_id: str, identity: Identity | None = Depends(current_identity)):
    async with async_session() as session:
        return _respond(await commands.complete_checkout(
            session, redis_pool, payments, identity, session_id,
        ))


@app.post("/api/checkout/sessions/{session_id}/cancel")
async def cancel_checkout(session_id: str, identity: Identity | None = Depends(current_identity)):
    async with async_session() as session:
        return _respond(await checkout.cancel_checkout(
            session, redis_pool, payments, identity, session_id,
        ))


# ── Orders (Query) ───────────────────────────────

@app.get("/api/orders")
async def list_my_orders(identity: Identity | None = Depends(current_identity)):
    async with async_session() as session:
        return _respond(await queries.get_user_orders(session, identity))


@app.get("/api/orders/{order_id}")
async def get_my_order(order_id: str, identity: Identity | None = Depends(current_identity)):
    async with async_session() as session:
        return _respond(await queries.get_order_by_id(session, identity, order_id))


# ── Admin ────────────────────────────────────────

@app.get("/admin/orders")
async def admin_list_orders(_: Identity = Depends(require_admin)):
    async with async_session() as session:
        return await queries.list_orders(session)


@app.patch("/admin/orders/{order_id}/status")
async def admin_update_status(
    order_id: str,
    req: UpdateStatusRequest,
    _: Identity = Depends(require_admin),
):
    async with async_session() as session:
        return _respond(await commands.update_order_status(session, redis_pool, order_id, req.status))


@app.get("/admin/orders/{order_id}/events")
async def admin_order_events(order_id: UUID, _: Identity = Depends(require_admin)):
    """指定注文のイベント履歴を返す"""
    async with async_session() as session:
        return await event_store.load_events(session, order_id)


@app.patch("/admin/products/{product_id}")
async def admin_update_product(
    product_id: str,
    req: UpdateProductRequest,
    _: Identity = Depends(require_admin),
):
    async with async_session() as session:
        product = await catalog.update_product_fields(session, product_id, req.model_dump())
        if not product:
            raise HTTPException(404, "Product not found")
        return product.model_dump(mode="json")


@app.get("/admin/inventory/low-stock")
async def admin_low_stock(_: Identity = Depends(require_admin)):
    async with async_session() as session:
        return [p.model_dump(mode="json") for p in await catalog.list_low_stock(session)]


@app.get("/admin/inventory/out-of-stock")
async def admin_out_of_stock(_: Identity = Depends(require_admin)):
    async with async_session() as session:
        return [p.model_dump(mode="json") for p in await catalog.list_out_of_stock(session)]


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}
