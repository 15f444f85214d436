"""
Storefront Service — チェックアウト

1回のチェックアウトは1本の直列パイプラインで処理する:

    カート検証 → 在庫の引き当て → 決済セッション作成 → リダイレクト URL を返す

決済セッションの作成に失敗した場合は、引き当てた在庫を解放する
(補償トランザクション)。失敗の原因はログに残し、呼び出し元には
汎用メッセージだけを返す。

セッションのメタデータには商品 ID と数量を「並行したカンマ区切り文字列」で
入れる。2つのリストは位置で対応しているので、別々に並べ替えてはいけない。
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import partial
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, config, events
from .cart import validate_cart
from .errors import (
    EmptyCart,
    IllegalTransition,
    NotFound,
    ProviderFailure,
    StorefrontError,
    Unauthenticated,
    failure,
    unexpected,
)
from .models import CartLineItem, CheckoutSession, Identity, ValidatedLineItem
from .payments import PaymentProvider

logger = logging.getLogger(__name__)


def to_minor_units(price: Decimal | float | int) -> int:
    """
    価格を最小通貨単位(ペンス・セント)に変換する。

    price × 100 を最も近い整数に丸める(.5 は切り上げ)。
    切り捨てると請求額がずれるので、float を経由せず Decimal で計算する。
    """
    amount = price if isinstance(price, Decimal) else Decimal(str(price))
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def build_session_params(
    identity: Identity,
    items: list[ValidatedLineItem],
    reservation_id: str | None = None,
) -> dict:
    """検証済み明細から決済セッション作成リクエストを組み立てる。"""
    line_items = []
    for item in items:
        product = item.product
        line_items.append({
            "price_data": {
                "currency": config.CHECKOUT_CURRENCY,
                "product_data": {
                    "name": product.name or "Product",
                    "images": [product.image_url] if product.image_url else [],
                    "metadata": {"productId": product.id},
                },
                "unit_amount": to_minor_units(item.unit_price),
            },
            "quantity": item.quantity,
        })

    metadata = {
        "userId": identity.user_id,
        "userEmail": identity.email,
        "productIds": ",".join(item.product_id for item in items),
        "quantities": ",".join(str(item.quantity) for item in items),
    }
    if reservation_id:
        metadata["reservationId"] = reservation_id

    return {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": line_items,
        "customer_email": identity.email or None,
        "shipping_address_collection": {
            "allowed_countries": list(config.SHIPPING_COUNTRIES),
        },
        "metadata": metadata,
        "success_url": f"{config.PUBLIC_BASE_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{config.PUBLIC_BASE_URL}/checkout",
    }


def parse_session(data: dict) -> CheckoutSession:
    """
    プロバイダのセッションから、メタデータの並行リストを復元する。

    商品 ID と数量の個数が一致しなければ壊れたセッションとして扱う。
    """
    metadata = data.get("metadata") or {}
    product_ids = [p for p in (metadata.get("productIds") or "").split(",") if p]
    quantities = [int(q) for q in (metadata.get("quantities") or "").split(",") if q]
    if len(product_ids) != len(quantities):
        raise ValueError(
            f"Session {data.get('id')} metadata is inconsistent: "
            f"{len(product_ids)} product ids, {len(quantities)} quantities"
        )
    return CheckoutSession(
        id=data["id"],
        url=data.get("url"),
        user_id=metadata.get("userId", ""),
        product_ids=product_ids,
        quantities=quantities,
    )


async def _release_reservation(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
) -> int:
    released = await catalog.release_stock(session, reservation_id)
    now = datetime.now(timezone.utc)
    for product_id, quantity in released:
        await events.publish(redis, events.INVENTORY_CHANNEL, events.StockReleased(
            reservation_id=reservation_id,
            product_id=product_id,
            quantity=quantity,
            timestamp=now,
        ))
    return len(released)


async def create_checkout_session(
    session: AsyncSession,
    redis: aioredis.Redis,
    provider: PaymentProvider,
    identity: Identity | None,
    items: list[CartLineItem],
) -> dict:
    """
    カートから決済セッションを作成する。

    成功: {"success": True, "url": ..., "session_id": ...}
    失敗: {"success": False, "error": ..., "code": ...}
    """
    try:
        if not items:
            raise EmptyCart()
        if identity is None:
            raise Unauthenticated()

        validated = await validate_cart(items, partial(catalog.get_products_by_ids, session))

        # 1. 在庫を引き当てる(失敗すれば検証失敗と同じ扱い)
        reservation_id = uuid4().hex
        await catalog.reserve_stock(session, reservation_id, validated)

        # 2. 決済セッションを作成。失敗したら引き当てを戻す
        try:
            created = await provider.create_checkout_session(
                build_session_params(identity, validated, reservation_id)
            )
            session_id = created["id"]
        except Exception:
            await _release_reservation(session, redis, reservation_id)
            raise

        now = datetime.now(timezone.utc)
        for item in validated:
            await events.publish(redis, events.INVENTORY_CHANNEL, events.StockReserved(
                reservation_id=reservation_id,
                product_id=item.product_id,
                quantity=item.quantity,
                timestamp=now,
            ))
        await events.publish(redis, events.CHECKOUT_CHANNEL, events.CheckoutSessionCreated(
            session_id=session_id,
            user_id=identity.user_id,
            reservation_id=reservation_id,
            product_ids=[item.product_id for item in validated],
            quantities=[item.quantity for item in validated],
            timestamp=now,
        ))
        logger.info("Checkout session %s created for user %s", session_id, identity.user_id)
        return {"success": True, "url": created.get("url"), "session_id": session_id}
    except StorefrontError as e:
        return failure(e)
    except Exception as e:
        return unexpected(e, "Checkout")


async def get_checkout_session(
    provider: PaymentProvider,
    identity: Identity | None,
    session_id: str,
) -> dict:
    """
    完了ページ用にセッションを取得する。

    他人のセッションは「存在しない」と同じ結果を返す。
    """
    try:
        if identity is None:
            raise Unauthenticated("Not authenticated")
        data = await provider.retrieve_checkout_session(
            session_id, expand=["line_items", "customer_details"]
        )
        if (data.get("metadata") or {}).get("userId") != identity.user_id:
            raise NotFound("Session not found")

        details = data.get("customer_details") or {}
        line_items = (data.get("line_items") or {}).get("data") or []
        return {
            "success": True,
            "session": {
                "id": data["id"],
                "customer_email": details.get("email"),
                "customer_name": details.get("name"),
                "amount_total": data.get("amount_total"),
                "payment_status": data.get("payment_status"),
                "shipping_address": details.get("address"),
                "line_items": [
                    {
                        "name": li.get("description"),
                        "quantity": li.get("quantity"),
                        "amount": li.get("amount_total"),
                    }
                    for li in line_items
                ],
            },
        }
    except ProviderFailure:
        return failure(ProviderFailure("Could not retrieve order details"))
    except StorefrontError as e:
        return failure(e)
    except Exception as e:
        return unexpected(e, "Get checkout session")


async def cancel_checkout(
    session: AsyncSession,
    redis: aioredis.Redis,
    provider: PaymentProvider,
    identity: Identity | None,
    session_id: str,
) -> dict:
    """
    未払いのセッションを失効させ、引き当てた在庫を解放する。

    支払い済みのセッションは取り消せない。
    """
    try:
        if identity is None:
            raise Unauthenticated("Not authenticated")
        data = await provider.retrieve_checkout_session(session_id)
        metadata = data.get("metadata") or {}
        if metadata.get("userId") != identity.user_id:
            raise NotFound("Session not found")
        if data.get("payment_status") == "paid" or data.get("status") == "complete":
            raise IllegalTransition("This checkout has already been paid")

        if data.get("status") == "open":
            await provider.expire_checkout_session(session_id)

        released = 0
        if metadata.get("reservationId"):
            released = await _release_reservation(session, redis, metadata["reservationId"])
        logger.info("Checkout session %s cancelled, %d items released", session_id, released)
        return {"success": True, "released": released}
    except StorefrontError as e:
        return failure(e)
    except Exception as e:
        return unexpected(e, "Cancel checkout")
