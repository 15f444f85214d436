"""
Storefront Service — イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
publish() で Redis Pub/Sub に発行し、他サービスへ通知する。
発行はベストエフォート: 状態変更はコミット済みなので、
Redis に届かなくてもログに残して処理を続ける。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

CHECKOUT_CHANNEL = "checkout_events"
INVENTORY_CHANNEL = "inventory_events"
ORDER_CHANNEL = "order_events"


class CheckoutSessionCreated(BaseModel):
    """決済セッションが作成された"""
    session_id: str
    user_id: str
    reservation_id: str
    product_ids: list[str]
    quantities: list[int]
    timestamp: datetime


class StockReserved(BaseModel):
    """在庫が引き当てられた(条件付き減算が成功した)"""
    reservation_id: str
    product_id: str
    quantity: int
    timestamp: datetime


class StockReleased(BaseModel):
    """在庫の引き当てが解放された(補償トランザクション)"""
    reservation_id: str
    product_id: str
    quantity: int
    timestamp: datetime


class OrderPlaced(BaseModel):
    """支払い済みセッションから注文が作成された"""
    order_id: str
    order_number: str
    user_id: str
    checkout_session_id: str
    total: Decimal
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが遷移した"""
    order_id: str
    from_status: str
    to_status: str
    timestamp: datetime


async def publish(redis: aioredis.Redis, channel: str, event: BaseModel) -> bool:
    """イベントを発行する。失敗してもログに残すだけで例外は送出しない。"""
    event_type = type(event).__name__
    try:
        await redis.publish(channel, json.dumps({
            "event_type": event_type,
            "data": event.model_dump(mode="json"),
        }, default=str))
    except (aioredis.RedisError, OSError):
        logger.exception("Failed to publish %s to %s", event_type, channel)
        return False
    return True
