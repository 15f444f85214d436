"""
Storefront Service — 注文イベントストア

注文に起きた出来事(作成・ステータス遷移)を PostgreSQL に追記する。
現在のステータスは orders テーブル(リードモデル)が持ち、
ここは履歴と、同時編集の検出に使う。

(order_id, version) が主キーなので、同じ version を2人が書こうとすると
後から書いた方が一意制約違反で失敗する → 楽観的ロック。
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConcurrentModification


async def current_version(session: AsyncSession, order_id: UUID) -> int:
    result = await session.execute(
        text("SELECT COALESCE(MAX(version), 0) AS version FROM order_events WHERE order_id = :id"),
        {"id": str(order_id)},
    )
    return result.scalar_one()


async def append_event(
    session: AsyncSession,
    order_id: UUID,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントを追記し、新しい version を返す。

    expected_version の次の番号がすでに使われていれば
    ConcurrentModification を送出する。コミットは呼び出し側で行う。
    """
    new_version = expected_version + 1
    try:
        async with session.begin_nested():
            await session.execute(
                text("""
                    INSERT INTO order_events
                        (order_id, event_type, event_data, version, created_at)
                    VALUES
                        (:id, :evt_type, CAST(:evt_data AS JSONB), :version, :now)
                """),
                {
                    "id": str(order_id),
                    "evt_type": event_type,
                    "evt_data": json.dumps(event_data, default=str),
                    "version": new_version,
                    "now": datetime.now(timezone.utc),
                },
            )
    except IntegrityError as e:
        raise ConcurrentModification() from e
    return new_version


async def load_events(session: AsyncSession, order_id: UUID) -> list[dict]:
    """指定した注文のイベントをバージョン順に読み出す。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM order_events
            WHERE order_id = :id
            ORDER BY version ASC
        """),
        {"id": str(order_id)},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data) if isinstance(row.event_data, str) else row.event_data,
            "version": row.version,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
