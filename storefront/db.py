"""
Storefront Service — データベース接続

カタログ・注文・在庫予約・注文イベントを1つの PostgreSQL に置く。
asyncpg の command_timeout で、応答しないクエリが呼び出し元を
無期限に止めないようにする。
"""

from importlib import resources

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config


def make_engine(url: str = config.DATABASE_URL) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=False,
        connect_args={"command_timeout": config.DB_COMMAND_TIMEOUT_SECONDS},
    )


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """schema.sql を1文ずつ適用する(すべて IF NOT EXISTS)。"""
    ddl = resources.files(__package__).joinpath("schema.sql").read_text()
    statements = [s.strip() for s in ddl.split(";") if s.strip()]
    async with engine.begin() as conn:
        for stmt in statements:
            await conn.execute(text(stmt))
