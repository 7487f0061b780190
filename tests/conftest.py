"""
テスト共通フィクスチャ

テストごとにファイルベースの SQLite (aiosqlite) を作る。
NullPool なので各セッションは独立した接続になり、同時実行のテストが書ける。
Redis は fakeredis で置き換える。
"""

import fakeredis
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from ledger import inventory
from ledger.config import Settings
from ledger.schema import metadata


@pytest_asyncio.fixture
async def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        sweeper_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def make_unit(session_factory):
    """販売単位を作ってコミットし、ID を返す関数"""

    async def _make(
        capacity: int | None = 5,
        price_cents: int = 1000,
        kind: str = "TICKET_TIER",
        name: str = "General Admission",
    ) -> str:
        async with session_factory() as session:
            unit, _ = await inventory.create_unit(session, name, kind, capacity, price_cents)
            await session.commit()
            return unit["id"]

    return _make


@pytest_asyncio.fixture
async def committed(session_factory):
    """販売単位の現在の committed を読む関数"""

    async def _committed(unit_id: str) -> int:
        async with session_factory() as session:
            unit = await inventory.get_unit(session, unit_id)
            return unit["committed"]

    return _committed
