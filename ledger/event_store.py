"""
Ledger — イベントストア

すべての状態変更をイベントとして追記する監査ログ。
(aggregate_id, version) の一意制約により、同じバージョンへの
同時追記は IntegrityError となる (楽観的排他制御)。

Redis への発行はコミット後に行う。ロールバックされた変更が
外部に漏れることはない。
"""

import json
import logging
from collections.abc import Iterable

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .events import DomainEvent
from .schema import event_store, utcnow

logger = logging.getLogger(__name__)


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event: DomainEvent,
    version: int,
) -> int:
    await session.execute(
        insert(event_store).values(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event.event_type,
            event_data=event.payload(),
            version=version,
            created_at=utcnow(),
        )
    )
    return version


async def next_version(session: AsyncSession, aggregate_id: str) -> int:
    """バージョン列を持たない集約 (紛争など) 用。"""
    result = await session.execute(
        select(func.max(event_store.c.version)).where(
            event_store.c.aggregate_id == aggregate_id
        )
    )
    current = result.scalar()
    return (current or 0) + 1


def _row_to_dict(row) -> dict:
    return {
        "aggregate_id": row.aggregate_id,
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": row.event_data,
        "version": row.version,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == aggregate_id)
        .order_by(event_store.c.version.asc())
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def publish_events(
    redis: aioredis.Redis | None,
    channel: str,
    events: Iterable[DomainEvent],
) -> None:
    """コミット済みイベントを Redis Pub/Sub で発行する。失敗してもコミットは取り消さない。"""
    if redis is None:
        return
    for event in events:
        try:
            await redis.publish(
                channel,
                json.dumps(
                    {"event_type": event.event_type, "data": event.payload()},
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s to %s", event.event_type, channel)
