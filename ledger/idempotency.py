"""
Ledger — 冪等性ガード (IdempotencyGuard)

外部イベント (Webhook の再送など) をプロバイダのイベント ID で重複排除する。

2 段階で判定する:
  A) アプリケーション層: 保存前に既存レコードを検索
  B) DB 層: 同時挿入による IntegrityError をフォールバックとして捕捉

claim はトランザクションの最初の書き込みとして呼ぶこと。
ガード行は状態変更と同じトランザクションで挿入されるため、
処理が失敗してロールバックされればイベントは未処理のまま残り、
プロバイダの再送で再び処理される。
"""

import logging
from datetime import datetime

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import DuplicateRequestError
from .schema import utcnow, webhook_events

logger = logging.getLogger(__name__)


async def lookup(session: AsyncSession, provider_event_id: str) -> dict | None:
    result = await session.execute(
        select(webhook_events).where(
            webhook_events.c.provider_event_id == provider_event_id
        )
    )
    row = result.first()
    if row is None:
        return None
    return {
        "provider_event_id": row.provider_event_id,
        "provider": row.provider,
        "event_type": row.event_type,
        "order_ref": row.order_ref,
        "result": row.result,
        "processed_at": row.processed_at,
    }


async def is_processed(session: AsyncSession, provider_event_id: str) -> bool:
    return await lookup(session, provider_event_id) is not None


async def claim(
    session: AsyncSession,
    provider_event_id: str,
    provider: str,
    event_type: str,
    order_ref: str | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> None:
    """
    イベント ID を処理済みとして確保する。

    Raises:
        DuplicateRequestError: 既に処理済み (prior_result に前回の結果)
    """
    settings = settings or Settings()
    now = now or utcnow()

    existing = await lookup(session, provider_event_id)
    if existing is not None:
        raise DuplicateRequestError(provider_event_id, existing["result"])

    try:
        await session.execute(
            insert(webhook_events).values(
                provider_event_id=provider_event_id,
                provider=provider,
                event_type=event_type,
                order_ref=order_ref,
                result=None,
                processed_at=now,
                expires_at=now + settings.webhook_retention,
            )
        )
    except IntegrityError:
        # 同時配信に先を越された。claim は最初の書き込みなので巻き戻しても失うものはない
        await session.rollback()
        existing = await lookup(session, provider_event_id)
        logger.info("Concurrent delivery of %s detected at insert", provider_event_id)
        raise DuplicateRequestError(
            provider_event_id, existing["result"] if existing else None
        ) from None


async def record_result(
    session: AsyncSession, provider_event_id: str, result: dict
) -> None:
    """処理結果を保存する (再送時に prior_result として返る)。コミットしない。"""
    await session.execute(
        update(webhook_events)
        .where(webhook_events.c.provider_event_id == provider_event_id)
        .values(result=result)
    )


async def cleanup_expired(session: AsyncSession, now: datetime | None = None) -> int:
    """保持期限を過ぎたガード行を削除する。"""
    now = now or utcnow()
    try:
        result = await session.execute(
            delete(webhook_events).where(webhook_events.c.expires_at < now)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    if result.rowcount:
        logger.info("Deleted %d expired webhook event(s)", result.rowcount)
    return result.rowcount
