"""
Ledger — 期限切れスイーパー (ExpirationSweeper)

期限付きの確保 (未払いキャッシュ注文・サブスクリプション・プロモーション枠) を
1 つのアルゴリズムで終端状態へ進め、在庫を解放する。

    SELECT id FROM <table>
    WHERE status IN (:eligible) AND <expiry> < :now
    ORDER BY <expiry> LIMIT :batch

各レコードは独立したセッション (トランザクション) で処理する。
1 件の失敗はログに残してスキップし、次回の実行で再試行される。
重複実行されても、遷移の条件付き UPDATE により解放は 1 回だけ。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

import redis.asyncio as aioredis
from sqlalchemy import Column, Table, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from . import commands, entitlements, event_store, idempotency
from .aggregate import OrderStatus
from .config import Settings
from .entitlements import EntitlementStatus
from .errors import InvalidStateError
from .schema import entitlements as entitlements_table
from .schema import orders, utcnow

logger = logging.getLogger(__name__)

HOLD_EXPIRED_REASON = "hold_expired"


@dataclass(frozen=True)
class SweepTarget:
    """スイープ対象の種類 (テーブル・期限列・対象ステータス・終了処理)"""

    name: str
    table: Table
    expiry_column: Column
    statuses: frozenset[str]
    expire: Callable[..., Awaitable]
    where: ColumnElement | None = None

    def query(self, now: datetime, batch_size: int):
        stmt = (
            select(self.table.c.id)
            .where(self.table.c.status.in_(sorted(self.statuses)))
            .where(self.expiry_column.is_not(None))
            .where(self.expiry_column < now)
        )
        if self.where is not None:
            stmt = stmt.where(self.where)
        return stmt.order_by(self.expiry_column).limit(batch_size)


@dataclass
class SweepReport:
    processed_count: int = 0
    released_count: int = 0
    failed_count: int = 0

    def add(self, other: "SweepReport") -> None:
        self.processed_count += other.processed_count
        self.released_count += other.released_count
        self.failed_count += other.failed_count

    def to_dict(self) -> dict:
        return {
            "processed_count": self.processed_count,
            "released_count": self.released_count,
            "failed_count": self.failed_count,
        }


# ── 対象ごとの終了処理 ───────────────────────────


async def _expire_cash_order(session, order_id: str, now: datetime):
    return await commands.apply_cancel(
        session, order_id, HOLD_EXPIRED_REASON, now,
        from_statuses=frozenset({OrderStatus.PENDING_PAYMENT}),
    )


async def _expire_subscription(session, entitlement_id: str, now: datetime):
    return await entitlements.expire(
        session, entitlement_id, now, from_statuses=entitlements.LIVE_STATUSES
    )


async def _expire_promotion(session, entitlement_id: str, now: datetime):
    return await entitlements.expire(
        session, entitlement_id, now,
        from_statuses=frozenset({EntitlementStatus.PENDING, EntitlementStatus.ACTIVE}),
    )


CASH_ORDERS = SweepTarget(
    name="cash_orders",
    table=orders,
    expiry_column=orders.c.expires_at,
    statuses=frozenset({OrderStatus.PENDING_PAYMENT.value}),
    expire=_expire_cash_order,
)

SUBSCRIPTIONS = SweepTarget(
    name="subscriptions",
    table=entitlements_table,
    expiry_column=entitlements_table.c.expires_at,
    statuses=frozenset({s.value for s in entitlements.LIVE_STATUSES}),
    expire=_expire_subscription,
    where=entitlements_table.c.kind == "SUBSCRIPTION",
)

PROMOTIONS = SweepTarget(
    name="promotions",
    table=entitlements_table,
    expiry_column=entitlements_table.c.expires_at,
    statuses=frozenset({EntitlementStatus.PENDING.value, EntitlementStatus.ACTIVE.value}),
    expire=_expire_promotion,
    where=entitlements_table.c.kind == "PROMOTION",
)

ALL_TARGETS = (CASH_ORDERS, SUBSCRIPTIONS, PROMOTIONS)
ENTITLEMENT_TARGETS = (SUBSCRIPTIONS, PROMOTIONS)


# ── スイープ本体 ─────────────────────────────────


async def sweep_target(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    target: SweepTarget,
    now: datetime,
    batch_size: int,
    channel: str,
) -> SweepReport:
    report = SweepReport()

    async with session_factory() as session:
        result = await session.execute(target.query(now, batch_size))
        ids = [row.id for row in result.fetchall()]

    for record_id in ids:
        async with session_factory() as session:
            try:
                outcome = await target.expire(session, record_id, now)
                await session.commit()
            except InvalidStateError as e:
                # 別の経路 (支払い確認など) で先に状態が変わった
                await session.rollback()
                logger.info("Sweep %s skipped %s: %s", target.name, record_id, e)
                continue
            except Exception:
                await session.rollback()
                report.failed_count += 1
                logger.exception("Sweep %s failed on %s", target.name, record_id)
                continue

        if not outcome.changed:
            continue
        report.processed_count += 1
        report.released_count += outcome.released_quantity
        await event_store.publish_events(redis, channel, outcome.events)

    if ids:
        logger.info(
            "Sweep %s: %d candidate(s), processed=%d released=%d failed=%d",
            target.name, len(ids), report.processed_count,
            report.released_count, report.failed_count,
        )
    return report


async def run_sweep(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None = None,
    targets: tuple[SweepTarget, ...] = ALL_TARGETS,
    now: datetime | None = None,
    batch_size: int | None = None,
    settings: Settings | None = None,
) -> SweepReport:
    """全対象をスイープし、合計のレポートを返す。"""
    settings = settings or Settings()
    now = now or utcnow()
    batch_size = batch_size or settings.sweep_batch_size

    report = SweepReport()
    for target in targets:
        report.add(
            await sweep_target(
                session_factory, redis, target, now, batch_size, settings.events_channel
            )
        )
    return report


# ── バックグラウンドスケジューラ ──────────────────


CLEANUP_INTERVAL_SECONDS = 86400


async def run_scheduler(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> None:
    """
    shutdown_event がセットされるまで、各ジョブを間隔ごとに実行する。

      - キャッシュ注文: cash_sweep_interval_seconds ごと
      - サブスクリプション・プロモーション: entitlement_sweep_interval_seconds ごと
      - Webhook ガード行の削除: 1 日ごと
    """

    async def sweep_cash():
        await run_sweep(session_factory, redis, (CASH_ORDERS,), settings=settings)

    async def sweep_entitlements():
        await run_sweep(session_factory, redis, ENTITLEMENT_TARGETS, settings=settings)

    async def cleanup_webhooks():
        async with session_factory() as session:
            await idempotency.cleanup_expired(session)

    jobs = [
        ["cash_orders", settings.cash_sweep_interval_seconds, sweep_cash, 0.0],
        ["entitlements", settings.entitlement_sweep_interval_seconds, sweep_entitlements, 0.0],
        ["webhook_cleanup", CLEANUP_INTERVAL_SECONDS, cleanup_webhooks, 0.0],
    ]
    loop = asyncio.get_running_loop()
    logger.info("Sweeper started")

    while not shutdown_event.is_set():
        for job in jobs:
            name, interval, run, due = job
            if loop.time() < due:
                continue
            try:
                await run()
            except Exception:
                logger.exception("Scheduled job %s failed", name)
            job[3] = loop.time() + interval
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            pass

    logger.info("Sweeper stopped")
