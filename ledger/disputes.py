"""
Ledger — 紛争処理 (DisputeResolver)

決済プロバイダのチャージバック (紛争) を記録し、注文の状態に反映する。

    OPEN → UNDER_REVIEW → WON | LOST | CLOSED

  - open: プロバイダの紛争 ID で冪等に作成し、注文を DISPUTED にする
  - resolve: 結果コードを WON / LOST / CLOSED に変換する
      LOST         → 注文を返金 (在庫解放)
      WON          → 注文を COMPLETED に復帰
      CLOSED       → 注文はそのまま (DISPUTED のまま残る)
    紛争ステータスの条件付き UPDATE により、2 回目の resolve は何もしない。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, event_store
from .aggregate import OrderStatus
from .config import DEFAULT_DISPUTE_OUTCOMES, Settings
from .errors import InvalidStateError, NotFoundError
from .events import DisputeEvidenceSubmitted, DisputeOpened, DisputeResolved, DomainEvent
from .schema import disputes, utcnow

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Dispute"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    WON = "WON"
    LOST = "LOST"
    CLOSED = "CLOSED"


UNRESOLVED_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})
RESOLVED_STATUSES = frozenset({DisputeStatus.WON, DisputeStatus.LOST, DisputeStatus.CLOSED})


def map_outcome(outcome_code: str, outcomes: dict[str, str] | None = None) -> DisputeStatus:
    """プロバイダ固有の結果コード → WON / LOST / CLOSED (未知のコードは CLOSED)"""
    table = DEFAULT_DISPUTE_OUTCOMES if outcomes is None else outcomes
    status = DisputeStatus(table.get(outcome_code, DisputeStatus.CLOSED.value))
    if status not in RESOLVED_STATUSES:
        raise ValueError(f"outcome '{outcome_code}' maps to non-final status {status.value}")
    return status


@dataclass
class DisputeResult:
    dispute: dict
    changed: bool
    already_exists: bool = False
    order_status: str | None = None
    released_quantity: int = 0
    events: list[DomainEvent] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "dispute_id": self.dispute["id"],
            "provider_dispute_id": self.dispute["provider_dispute_id"],
            "status": self.dispute["status"],
            "order_id": self.dispute["order_id"],
            "order_status": self.order_status,
            "already_exists": self.already_exists,
            "changed": self.changed,
            "released_quantity": self.released_quantity,
        }


def _dispute_to_dict(row) -> dict:
    return {
        "id": row.id,
        "provider_dispute_id": row.provider_dispute_id,
        "provider": row.provider,
        "order_id": row.order_id,
        "status": row.status,
        "amount_cents": row.amount_cents,
        "currency": row.currency,
        "reason": row.reason,
        "buyer_email": row.buyer_email,
        "response_deadline": row.response_deadline,
        "evidence_submitted_at": row.evidence_submitted_at,
        "internal_notes": row.internal_notes,
        "outcome_code": row.outcome_code,
        "outcome_reason": row.outcome_reason,
        "resolved_at": row.resolved_at,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_dispute(session: AsyncSession, provider_dispute_id: str) -> dict | None:
    """プロバイダの紛争 ID (または内部 ID) で取得する。"""
    result = await session.execute(
        select(disputes).where(
            (disputes.c.provider_dispute_id == provider_dispute_id)
            | (disputes.c.id == provider_dispute_id)
        )
    )
    row = result.first()
    return _dispute_to_dict(row) if row else None


async def list_disputes(
    session: AsyncSession, status: str | None = None, limit: int = 100
) -> list[dict]:
    stmt = select(disputes).order_by(disputes.c.created_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(disputes.c.status == status)
    result = await session.execute(stmt)
    return [_dispute_to_dict(row) for row in result.fetchall()]


async def dispute_stats(session: AsyncSession) -> dict:
    """ステータス別件数と、未解決紛争の合計金額。"""
    result = await session.execute(
        select(disputes.c.status, func.count(), func.coalesce(func.sum(disputes.c.amount_cents), 0))
        .group_by(disputes.c.status)
    )
    counts = {s.value: 0 for s in DisputeStatus}
    at_risk = 0
    for status, count, amount in result.fetchall():
        counts[status] = count
        if status in {s.value for s in UNRESOLVED_STATUSES}:
            at_risk += amount
    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "amount_at_risk_cents": at_risk,
    }


async def _locate_order(session: AsyncSession, order_ref: str | None) -> dict | None:
    if not order_ref:
        return None
    matches = await commands.find_orders_by_ref(session, order_ref)
    if len(matches) > 1:
        logger.warning("Order ref %s matches %d orders; using the first", order_ref, len(matches))
    return matches[0] if matches else None


# ── 操作 (コミットしない) ────────────────────────


async def open_dispute(
    session: AsyncSession,
    provider_dispute_id: str,
    provider: str,
    order_ref: str | None,
    amount_cents: int,
    reason: str | None = None,
    currency: str = "USD",
    buyer_email: str | None = None,
    response_deadline: datetime | None = None,
    now: datetime | None = None,
) -> DisputeResult:
    """
    紛争を記録し、対象注文を DISPUTED にする。

    同じ provider_dispute_id が既にあれば何も変えずに既存レコードを返す。
    注文が見つからなくても紛争は記録する (order_id = None)。
    """
    now = now or utcnow()
    existing = await get_dispute(session, provider_dispute_id)
    if existing is not None:
        return DisputeResult(existing, False, already_exists=True)

    order = await _locate_order(session, order_ref)
    dispute_id = str(uuid4())
    try:
        # SAVEPOINT 内で挿入する。一意制約違反でも呼び出し側の書き込み (Webhook の確保行) は残る
        async with session.begin_nested():
            await session.execute(
                insert(disputes).values(
                    id=dispute_id,
                    provider_dispute_id=provider_dispute_id,
                    provider=provider,
                    order_id=order["id"] if order else None,
                    status=DisputeStatus.OPEN.value,
                    amount_cents=amount_cents,
                    currency=currency,
                    reason=reason,
                    buyer_email=buyer_email,
                    response_deadline=response_deadline,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # 同時配信に先を越された。既存を返す
        existing = await get_dispute(session, provider_dispute_id)
        if existing is None:
            raise
        return DisputeResult(existing, False, already_exists=True)

    events: list[DomainEvent] = []
    order_status = None
    if order is None:
        logger.warning("Dispute %s: order %s not found", provider_dispute_id, order_ref)
    else:
        try:
            outcome = await commands.apply_dispute(session, order["id"], provider_dispute_id, now)
            events.extend(outcome.events)
            order_status = outcome.order["status"]
        except InvalidStateError as e:
            order_status = e.current
            logger.warning("Dispute %s: order left unchanged: %s", provider_dispute_id, e)

    event = DisputeOpened(
        timestamp=now,
        provider_dispute_id=provider_dispute_id,
        provider=provider,
        order_id=order["id"] if order else None,
        amount_cents=amount_cents,
    )
    await event_store.append_event(session, dispute_id, AGGREGATE_TYPE, event, 1)
    dispute = await get_dispute(session, provider_dispute_id)
    logger.info(
        "Dispute %s opened (%s, %d cents) on order %s",
        provider_dispute_id, provider, amount_cents, dispute["order_id"],
    )
    return DisputeResult(dispute, True, order_status=order_status, events=events + [event])


async def resolve_dispute(
    session: AsyncSession,
    provider_dispute_id: str,
    outcome_code: str,
    outcome_reason: str | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> DisputeResult:
    """
    紛争を解決し、結果を注文に反映する。

    Raises:
        NotFoundError: 紛争が存在しない
    """
    settings = settings or Settings()
    now = now or utcnow()
    status = map_outcome(outcome_code, settings.dispute_outcomes)

    result = await session.execute(
        update(disputes)
        .where(
            (disputes.c.provider_dispute_id == provider_dispute_id)
            | (disputes.c.id == provider_dispute_id)
        )
        .where(disputes.c.status.in_([s.value for s in UNRESOLVED_STATUSES]))
        .values(
            status=status.value,
            outcome_code=outcome_code,
            outcome_reason=outcome_reason,
            resolved_at=now,
            updated_at=now,
        )
    )
    dispute = await get_dispute(session, provider_dispute_id)
    if dispute is None:
        raise NotFoundError(AGGREGATE_TYPE, provider_dispute_id)
    if result.rowcount != 1:
        logger.info("Dispute %s already resolved as %s", provider_dispute_id, dispute["status"])
        return DisputeResult(dispute, False)

    events: list[DomainEvent] = []
    released = 0
    order_status = None
    order_id = dispute["order_id"]
    if order_id:
        order = await commands.get_order(session, order_id)
        current = OrderStatus(order["status"])
        if status == DisputeStatus.LOST and current in commands.REFUND_FROM:
            outcome = await commands.apply_refund(session, order_id, "dispute_lost", now)
        elif status == DisputeStatus.WON and current in commands.RESTORE_FROM:
            outcome = await commands.apply_restore(
                session, order_id, dispute["provider_dispute_id"], now
            )
        else:
            outcome = None
            logger.info(
                "Dispute %s %s: order %s left in %s",
                provider_dispute_id, status.value, order_id, current.value,
            )
        if outcome is not None:
            events.extend(outcome.events)
            released = outcome.released_quantity
            order_status = outcome.order["status"]
        else:
            order_status = current.value

    event = DisputeResolved(
        timestamp=now,
        provider_dispute_id=dispute["provider_dispute_id"],
        status=status.value,
        outcome_code=outcome_code,
        order_id=order_id,
    )
    version = await event_store.next_version(session, dispute["id"])
    await event_store.append_event(session, dispute["id"], AGGREGATE_TYPE, event, version)
    logger.info(
        "Dispute %s resolved as %s (%s), released %d unit(s)",
        provider_dispute_id, status.value, outcome_code, released,
    )
    return DisputeResult(
        dispute, True, order_status=order_status,
        released_quantity=released, events=events + [event],
    )


async def mark_evidence_submitted(
    session: AsyncSession, provider_dispute_id: str, now: datetime | None = None
) -> DisputeResult:
    """OPEN → UNDER_REVIEW"""
    now = now or utcnow()
    result = await session.execute(
        update(disputes)
        .where(
            (disputes.c.provider_dispute_id == provider_dispute_id)
            | (disputes.c.id == provider_dispute_id)
        )
        .where(disputes.c.status == DisputeStatus.OPEN.value)
        .values(
            status=DisputeStatus.UNDER_REVIEW.value,
            evidence_submitted_at=now,
            updated_at=now,
        )
    )
    dispute = await get_dispute(session, provider_dispute_id)
    if dispute is None:
        raise NotFoundError(AGGREGATE_TYPE, provider_dispute_id)
    if result.rowcount != 1:
        if dispute["status"] == DisputeStatus.UNDER_REVIEW.value:
            return DisputeResult(dispute, False)
        raise InvalidStateError(
            AGGREGATE_TYPE, provider_dispute_id, dispute["status"], "submit evidence for"
        )

    event = DisputeEvidenceSubmitted(
        timestamp=now, provider_dispute_id=dispute["provider_dispute_id"]
    )
    version = await event_store.next_version(session, dispute["id"])
    await event_store.append_event(session, dispute["id"], AGGREGATE_TYPE, event, version)
    return DisputeResult(dispute, True, events=[event])


async def add_notes(
    session: AsyncSession, provider_dispute_id: str, notes: str, now: datetime | None = None
) -> DisputeResult:
    now = now or utcnow()
    result = await session.execute(
        update(disputes)
        .where(
            (disputes.c.provider_dispute_id == provider_dispute_id)
            | (disputes.c.id == provider_dispute_id)
        )
        .values(internal_notes=notes, updated_at=now)
    )
    if result.rowcount != 1:
        raise NotFoundError(AGGREGATE_TYPE, provider_dispute_id)
    dispute = await get_dispute(session, provider_dispute_id)
    return DisputeResult(dispute, True)
