"""
Ledger — 注文コマンドハンドラ (CQRS の Write 側)

注文の作成と状態遷移を処理する。
状態遷移は 1 本の条件付き UPDATE (compare-and-set) で行う:

    UPDATE orders SET status = :to, version = version + 1
    WHERE id = :id AND status IN (:from)

0 行なら注文を読み直し、存在しない → NotFoundError、
既に目的の状態 → 冪等な no-op、それ以外 → InvalidStateError。

apply_* は同じトランザクション内で組み合わせるための部品 (コミットしない)。
create_order / confirm_payment / cancel_order / refund_order は
コミットしてからイベントを Redis に発行する。
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, reservations
from .aggregate import RESERVATION_STATUS_FOR, OrderStatus, sources_for
from .config import Settings
from .errors import InvalidStateError, NotFoundError
from .events import (
    DomainEvent,
    OrderCancelled,
    OrderConfirmed,
    OrderCreated,
    OrderDisputed,
    OrderRefunded,
    OrderRestored,
)
from .reservations import LineItemRequest
from .schema import orders, utcnow

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"

PAYMENT_METHODS = frozenset({"CARD", "PAYPAL", "CASH", "FREE"})

CONFIRM_FROM = frozenset({OrderStatus.PENDING_PAYMENT})
CANCEL_FROM = frozenset({OrderStatus.PENDING_PAYMENT, OrderStatus.DISPUTED})
REFUND_FROM = frozenset({OrderStatus.COMPLETED, OrderStatus.DISPUTED})
# 任意返金は COMPLETED のみ。DISPUTED からの返金は紛争敗訴の経路だけ
VOLUNTARY_REFUND_FROM = frozenset({OrderStatus.COMPLETED})
DISPUTE_FROM = frozenset({OrderStatus.PENDING_PAYMENT, OrderStatus.COMPLETED})
RESTORE_FROM = frozenset({OrderStatus.DISPUTED})


@dataclass(frozen=True)
class BuyerInfo:
    name: str
    email: str | None = None
    phone: str | None = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("buyer name must be non-empty")


@dataclass
class TransitionResult:
    order: dict
    changed: bool
    released_quantity: int = 0
    events: list[DomainEvent] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "order_id": self.order["id"],
            "status": self.order["status"],
            "changed": self.changed,
            "released_quantity": self.released_quantity,
        }


def generate_order_number(payment_method: str, now: datetime) -> str:
    prefix = "CASH" if payment_method == "CASH" else "ORD"
    timestamp = str(int(now.timestamp() * 1000))[-6:]
    return f"{prefix}-{timestamp}-{random.randint(1000, 9999)}"


def _order_to_dict(row) -> dict:
    return {
        "id": row.id,
        "order_number": row.order_number,
        "status": row.status,
        "buyer_name": row.buyer_name,
        "buyer_email": row.buyer_email,
        "buyer_phone": row.buyer_phone,
        "payment_method": row.payment_method,
        "payment_ref": row.payment_ref,
        "currency": row.currency,
        "subtotal_cents": row.subtotal_cents,
        "total_cents": row.total_cents,
        "cancel_reason": row.cancel_reason,
        "version": row.version,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "expires_at": row.expires_at,
        "paid_at": row.paid_at,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.first()
    return _order_to_dict(row) if row else None


async def find_orders_by_ref(session: AsyncSession, ref: str) -> list[dict]:
    """注文 ID または決済プロバイダの支払い ID で注文を探す。"""
    result = await session.execute(
        select(orders)
        .where(or_(orders.c.id == ref, orders.c.payment_ref == ref))
        .order_by(orders.c.created_at)
    )
    return [_order_to_dict(row) for row in result.fetchall()]


async def _transition(
    session: AsyncSession,
    order_id: str,
    target: OrderStatus,
    from_statuses: frozenset[OrderStatus],
    action: str,
    now: datetime,
    values: dict | None = None,
) -> tuple[dict, bool]:
    if not from_statuses <= sources_for(target):
        raise ValueError(f"{sorted(from_statuses)} -> {target} is not in the transition table")

    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .where(orders.c.status.in_([s.value for s in from_statuses]))
        .values(
            status=target.value,
            version=orders.c.version + 1,
            updated_at=now,
            **(values or {}),
        )
    )
    order = await get_order(session, order_id)
    if result.rowcount == 1:
        return order, True
    if order is None:
        raise NotFoundError(AGGREGATE_TYPE, order_id)
    if order["status"] == target.value:
        return order, False
    raise InvalidStateError(AGGREGATE_TYPE, order_id, order["status"], action)


# ── 遷移の部品 (コミットしない) ──────────────────


async def apply_confirm(
    session: AsyncSession,
    order_id: str,
    now: datetime,
    payment_ref: str | None = None,
) -> TransitionResult:
    values = {"paid_at": now}
    if payment_ref:
        values["payment_ref"] = payment_ref
    order, changed = await _transition(
        session, order_id, OrderStatus.COMPLETED, CONFIRM_FROM, "confirm payment for", now, values
    )
    if not changed:
        return TransitionResult(order, False)

    await reservations.set_status_for_order(
        session, order_id, RESERVATION_STATUS_FOR[OrderStatus.COMPLETED]
    )
    event = OrderConfirmed(timestamp=now, order_id=order_id, payment_ref=order["payment_ref"])
    await event_store.append_event(session, order_id, AGGREGATE_TYPE, event, order["version"])
    return TransitionResult(order, True, events=[event])


async def apply_cancel(
    session: AsyncSession,
    order_id: str,
    reason: str,
    now: datetime,
    from_statuses: frozenset[OrderStatus] = CANCEL_FROM,
) -> TransitionResult:
    order, changed = await _transition(
        session, order_id, OrderStatus.CANCELLED, from_statuses, "cancel", now,
        {"cancel_reason": reason},
    )
    if not changed:
        return TransitionResult(order, False)

    released, inventory_events = await reservations.release_for_order(
        session, order_id, RESERVATION_STATUS_FOR[OrderStatus.CANCELLED], now
    )
    event = OrderCancelled(
        timestamp=now, order_id=order_id, reason=reason, released_quantity=released
    )
    await event_store.append_event(session, order_id, AGGREGATE_TYPE, event, order["version"])
    return TransitionResult(order, True, released, inventory_events + [event])


async def apply_refund(
    session: AsyncSession,
    order_id: str,
    reason: str,
    now: datetime,
    from_statuses: frozenset[OrderStatus] = REFUND_FROM,
) -> TransitionResult:
    order, changed = await _transition(
        session, order_id, OrderStatus.REFUNDED, from_statuses, "refund", now
    )
    if not changed:
        return TransitionResult(order, False)

    released, inventory_events = await reservations.release_for_order(
        session, order_id, RESERVATION_STATUS_FOR[OrderStatus.REFUNDED], now
    )
    event = OrderRefunded(
        timestamp=now, order_id=order_id, reason=reason, released_quantity=released
    )
    await event_store.append_event(session, order_id, AGGREGATE_TYPE, event, order["version"])
    return TransitionResult(order, True, released, inventory_events + [event])


async def apply_dispute(
    session: AsyncSession,
    order_id: str,
    provider_dispute_id: str,
    now: datetime,
) -> TransitionResult:
    order, changed = await _transition(
        session, order_id, OrderStatus.DISPUTED, DISPUTE_FROM, "dispute", now
    )
    if not changed:
        return TransitionResult(order, False)

    await reservations.set_status_for_order(
        session, order_id, RESERVATION_STATUS_FOR[OrderStatus.DISPUTED]
    )
    event = OrderDisputed(
        timestamp=now, order_id=order_id, provider_dispute_id=provider_dispute_id
    )
    await event_store.append_event(session, order_id, AGGREGATE_TYPE, event, order["version"])
    return TransitionResult(order, True, events=[event])


async def apply_restore(
    session: AsyncSession,
    order_id: str,
    provider_dispute_id: str,
    now: datetime,
) -> TransitionResult:
    order, changed = await _transition(
        session, order_id, OrderStatus.COMPLETED, RESTORE_FROM, "restore", now
    )
    if not changed:
        return TransitionResult(order, False)

    event = OrderRestored(
        timestamp=now, order_id=order_id, provider_dispute_id=provider_dispute_id
    )
    await event_store.append_event(session, order_id, AGGREGATE_TYPE, event, order["version"])
    return TransitionResult(order, True, events=[event])


# ── コマンド (コミット + 発行) ───────────────────


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    items: list[LineItemRequest],
    buyer: BuyerInfo,
    payment_method: str = "CARD",
    paid: bool = False,
    payment_ref: str | None = None,
    currency: str = "USD",
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict:
    """
    注文作成コマンド (チェックアウト)

    1. 全明細を all-or-nothing で引き当てる
    2. 注文・明細・予約レコードを保存
    3. OrderCreated をイベントストアに追記
    4. コミット後に Redis Pub/Sub でイベントを発行
    """
    settings = settings or Settings()
    now = now or utcnow()
    if payment_method not in PAYMENT_METHODS:
        raise ValueError(f"payment_method '{payment_method}' not valid")

    paid = paid or payment_method == "FREE"
    status = OrderStatus.COMPLETED if paid else OrderStatus.PENDING_PAYMENT
    hold = None if paid else settings.hold_for(payment_method)
    expires_at = now + hold if hold else None

    order_id = str(uuid4())
    order_number = generate_order_number(payment_method, now)

    try:
        priced, inventory_events = await reservations.reserve_for_order(session, order_id, items)
        subtotal = sum(item.line_total_cents for item in priced)

        await session.execute(
            insert(orders).values(
                id=order_id,
                order_number=order_number,
                status=status.value,
                buyer_name=buyer.name,
                buyer_email=buyer.email,
                buyer_phone=buyer.phone,
                payment_method=payment_method,
                payment_ref=payment_ref,
                currency=currency,
                subtotal_cents=subtotal,
                total_cents=subtotal,
                version=1,
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
                paid_at=now if paid else None,
            )
        )
        await reservations.record_for_order(
            session, order_id, priced, RESERVATION_STATUS_FOR[status], now
        )

        event = OrderCreated(
            timestamp=now,
            order_id=order_id,
            order_number=order_number,
            status=status.value,
            payment_method=payment_method,
            total_cents=subtotal,
            line_items=[item.to_dict() for item in priced],
            expires_at=expires_at,
        )
        await event_store.append_event(session, order_id, AGGREGATE_TYPE, event, 1)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await event_store.publish_events(
        redis, settings.events_channel, inventory_events + [event]
    )
    logger.info(
        "Created order %s (%s) status=%s total=%d", order_number, order_id, status.value, subtotal
    )
    return {
        "order_id": order_id,
        "order_number": order_number,
        "status": status.value,
        "total_cents": subtotal,
        "expires_at": expires_at,
    }


async def commit_and_publish(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    settings: Settings | None,
    apply,
    *args,
):
    """apply をトランザクション内で実行し、コミット後にイベントを発行する。"""
    settings = settings or Settings()
    try:
        result = await apply(session, *args)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await event_store.publish_events(redis, settings.events_channel, result.events)
    return result


async def confirm_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    payment_ref: str | None = None,
    settings: Settings | None = None,
) -> TransitionResult:
    """支払い確認コマンド。在庫には触れない (作成時に引き当て済み)。"""
    result = await commit_and_publish(
        session, redis, settings, apply_confirm, order_id, utcnow(), payment_ref
    )
    if result.changed:
        logger.info("Order %s confirmed", order_id)
    return result


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    reason: str,
    settings: Settings | None = None,
) -> TransitionResult:
    """キャンセルコマンド (補償トランザクション: 在庫を解放する)"""
    result = await commit_and_publish(
        session, redis, settings, apply_cancel, order_id, reason, utcnow()
    )
    if result.changed:
        logger.info(
            "Order %s cancelled (%s), released %d unit(s)",
            order_id, reason, result.released_quantity,
        )
    return result


async def refund_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    reason: str = "requested_by_customer",
    settings: Settings | None = None,
) -> TransitionResult:
    """返金コマンド (在庫を解放する)。紛争中の注文は対象外。"""
    result = await commit_and_publish(
        session, redis, settings, apply_refund, order_id, reason, utcnow(),
        VOLUNTARY_REFUND_FROM,
    )
    if result.changed:
        logger.info(
            "Order %s refunded (%s), released %d unit(s)",
            order_id, reason, result.released_quantity,
        )
    return result
