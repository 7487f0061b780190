"""
Ledger — Webhook 受信

決済プロバイダ (Stripe / PayPal) のイベント種別を内部種別に正規化し、
冪等性ガードを通してから各操作にディスパッチする。

ガード行・状態変更・処理結果の記録は 1 つのトランザクションで行う。
再送は DuplicateRequestError で短絡し、前回の結果に duplicate=True を付けて返す。
"""

import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, disputes, entitlements, event_store, idempotency
from .aggregate import OrderStatus
from .config import Settings
from .errors import DuplicateRequestError, InvalidStateError
from .events import DomainEvent
from .schema import utcnow

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
DISPUTE_OPENED = "dispute.opened"
DISPUTE_RESOLVED = "dispute.resolved"
SUBSCRIPTION_RENEWED = "subscription.renewed"
SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"

INTERNAL_TYPES = frozenset({
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    DISPUTE_OPENED,
    DISPUTE_RESOLVED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_CANCELLED,
})

# プロバイダ固有の種別 → 内部種別
PROVIDER_EVENT_TYPES: dict[str, dict[str, str]] = {
    "stripe": {
        "payment_intent.succeeded": PAYMENT_SUCCEEDED,
        "payment_intent.payment_failed": PAYMENT_FAILED,
        "charge.refunded": PAYMENT_REFUNDED,
        "charge.dispute.created": DISPUTE_OPENED,
        "charge.dispute.closed": DISPUTE_RESOLVED,
        "invoice.paid": SUBSCRIPTION_RENEWED,
        "invoice.payment_failed": SUBSCRIPTION_PAYMENT_FAILED,
        "customer.subscription.deleted": SUBSCRIPTION_CANCELLED,
    },
    "paypal": {
        "PAYMENT.CAPTURE.COMPLETED": PAYMENT_SUCCEEDED,
        "PAYMENT.SALE.COMPLETED": PAYMENT_SUCCEEDED,
        "PAYMENT.CAPTURE.DENIED": PAYMENT_FAILED,
        "PAYMENT.CAPTURE.REFUNDED": PAYMENT_REFUNDED,
        "CUSTOMER.DISPUTE.CREATED": DISPUTE_OPENED,
        "CUSTOMER.DISPUTE.RESOLVED": DISPUTE_RESOLVED,
        "BILLING.SUBSCRIPTION.PAYMENT.FAILED": SUBSCRIPTION_PAYMENT_FAILED,
        "BILLING.SUBSCRIPTION.CANCELLED": SUBSCRIPTION_CANCELLED,
    },
}


def normalize_type(provider: str, event_type: str) -> str | None:
    """内部種別を返す。未知の種別なら None。"""
    if event_type in INTERNAL_TYPES:
        return event_type
    return PROVIDER_EVENT_TYPES.get(provider.lower(), {}).get(event_type)


class WebhookEvent(BaseModel):
    provider_event_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    order_ref: str | None = None
    payment_ref: str | None = None
    dispute_id: str | None = None
    subscription_ref: str | None = None
    amount_cents: int = Field(0, ge=0)
    currency: str = "USD"
    outcome: str | None = None
    reason: str | None = None
    buyer_email: str | None = None
    period_end: datetime | None = None
    response_deadline: datetime | None = None


# ── 種別ごとのハンドラ (コミットしない) ───────────


async def _for_orders(session, event: WebhookEvent, apply) -> tuple[dict, list[DomainEvent]]:
    ref = event.order_ref or event.payment_ref
    matches = await commands.find_orders_by_ref(session, ref) if ref else []
    if not matches:
        logger.warning("Webhook %s: no order for ref %s", event.provider_event_id, ref)
        return {"status": "order_not_found", "order_ref": ref}, []

    results, events = [], []
    for order in matches:
        try:
            outcome = await apply(order["id"])
        except InvalidStateError as e:
            logger.warning("Webhook %s: %s", event.provider_event_id, e)
            results.append({"order_id": order["id"], "status": e.current, "rejected": True})
            continue
        events.extend(outcome.events)
        results.append(outcome.summary())
    return {"status": "processed", "orders": results}, events


async def _payment_succeeded(session, provider, event, settings, now):
    async def apply(order_id):
        return await commands.apply_confirm(session, order_id, now, event.payment_ref)
    return await _for_orders(session, event, apply)


async def _payment_failed(session, provider, event, settings, now):
    async def apply(order_id):
        return await commands.apply_cancel(
            session, order_id, event.reason or "payment_failed", now,
            from_statuses=frozenset({OrderStatus.PENDING_PAYMENT}),
        )
    return await _for_orders(session, event, apply)


async def _payment_refunded(session, provider, event, settings, now):
    async def apply(order_id):
        return await commands.apply_refund(session, order_id, event.reason or "provider_refund", now)
    return await _for_orders(session, event, apply)


async def _dispute_opened(session, provider, event, settings, now):
    if not event.dispute_id:
        raise ValueError("dispute.opened requires dispute_id")
    outcome = await disputes.open_dispute(
        session,
        event.dispute_id,
        provider,
        event.order_ref or event.payment_ref,
        event.amount_cents,
        reason=event.reason,
        currency=event.currency,
        buyer_email=event.buyer_email,
        response_deadline=event.response_deadline,
        now=now,
    )
    return {"status": "processed", "dispute": outcome.summary()}, outcome.events


async def _dispute_resolved(session, provider, event, settings, now):
    if not event.dispute_id or not event.outcome:
        raise ValueError("dispute.resolved requires dispute_id and outcome")
    outcome = await disputes.resolve_dispute(
        session, event.dispute_id, event.outcome, event.reason, settings=settings, now=now
    )
    return {"status": "processed", "dispute": outcome.summary()}, outcome.events


async def _for_subscription(session, event: WebhookEvent, apply):
    ref = event.subscription_ref
    ent = await entitlements.find_by_external_ref(session, ref) if ref else None
    if ent is None:
        logger.warning("Webhook %s: no entitlement for ref %s", event.provider_event_id, ref)
        return {"status": "entitlement_not_found", "subscription_ref": ref}, []
    try:
        outcome = await apply(ent["id"])
    except InvalidStateError as e:
        logger.warning("Webhook %s: %s", event.provider_event_id, e)
        return {"status": "rejected", "entitlement_id": ent["id"], "current": e.current}, []
    return {"status": "processed", "entitlement": outcome.summary()}, outcome.events


async def _subscription_renewed(session, provider, event, settings, now):
    if event.period_end is None:
        raise ValueError("subscription.renewed requires period_end")

    async def apply(entitlement_id):
        return await entitlements.renew(session, entitlement_id, event.period_end, now)
    return await _for_subscription(session, event, apply)


async def _subscription_payment_failed(session, provider, event, settings, now):
    async def apply(entitlement_id):
        return await entitlements.mark_past_due(session, entitlement_id, now)
    return await _for_subscription(session, event, apply)


async def _subscription_cancelled(session, provider, event, settings, now):
    async def apply(entitlement_id):
        return await entitlements.cancel(session, entitlement_id, now, immediate=True)
    return await _for_subscription(session, event, apply)


HANDLERS = {
    PAYMENT_SUCCEEDED: _payment_succeeded,
    PAYMENT_FAILED: _payment_failed,
    PAYMENT_REFUNDED: _payment_refunded,
    DISPUTE_OPENED: _dispute_opened,
    DISPUTE_RESOLVED: _dispute_resolved,
    SUBSCRIPTION_RENEWED: _subscription_renewed,
    SUBSCRIPTION_PAYMENT_FAILED: _subscription_payment_failed,
    SUBSCRIPTION_CANCELLED: _subscription_cancelled,
}


# ── エントリーポイント ─────────────────────────────


async def handle_webhook(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    provider: str,
    event: WebhookEvent,
    settings: Settings | None = None,
) -> dict:
    """
    Webhook を 1 件処理する。

    1. 冪等性ガードでイベント ID を確保 (再送なら前回の結果を返す)
    2. 種別に応じて状態を変更
    3. 結果を記録してコミット
    4. コミット後にドメインイベントを発行
    """
    settings = settings or Settings()
    now = utcnow()
    internal_type = normalize_type(provider, event.type)

    try:
        await idempotency.claim(
            session,
            event.provider_event_id,
            provider,
            event.type,
            order_ref=event.order_ref or event.payment_ref,
            settings=settings,
            now=now,
        )
        handler = HANDLERS.get(internal_type)
        if handler is None:
            logger.info("Ignoring %s event type %s", provider, event.type)
            result, events = {"status": "ignored"}, []
        else:
            result, events = await handler(
                session, provider, event, settings, now
            )
        result = {"event_type": internal_type or event.type, **result}
        await idempotency.record_result(session, event.provider_event_id, result)
        await session.commit()
    except DuplicateRequestError as dup:
        await session.rollback()
        logger.info("Duplicate webhook %s from %s", event.provider_event_id, provider)
        return {**dup.prior_result, "duplicate": True}
    except Exception:
        await session.rollback()
        raise

    await event_store.publish_events(redis, settings.events_channel, events)
    logger.info(
        "Processed %s webhook %s (%s): %s",
        provider, event.provider_event_id, event.type, result.get("status"),
    )
    return {**result, "duplicate": False}
