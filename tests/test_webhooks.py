import asyncio
from datetime import timedelta

import pytest

from ledger import commands, disputes, entitlements, idempotency, webhooks
from ledger.commands import BuyerInfo
from ledger.errors import DuplicateRequestError
from ledger.reservations import LineItemRequest
from ledger.schema import utcnow
from ledger.webhooks import WebhookEvent


async def _deliver(session_factory, provider, settings, **payload):
    async with session_factory() as session:
        return await webhooks.handle_webhook(
            session, None, provider, WebhookEvent(**payload), settings=settings
        )


async def _pending_order(session_factory, unit_id, payment_ref="pi_1", quantity=2):
    async with session_factory() as session:
        return await commands.create_order(
            session, None, [LineItemRequest(unit_id, quantity)], BuyerInfo("Linus"),
            payment_ref=payment_ref,
        )


async def _order_status(session_factory, order_id):
    async with session_factory() as session:
        return (await commands.get_order(session, order_id))["status"]


@pytest.mark.parametrize(
    "provider,event_type,expected",
    [
        ("stripe", "payment_intent.succeeded", "payment.succeeded"),
        ("stripe", "charge.dispute.created", "dispute.opened"),
        ("stripe", "customer.subscription.deleted", "subscription.cancelled"),
        ("paypal", "PAYMENT.CAPTURE.COMPLETED", "payment.succeeded"),
        ("paypal", "CUSTOMER.DISPUTE.RESOLVED", "dispute.resolved"),
        ("PayPal", "PAYMENT.CAPTURE.REFUNDED", "payment.refunded"),
        ("custom", "payment.failed", "payment.failed"),
        ("stripe", "customer.created", None),
        ("paypal", "payment_intent.succeeded", None),
    ],
)
def test_normalize_type(provider, event_type, expected):
    assert webhooks.normalize_type(provider, event_type) == expected


async def test_payment_succeeded_confirms_order(session_factory, make_unit, settings):
    unit_id = await make_unit()
    order = await _pending_order(session_factory, unit_id)

    result = await _deliver(
        session_factory, "stripe", settings,
        provider_event_id="evt_1", type="payment_intent.succeeded", payment_ref="pi_1",
    )

    assert result["duplicate"] is False
    assert result["status"] == "processed"
    assert await _order_status(session_factory, order["order_id"]) == "COMPLETED"


async def test_duplicate_delivery_returns_prior_result(
    session_factory, make_unit, committed, settings
):
    unit_id = await make_unit(capacity=5)
    order = await _pending_order(session_factory, unit_id)
    payload = dict(provider_event_id="evt_2", type="payment.failed", order_ref=order["order_id"])

    first = await _deliver(session_factory, "stripe", settings, **payload)
    assert await committed(unit_id) == 0

    # 同じ在庫を別の注文が使っている状態で再送されても何も変わらない
    await _pending_order(session_factory, unit_id, payment_ref="pi_other", quantity=2)
    second = await _deliver(session_factory, "stripe", settings, **payload)

    assert second["duplicate"] is True
    assert second["orders"] == first["orders"]
    assert await committed(unit_id) == 2
    assert await _order_status(session_factory, order["order_id"]) == "CANCELLED"


async def test_failed_processing_leaves_event_unclaimed(session_factory, settings):
    with pytest.raises(ValueError):
        await _deliver(
            session_factory, "stripe", settings,
            provider_event_id="evt_3", type="charge.dispute.created",
        )

    async with session_factory() as session:
        assert not await idempotency.is_processed(session, "evt_3")


async def test_unknown_type_is_recorded_and_ignored(session_factory, settings):
    result = await _deliver(
        session_factory, "stripe", settings, provider_event_id="evt_4", type="customer.created"
    )
    assert result["status"] == "ignored"

    async with session_factory() as session:
        recorded = await idempotency.lookup(session, "evt_4")
    assert recorded["event_type"] == "customer.created"
    assert recorded["result"]["status"] == "ignored"


async def test_missing_order_is_recorded(session_factory, settings):
    result = await _deliver(
        session_factory, "paypal", settings,
        provider_event_id="evt_5", type="PAYMENT.CAPTURE.COMPLETED", order_ref="nope",
    )
    assert result["status"] == "order_not_found"


async def test_dispute_lifecycle_through_webhooks(session_factory, make_unit, committed, settings):
    unit_id = await make_unit(capacity=5)
    order = await _pending_order(session_factory, unit_id, payment_ref="PAY-9")
    await _deliver(
        session_factory, "paypal", settings,
        provider_event_id="WH-1", type="PAYMENT.CAPTURE.COMPLETED", payment_ref="PAY-9",
    )

    opened = await _deliver(
        session_factory, "paypal", settings,
        provider_event_id="WH-2", type="CUSTOMER.DISPUTE.CREATED",
        dispute_id="PP-D-1", payment_ref="PAY-9", amount_cents=2000, reason="MERCHANDISE_NOT_RECEIVED",
    )
    assert opened["dispute"]["status"] == "OPEN"
    assert await _order_status(session_factory, order["order_id"]) == "DISPUTED"

    resolved = await _deliver(
        session_factory, "paypal", settings,
        provider_event_id="WH-3", type="CUSTOMER.DISPUTE.RESOLVED",
        dispute_id="PP-D-1", outcome="RESOLVED_BUYER_FAVOUR",
    )
    assert resolved["dispute"]["status"] == "LOST"
    assert resolved["dispute"]["released_quantity"] == 2
    assert await _order_status(session_factory, order["order_id"]) == "REFUNDED"
    assert await committed(unit_id) == 0

    replay = await _deliver(
        session_factory, "paypal", settings,
        provider_event_id="WH-4", type="CUSTOMER.DISPUTE.RESOLVED",
        dispute_id="PP-D-1", outcome="RESOLVED_BUYER_FAVOUR",
    )
    assert replay["dispute"]["changed"] is False
    assert await committed(unit_id) == 0


async def test_subscription_events(session_factory, make_unit, committed, settings):
    unit_id = await make_unit(capacity=1, kind="PLAN_SLOT")
    now = utcnow()
    async with session_factory() as session:
        granted = await entitlements.grant(
            session, "SUBSCRIPTION", unit_id, "user-1", timedelta(days=30),
            external_ref="sub_1", now=now,
        )
        await session.commit()
    ent_id = granted.entitlement["id"]

    past_due = await _deliver(
        session_factory, "stripe", settings,
        provider_event_id="evt_s1", type="invoice.payment_failed", subscription_ref="sub_1",
    )
    assert past_due["status"] == "processed"

    renewed = await _deliver(
        session_factory, "stripe", settings,
        provider_event_id="evt_s2", type="invoice.paid", subscription_ref="sub_1",
        period_end=now + timedelta(days=60),
    )
    assert renewed["status"] == "processed"

    async with session_factory() as session:
        ent = await entitlements.get_entitlement(session, ent_id)
    assert ent["status"] == "ACTIVE"
    assert ent["expires_at"] == now + timedelta(days=60)

    await _deliver(
        session_factory, "stripe", settings,
        provider_event_id="evt_s3", type="customer.subscription.deleted", subscription_ref="sub_1",
    )
    async with session_factory() as session:
        ent = await entitlements.get_entitlement(session, ent_id)
    assert ent["status"] == "CANCELLED"
    assert await committed(unit_id) == 0


async def test_claim_rejects_second_claim(session_factory, settings):
    async with session_factory() as session:
        await idempotency.claim(session, "evt_c", "stripe", "x", settings=settings)
        await idempotency.record_result(session, "evt_c", {"status": "done"})
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(DuplicateRequestError) as exc_info:
            await idempotency.claim(session, "evt_c", "stripe", "x", settings=settings)
    assert exc_info.value.prior_result == {"status": "done"}


async def test_cleanup_removes_expired_claims(session_factory, settings):
    now = utcnow()
    async with session_factory() as session:
        await idempotency.claim(session, "evt_old", "stripe", "x", settings=settings, now=now)
        await session.commit()

    async with session_factory() as session:
        deleted = await idempotency.cleanup_expired(session, now + timedelta(days=8))
        assert deleted == 1
        assert not await idempotency.is_processed(session, "evt_old")


async def _disputed_delivery(session_factory, settings, event_id, payment_ref):
    return await _deliver(
        session_factory, "stripe", settings,
        provider_event_id=event_id, type="charge.dispute.created",
        dispute_id="dp_race", payment_ref=payment_ref, amount_cents=2000,
    )


async def test_dispute_insert_race_keeps_claim(session_factory, make_unit, settings, monkeypatch):
    unit_id = await make_unit(capacity=5)
    async with session_factory() as session:
        order = await commands.create_order(
            session, None, [LineItemRequest(unit_id, 1)], BuyerInfo("Linus"),
            paid=True, payment_ref="ch_race",
        )
    first = await _disputed_delivery(session_factory, settings, "evt_r1", "ch_race")
    assert first["dispute"]["changed"] is True

    # 2 件目の配信は既存チェックをすり抜け、挿入で一意制約違反になる
    real_get_dispute = disputes.get_dispute
    misses = []

    async def stale_get_dispute(session, provider_dispute_id):
        if not misses:
            misses.append(provider_dispute_id)
            return None
        return await real_get_dispute(session, provider_dispute_id)

    monkeypatch.setattr(disputes, "get_dispute", stale_get_dispute)
    second = await _disputed_delivery(session_factory, settings, "evt_r2", "ch_race")

    assert misses == ["dp_race"]
    assert second["duplicate"] is False
    assert second["dispute"]["already_exists"] is True
    assert second["dispute"]["dispute_id"] == first["dispute"]["dispute_id"]

    async with session_factory() as session:
        recorded = await idempotency.lookup(session, "evt_r2")
        all_disputes = await disputes.list_disputes(session)
    assert recorded["result"]["dispute"]["already_exists"] is True
    assert len(all_disputes) == 1
    assert await _order_status(session_factory, order["order_id"]) == "DISPUTED"

    redelivered = await _disputed_delivery(session_factory, settings, "evt_r2", "ch_race")
    assert redelivered["duplicate"] is True


async def test_concurrent_dispute_deliveries_record_both(session_factory, settings):
    results = await asyncio.gather(
        _disputed_delivery(session_factory, settings, "evt_c1", "ch_none"),
        _disputed_delivery(session_factory, settings, "evt_c2", "ch_none"),
    )

    assert sorted(r["dispute"]["already_exists"] for r in results) == [False, True]
    async with session_factory() as session:
        assert await idempotency.is_processed(session, "evt_c1")
        assert await idempotency.is_processed(session, "evt_c2")
        assert len(await disputes.list_disputes(session)) == 1
