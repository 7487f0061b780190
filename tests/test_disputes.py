import pytest

from ledger import commands, disputes
from ledger.commands import BuyerInfo
from ledger.config import Settings
from ledger.disputes import DisputeStatus, map_outcome
from ledger.errors import InvalidStateError, NotFoundError
from ledger.reservations import LineItemRequest


async def _completed_order(session_factory, unit_id, quantity=2, payment_ref="pi_100"):
    async with session_factory() as session:
        return await commands.create_order(
            session, None, [LineItemRequest(unit_id, quantity)], BuyerInfo("Grace"),
            paid=True, payment_ref=payment_ref,
        )


async def _open(session_factory, dispute_id, order_ref, amount=5000):
    async with session_factory() as session:
        result = await disputes.open_dispute(session, dispute_id, "stripe", order_ref, amount)
        await session.commit()
        return result


async def _resolve(session_factory, dispute_id, outcome, settings=None):
    async with session_factory() as session:
        result = await disputes.resolve_dispute(session, dispute_id, outcome, settings=settings)
        await session.commit()
        return result


async def _order_status(session_factory, order_id):
    async with session_factory() as session:
        return (await commands.get_order(session, order_id))["status"]


@pytest.mark.parametrize(
    "code,expected",
    [
        ("RESOLVED_SELLER_FAVOUR", DisputeStatus.WON),
        ("won", DisputeStatus.WON),
        ("charge_refunded", DisputeStatus.WON),
        ("RESOLVED_BUYER_FAVOUR", DisputeStatus.LOST),
        ("lost", DisputeStatus.LOST),
        ("RESOLVED_WITH_PAYOUT", DisputeStatus.CLOSED),
        ("warning_closed", DisputeStatus.CLOSED),
        ("", DisputeStatus.CLOSED),
    ],
)
def test_default_outcome_table(code, expected):
    assert map_outcome(code) == expected


def test_outcome_table_is_configurable():
    outcomes = {**Settings().dispute_outcomes, "warning_closed": "WON"}
    assert map_outcome("warning_closed", outcomes) == DisputeStatus.WON


def test_outcome_table_rejects_non_final_mapping():
    with pytest.raises(ValueError):
        map_outcome("weird", {"weird": "OPEN"})


async def test_lost_dispute_refunds_and_releases(session_factory, make_unit, committed):
    unit_id = await make_unit(capacity=5)
    order = await _completed_order(session_factory, unit_id)

    opened = await _open(session_factory, "dp_1", "pi_100")
    assert opened.changed
    assert opened.dispute["order_id"] == order["order_id"]
    assert await _order_status(session_factory, order["order_id"]) == "DISPUTED"
    assert await committed(unit_id) == 2

    resolved = await _resolve(session_factory, "dp_1", "lost")
    assert resolved.dispute["status"] == "LOST"
    assert resolved.released_quantity == 2
    assert await _order_status(session_factory, order["order_id"]) == "REFUNDED"
    assert await committed(unit_id) == 0

    again = await _resolve(session_factory, "dp_1", "lost")
    assert not again.changed
    assert await _order_status(session_factory, order["order_id"]) == "REFUNDED"
    assert await committed(unit_id) == 0


async def test_won_dispute_restores_order(session_factory, make_unit, committed):
    unit_id = await make_unit(capacity=5)
    order = await _completed_order(session_factory, unit_id)
    await _open(session_factory, "dp_2", order["order_id"])

    resolved = await _resolve(session_factory, "dp_2", "RESOLVED_SELLER_FAVOUR")

    assert resolved.dispute["status"] == "WON"
    assert resolved.order_status == "COMPLETED"
    assert await committed(unit_id) == 2


async def test_closed_outcome_leaves_order_disputed(session_factory, make_unit, committed):
    unit_id = await make_unit(capacity=5)
    order = await _completed_order(session_factory, unit_id)
    await _open(session_factory, "dp_3", "pi_100")

    resolved = await _resolve(session_factory, "dp_3", "RESOLVED_WITH_PAYOUT")

    assert resolved.dispute["status"] == "CLOSED"
    assert resolved.order_status == "DISPUTED"
    assert resolved.released_quantity == 0
    assert await _order_status(session_factory, order["order_id"]) == "DISPUTED"
    assert await committed(unit_id) == 2


async def test_unknown_outcome_closes_without_touching_order(session_factory, make_unit):
    unit_id = await make_unit(capacity=5)
    order = await _completed_order(session_factory, unit_id)
    await _open(session_factory, "dp_3b", "pi_100")

    resolved = await _resolve(session_factory, "dp_3b", "something_new")

    assert resolved.dispute["status"] == "CLOSED"
    assert await _order_status(session_factory, order["order_id"]) == "DISPUTED"


async def test_open_dispute_is_idempotent(session_factory, make_unit):
    unit_id = await make_unit(capacity=5)
    await _completed_order(session_factory, unit_id)

    first = await _open(session_factory, "dp_4", "pi_100", amount=5000)
    second = await _open(session_factory, "dp_4", "pi_100", amount=9999)

    assert not second.changed
    assert second.already_exists
    assert second.dispute["id"] == first.dispute["id"]
    assert second.dispute["amount_cents"] == 5000


async def test_dispute_without_order_is_recorded(session_factory):
    result = await _open(session_factory, "dp_5", "pi_unknown")

    assert result.changed
    assert result.dispute["order_id"] is None

    resolved = await _resolve(session_factory, "dp_5", "lost")
    assert resolved.dispute["status"] == "LOST"
    assert resolved.order_status is None


async def test_dispute_on_cancelled_order_leaves_it(session_factory, make_unit):
    unit_id = await make_unit(capacity=5)
    async with session_factory() as session:
        order = await commands.create_order(
            session, None, [LineItemRequest(unit_id, 1)], BuyerInfo("Grace"), payment_ref="pi_200"
        )
    async with session_factory() as session:
        await commands.cancel_order(session, None, order["order_id"], "timeout")

    result = await _open(session_factory, "dp_6", "pi_200")

    assert result.changed
    assert result.order_status == "CANCELLED"
    assert await _order_status(session_factory, order["order_id"]) == "CANCELLED"


async def test_resolve_unknown_dispute(session_factory):
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await disputes.resolve_dispute(session, "dp_missing", "won")


async def test_evidence_moves_to_under_review(session_factory, make_unit):
    unit_id = await make_unit(capacity=5)
    await _completed_order(session_factory, unit_id)
    await _open(session_factory, "dp_7", "pi_100")

    async with session_factory() as session:
        result = await disputes.mark_evidence_submitted(session, "dp_7")
        await session.commit()
    assert result.dispute["status"] == "UNDER_REVIEW"
    assert result.dispute["evidence_submitted_at"] is not None

    resolved = await _resolve(session_factory, "dp_7", "won")
    assert resolved.dispute["status"] == "WON"

    async with session_factory() as session:
        with pytest.raises(InvalidStateError):
            await disputes.mark_evidence_submitted(session, "dp_7")


async def test_notes_and_stats(session_factory, make_unit):
    unit_id = await make_unit(capacity=10)
    await _completed_order(session_factory, unit_id, payment_ref="pi_a")
    await _completed_order(session_factory, unit_id, payment_ref="pi_b")
    await _open(session_factory, "dp_a", "pi_a", amount=1000)
    await _open(session_factory, "dp_b", "pi_b", amount=2500)
    await _resolve(session_factory, "dp_b", "lost")

    async with session_factory() as session:
        noted = await disputes.add_notes(session, "dp_a", "called the buyer")
        await session.commit()
        stats = await disputes.dispute_stats(session)
        open_disputes = await disputes.list_disputes(session, "OPEN")

    assert noted.dispute["internal_notes"] == "called the buyer"
    assert stats["total"] == 2
    assert stats["by_status"]["OPEN"] == 1
    assert stats["by_status"]["LOST"] == 1
    assert stats["amount_at_risk_cents"] == 1000
    assert [d["provider_dispute_id"] for d in open_disputes] == ["dp_a"]
