import logging

import pytest

from ledger import event_store, inventory
from ledger.errors import InsufficientInventoryError, InvalidStateError, NotFoundError


async def test_create_unit_starts_empty(session):
    unit, event = await inventory.create_unit(session, "VIP", "TICKET_TIER", 10, 5000)
    await session.commit()

    assert unit["committed"] == 0
    assert unit["capacity"] == 10
    assert inventory.available(unit) == 10
    assert event.event_type == "UnitCreated"


async def test_create_unit_rejects_unknown_kind(session):
    with pytest.raises(ValueError):
        await inventory.create_unit(session, "x", "BOAT", 1)


async def test_reserve_within_capacity(session_factory, make_unit, committed):
    unit_id = await make_unit(capacity=5)
    async with session_factory() as session:
        event = await inventory.reserve(session, unit_id, 3, "order-1")
        await session.commit()

    assert event.committed == 3
    assert await committed(unit_id) == 3


async def test_reserve_beyond_capacity_changes_nothing(session_factory, make_unit, committed):
    unit_id = await make_unit(capacity=5)
    async with session_factory() as session:
        await inventory.reserve(session, unit_id, 4, "order-1")
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(InsufficientInventoryError) as exc_info:
            await inventory.reserve(session, unit_id, 2, "order-2")
        await session.rollback()

    assert exc_info.value.available == 1
    assert exc_info.value.requested == 2
    assert await committed(unit_id) == 4


async def test_reserve_exactly_to_capacity(session_factory, make_unit, committed):
    unit_id = await make_unit(capacity=3)
    async with session_factory() as session:
        await inventory.reserve(session, unit_id, 3, "order-1")
        await session.commit()
    assert await committed(unit_id) == 3


async def test_unlimited_capacity(session_factory, make_unit, committed):
    unit_id = await make_unit(capacity=None)
    async with session_factory() as session:
        await inventory.reserve(session, unit_id, 10_000, "order-1")
        await session.commit()
        unit = await inventory.get_unit(session, unit_id)

    assert inventory.available(unit) is None
    assert await committed(unit_id) == 10_000


async def test_reserve_missing_unit(session):
    with pytest.raises(NotFoundError):
        await inventory.reserve(session, "missing", 1, "order-1")


@pytest.mark.parametrize("quantity", [0, -1])
async def test_reserve_rejects_non_positive_quantity(session, make_unit, quantity):
    unit_id = await make_unit()
    with pytest.raises(ValueError):
        await inventory.reserve(session, unit_id, quantity, "order-1")


async def test_release_floors_at_zero(session_factory, make_unit, committed, caplog):
    unit_id = await make_unit(capacity=5)
    async with session_factory() as session:
        await inventory.reserve(session, unit_id, 2, "order-1")
        await session.commit()

    with caplog.at_level(logging.WARNING, logger="ledger.inventory"):
        async with session_factory() as session:
            await inventory.release(session, unit_id, 5, "order-1")
            await session.commit()

    assert await committed(unit_id) == 0
    assert "flooring at 0" in caplog.text


async def test_set_capacity_below_committed_is_rejected(session_factory, make_unit):
    unit_id = await make_unit(capacity=5)
    async with session_factory() as session:
        await inventory.reserve(session, unit_id, 4, "order-1")
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(InvalidStateError):
            await inventory.set_capacity(session, unit_id, 3)
        await session.rollback()

    async with session_factory() as session:
        await inventory.set_capacity(session, unit_id, 4)
        await session.commit()
        unit = await inventory.get_unit(session, unit_id)
    assert unit["capacity"] == 4
    assert inventory.available(unit) == 0


async def test_unit_events_are_versioned(session_factory, make_unit):
    unit_id = await make_unit(capacity=5)
    async with session_factory() as session:
        await inventory.reserve(session, unit_id, 1, "order-1")
        await inventory.release(session, unit_id, 1, "order-1")
        await session.commit()
        events = await event_store.load_events(session, unit_id)

    assert [e["event_type"] for e in events] == [
        "UnitCreated", "InventoryReserved", "InventoryReleased",
    ]
    assert [e["version"] for e in events] == [1, 2, 3]
