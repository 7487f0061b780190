"""
Ledger — 在庫台帳 (InventoryLedger)

販売単位 (チケット席種・商品 SKU・プラン枠) ごとの capacity と
committed を保持する。committed を変更できるのは reserve / release のみ。

reserve は「残量確認」と「加算」を 1 本の条件付き UPDATE で行う:

    UPDATE sellable_units
    SET committed = committed + :qty
    WHERE id = :id AND (capacity IS NULL OR committed + :qty <= capacity)

読み取り → 別トランザクションで書き込み、という競合窓は存在しない。
ここの関数はコミットしない。トランザクション境界は呼び出し側が持つ。
"""

import logging
from uuid import uuid4

from sqlalchemy import case, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .errors import InsufficientInventoryError, InvalidStateError, NotFoundError
from .events import InventoryReleased, InventoryReserved, UnitCapacityChanged, UnitCreated
from .schema import sellable_units, utcnow

logger = logging.getLogger(__name__)

UNIT_KINDS = frozenset({"TICKET_TIER", "PRODUCT", "PLAN_SLOT", "PROMOTION_SLOT"})

AGGREGATE_TYPE = "SellableUnit"


def available(unit: dict) -> int | None:
    """残量。capacity が無制限なら None。"""
    if unit["capacity"] is None:
        return None
    return unit["capacity"] - unit["committed"]


def _unit_to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "kind": row.kind,
        "price_cents": row.price_cents,
        "capacity": row.capacity,
        "committed": row.committed,
        "version": row.version,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_unit(session: AsyncSession, unit_id: str) -> dict | None:
    result = await session.execute(
        select(sellable_units).where(sellable_units.c.id == unit_id)
    )
    row = result.first()
    return _unit_to_dict(row) if row else None


async def get_units(session: AsyncSession, unit_ids: list[str]) -> dict[str, dict]:
    result = await session.execute(
        select(sellable_units).where(sellable_units.c.id.in_(unit_ids))
    )
    return {row.id: _unit_to_dict(row) for row in result.fetchall()}


async def create_unit(
    session: AsyncSession,
    name: str,
    kind: str,
    capacity: int | None,
    price_cents: int = 0,
    unit_id: str | None = None,
) -> tuple[dict, UnitCreated]:
    """販売単位を登録する (committed = 0)。"""
    if kind not in UNIT_KINDS:
        raise ValueError(f"kind '{kind}' not valid")
    if capacity is not None and capacity < 0:
        raise ValueError("capacity must be >= 0 or None")
    if price_cents < 0:
        raise ValueError("price_cents must be >= 0")

    unit_id = unit_id or str(uuid4())
    now = utcnow()
    await session.execute(
        insert(sellable_units).values(
            id=unit_id,
            name=name,
            kind=kind,
            price_cents=price_cents,
            capacity=capacity,
            committed=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
    )
    event = UnitCreated(
        timestamp=now,
        unit_id=unit_id,
        name=name,
        kind=kind,
        capacity=capacity,
        price_cents=price_cents,
    )
    await event_store.append_event(session, unit_id, AGGREGATE_TYPE, event, 1)
    unit = await get_unit(session, unit_id)
    return unit, event


async def reserve(
    session: AsyncSession,
    unit_id: str,
    quantity: int,
    reference_id: str,
) -> InventoryReserved:
    """
    在庫引き当て

    条件付き UPDATE が 0 行なら、ユニットが存在しないか残量不足。
    同じユニットへの同時 reserve が合計で capacity を超えることはない。
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive integer")

    now = utcnow()
    result = await session.execute(
        update(sellable_units)
        .where(sellable_units.c.id == unit_id)
        .where(
            or_(
                sellable_units.c.capacity.is_(None),
                sellable_units.c.committed + quantity <= sellable_units.c.capacity,
            )
        )
        .values(
            committed=sellable_units.c.committed + quantity,
            version=sellable_units.c.version + 1,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        unit = await get_unit(session, unit_id)
        if unit is None:
            raise NotFoundError(AGGREGATE_TYPE, unit_id)
        raise InsufficientInventoryError(unit_id, quantity, available(unit))

    unit = await get_unit(session, unit_id)
    event = InventoryReserved(
        timestamp=now,
        unit_id=unit_id,
        quantity=quantity,
        committed=unit["committed"],
        reference_id=reference_id,
    )
    await event_store.append_event(session, unit_id, AGGREGATE_TYPE, event, unit["version"])
    return event


async def release(
    session: AsyncSession,
    unit_id: str,
    quantity: int,
    reference_id: str,
) -> InventoryReleased:
    """
    在庫解放 (補償)

    committed を quantity だけ減らす。0 未満にはならない。
    1 予約につき 1 回だけ呼ぶこと (reservations 側で保証する)。
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive integer")

    before = await get_unit(session, unit_id)
    if before is None:
        raise NotFoundError(AGGREGATE_TYPE, unit_id)
    if before["committed"] < quantity:
        logger.warning(
            "Release of %d on unit %s exceeds committed=%d (ref %s); flooring at 0",
            quantity, unit_id, before["committed"], reference_id,
        )

    now = utcnow()
    await session.execute(
        update(sellable_units)
        .where(sellable_units.c.id == unit_id)
        .values(
            committed=case(
                (sellable_units.c.committed >= quantity,
                 sellable_units.c.committed - quantity),
                else_=0,
            ),
            version=sellable_units.c.version + 1,
            updated_at=now,
        )
    )

    unit = await get_unit(session, unit_id)
    event = InventoryReleased(
        timestamp=now,
        unit_id=unit_id,
        quantity=quantity,
        committed=unit["committed"],
        reference_id=reference_id,
    )
    await event_store.append_event(session, unit_id, AGGREGATE_TYPE, event, unit["version"])
    return event


async def set_capacity(
    session: AsyncSession,
    unit_id: str,
    capacity: int | None,
) -> UnitCapacityChanged:
    """capacity を変更する。committed を下回る値は拒否。"""
    if capacity is not None and capacity < 0:
        raise ValueError("capacity must be >= 0 or None")

    now = utcnow()
    stmt = update(sellable_units).where(sellable_units.c.id == unit_id)
    if capacity is not None:
        stmt = stmt.where(sellable_units.c.committed <= capacity)
    result = await session.execute(
        stmt.values(
            capacity=capacity,
            version=sellable_units.c.version + 1,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        unit = await get_unit(session, unit_id)
        if unit is None:
            raise NotFoundError(AGGREGATE_TYPE, unit_id)
        raise InvalidStateError(
            AGGREGATE_TYPE, unit_id, f"committed={unit['committed']}",
            f"set capacity to {capacity}",
        )

    unit = await get_unit(session, unit_id)
    event = UnitCapacityChanged(timestamp=now, unit_id=unit_id, capacity=capacity)
    await event_store.append_event(session, unit_id, AGGREGATE_TYPE, event, unit["version"])
    return event
