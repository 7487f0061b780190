"""
Ledger — 予約サービス (ReservationService)

注文の明細 (line items) 単位で在庫台帳を操作する。

引き当ては all-or-nothing:
  1. 全明細の残量を先に検証する (早期失敗用。最終判定ではない)
  2. ユニット ID 順に条件付き UPDATE で引き当てる (これが最終判定)
  どれか 1 つでも失敗したら例外を送出し、呼び出し側のトランザクションを
  ロールバックさせる。どのユニットの committed も変化しない。

解放は予約レコードの released フラグを条件付き UPDATE で立て、
1 行だけ更新できた場合にのみ在庫を戻す。2 回目の解放は no-op。
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory
from .errors import InsufficientInventoryError, NotFoundError
from .events import DomainEvent
from .schema import order_items, reservations


@dataclass(frozen=True)
class LineItemRequest:
    unit_id: str
    quantity: int

    def __post_init__(self):
        if not self.unit_id:
            raise ValueError("unit_id must be non-empty")
        if not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError("quantity must be positive integer")


@dataclass(frozen=True)
class PricedLineItem:
    unit_id: str
    quantity: int
    unit_price_cents: int

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }


async def reserve_for_order(
    session: AsyncSession,
    order_id: str,
    items: list[LineItemRequest],
) -> tuple[list[PricedLineItem], list[DomainEvent]]:
    """全明細を引き当てる。失敗時は InsufficientInventoryError / NotFoundError。"""
    if not items:
        raise ValueError("order must have at least one line item")

    requested: dict[str, int] = defaultdict(int)
    for item in items:
        requested[item.unit_id] += item.quantity

    # Phase 1: 検証 (最初に失敗した明細のユニットを報告する)
    units = await inventory.get_units(session, list(requested))
    for item in items:
        unit = units.get(item.unit_id)
        if unit is None:
            raise NotFoundError(inventory.AGGREGATE_TYPE, item.unit_id)
        avail = inventory.available(unit)
        if avail is not None and avail < requested[item.unit_id]:
            raise InsufficientInventoryError(item.unit_id, requested[item.unit_id], avail)

    # Phase 2: 条件付き UPDATE で引き当て (ロック順序を固定するためソート)
    events: list[DomainEvent] = []
    for unit_id in sorted(requested):
        events.append(
            await inventory.reserve(session, unit_id, requested[unit_id], order_id)
        )

    priced = [
        PricedLineItem(item.unit_id, item.quantity, units[item.unit_id]["price_cents"])
        for item in items
    ]
    return priced, events


async def record_for_order(
    session: AsyncSession,
    order_id: str,
    items: list[PricedLineItem],
    status: str,
    now: datetime,
) -> None:
    """明細と予約レコードを 1 対 1 で作成する。"""
    for item in items:
        item_id = str(uuid4())
        await session.execute(
            insert(order_items).values(
                id=item_id,
                order_id=order_id,
                unit_id=item.unit_id,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
            )
        )
        await session.execute(
            insert(reservations).values(
                id=str(uuid4()),
                order_id=order_id,
                order_item_id=item_id,
                unit_id=item.unit_id,
                quantity=item.quantity,
                status=status,
                released=False,
                created_at=now,
            )
        )


async def set_status_for_order(session: AsyncSession, order_id: str, status: str) -> None:
    """在庫を動かさない遷移 (支払い確認など) で予約状態を追従させる。"""
    await session.execute(
        update(reservations)
        .where(reservations.c.order_id == order_id)
        .where(reservations.c.released.is_(False))
        .values(status=status)
    )


async def release_for_order(
    session: AsyncSession,
    order_id: str,
    status: str,
    now: datetime,
) -> tuple[int, list[DomainEvent]]:
    """
    未解放の予約をすべて解放する (補償)。

    Returns:
        (解放した数量の合計, 在庫イベント)
    """
    result = await session.execute(
        select(reservations)
        .where(reservations.c.order_id == order_id)
        .where(reservations.c.released.is_(False))
        .order_by(reservations.c.unit_id)
    )
    pending = result.fetchall()

    released_quantity = 0
    events: list[DomainEvent] = []
    for row in pending:
        marked = await session.execute(
            update(reservations)
            .where(reservations.c.id == row.id)
            .where(reservations.c.released.is_(False))
            .values(released=True, released_at=now, status=status)
        )
        if marked.rowcount != 1:
            continue
        events.append(await inventory.release(session, row.unit_id, row.quantity, row.id))
        released_quantity += row.quantity
    return released_quantity, events


def _reservation_to_dict(row) -> dict:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "order_item_id": row.order_item_id,
        "unit_id": row.unit_id,
        "quantity": row.quantity,
        "status": row.status,
        "released": row.released,
        "released_at": row.released_at.isoformat() if row.released_at else None,
    }


async def list_for_order(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        select(reservations)
        .where(reservations.c.order_id == order_id)
        .order_by(reservations.c.created_at, reservations.c.id)
    )
    return [_reservation_to_dict(row) for row in result.fetchall()]
