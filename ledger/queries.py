"""
Ledger — クエリハンドラ (CQRS の Read 側)

API 用に注文・販売単位・利用権を組み立てて返す。
注文の詳細にはイベントストアから再構築した状態 (監査用) も含める。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, entitlements, event_store, inventory, reservations
from .aggregate import OrderAggregate
from .schema import order_items


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文 + 明細 + 予約レコード"""
    order = await commands.get_order(session, order_id)
    if not order:
        return None

    result = await session.execute(
        select(order_items).where(order_items.c.order_id == order_id)
    )
    order["line_items"] = [
        {
            "id": row.id,
            "unit_id": row.unit_id,
            "quantity": row.quantity,
            "unit_price_cents": row.unit_price_cents,
        }
        for row in result.fetchall()
    ]
    order["reservations"] = await reservations.list_for_order(session, order_id)

    history = await event_store.load_events(session, order_id)
    agg = OrderAggregate.from_events(history)
    order["replayed_status"] = agg.status.value if agg.status else None
    order["replayed_version"] = agg.version
    return order


async def get_unit(session: AsyncSession, unit_id: str) -> dict | None:
    unit = await inventory.get_unit(session, unit_id)
    if not unit:
        return None
    unit["available"] = inventory.available(unit)
    return unit


async def get_entitlement(session: AsyncSession, entitlement_id: str) -> dict | None:
    return await entitlements.get_entitlement(session, entitlement_id)
