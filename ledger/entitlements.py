"""
Ledger — 期間付き利用権 (Entitlement)

サブスクリプションとプロモーション枠を 1 つの型で扱う (kind で区別)。
付与時に販売単位を 1 枠 (quantity) 引き当て、CANCELLED / EXPIRED で解放する。
解放は released フラグの条件付き UPDATE で 1 回だけ。

    PENDING  → ACTIVE | CANCELLED | EXPIRED
    ACTIVE   → PAST_DUE | CANCELLED | EXPIRED  (renew は ACTIVE のまま期限延長)
    PAST_DUE → ACTIVE | CANCELLED | EXPIRED
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, inventory
from .errors import InvalidStateError, NotFoundError
from .events import (
    DomainEvent,
    EntitlementActivated,
    EntitlementCancelled,
    EntitlementExpired,
    EntitlementGranted,
    EntitlementPastDue,
    EntitlementRenewed,
)
from .schema import entitlements, utcnow

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Entitlement"

KINDS = frozenset({"SUBSCRIPTION", "PROMOTION"})


class EntitlementStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


ENTITLEMENT_TRANSITIONS: dict[EntitlementStatus, frozenset[EntitlementStatus]] = {
    EntitlementStatus.PENDING: frozenset(
        {EntitlementStatus.ACTIVE, EntitlementStatus.CANCELLED, EntitlementStatus.EXPIRED}
    ),
    EntitlementStatus.ACTIVE: frozenset(
        {EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE,
         EntitlementStatus.CANCELLED, EntitlementStatus.EXPIRED}
    ),
    EntitlementStatus.PAST_DUE: frozenset(
        {EntitlementStatus.ACTIVE, EntitlementStatus.CANCELLED, EntitlementStatus.EXPIRED}
    ),
    EntitlementStatus.CANCELLED: frozenset(),
    EntitlementStatus.EXPIRED: frozenset(),
}

LIVE_STATUSES = frozenset(
    {EntitlementStatus.PENDING, EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE}
)
BILLABLE_STATUSES = frozenset({EntitlementStatus.ACTIVE, EntitlementStatus.PAST_DUE})


def sources_for(target: EntitlementStatus) -> frozenset[EntitlementStatus]:
    return frozenset(
        s for s, targets in ENTITLEMENT_TRANSITIONS.items() if target in targets
    )


@dataclass
class EntitlementResult:
    entitlement: dict
    changed: bool
    released_quantity: int = 0
    events: list[DomainEvent] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "entitlement_id": self.entitlement["id"],
            "status": self.entitlement["status"],
            "changed": self.changed,
            "released_quantity": self.released_quantity,
        }


def _entitlement_to_dict(row) -> dict:
    return {
        "id": row.id,
        "kind": row.kind,
        "unit_id": row.unit_id,
        "owner_ref": row.owner_ref,
        "external_ref": row.external_ref,
        "quantity": row.quantity,
        "status": row.status,
        "cancel_at_period_end": row.cancel_at_period_end,
        "released": row.released,
        "released_at": row.released_at,
        "version": row.version,
        "started_at": row.started_at,
        "expires_at": row.expires_at,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_entitlement(session: AsyncSession, entitlement_id: str) -> dict | None:
    result = await session.execute(
        select(entitlements).where(entitlements.c.id == entitlement_id)
    )
    row = result.first()
    return _entitlement_to_dict(row) if row else None


async def find_by_external_ref(session: AsyncSession, external_ref: str) -> dict | None:
    """プロバイダのサブスクリプション ID (または内部 ID) で探す。"""
    result = await session.execute(
        select(entitlements)
        .where(
            (entitlements.c.external_ref == external_ref)
            | (entitlements.c.id == external_ref)
        )
        .order_by(entitlements.c.created_at.desc())
    )
    row = result.first()
    return _entitlement_to_dict(row) if row else None


async def _transition(
    session: AsyncSession,
    entitlement_id: str,
    target: EntitlementStatus,
    from_statuses: frozenset[EntitlementStatus],
    action: str,
    now: datetime,
    values: dict | None = None,
) -> tuple[dict, bool]:
    if not from_statuses <= sources_for(target):
        raise ValueError(f"{sorted(from_statuses)} -> {target} is not in the transition table")

    result = await session.execute(
        update(entitlements)
        .where(entitlements.c.id == entitlement_id)
        .where(entitlements.c.status.in_([s.value for s in from_statuses]))
        .values(
            status=target.value,
            version=entitlements.c.version + 1,
            updated_at=now,
            **(values or {}),
        )
    )
    ent = await get_entitlement(session, entitlement_id)
    if result.rowcount == 1:
        return ent, True
    if ent is None:
        raise NotFoundError(AGGREGATE_TYPE, entitlement_id)
    if ent["status"] == target.value:
        return ent, False
    raise InvalidStateError(AGGREGATE_TYPE, entitlement_id, ent["status"], action)


async def _release(
    session: AsyncSession, ent: dict, now: datetime
) -> tuple[int, list[DomainEvent]]:
    marked = await session.execute(
        update(entitlements)
        .where(entitlements.c.id == ent["id"])
        .where(entitlements.c.released.is_(False))
        .values(released=True, released_at=now)
    )
    if marked.rowcount != 1:
        return 0, []
    event = await inventory.release(session, ent["unit_id"], ent["quantity"], ent["id"])
    return ent["quantity"], [event]


# ── 操作 (コミットしない) ────────────────────────


async def grant(
    session: AsyncSession,
    kind: str,
    unit_id: str,
    owner_ref: str,
    duration: timedelta | None = None,
    external_ref: str | None = None,
    pending: bool = False,
    quantity: int = 1,
    now: datetime | None = None,
) -> EntitlementResult:
    """
    利用権を付与する。

    販売単位の枠を引き当ててから行を作る。枠が無ければ
    InsufficientInventoryError (呼び出し側がロールバックする)。
    """
    if kind not in KINDS:
        raise ValueError(f"kind '{kind}' not valid")
    if not owner_ref:
        raise ValueError("owner_ref must be non-empty")

    now = now or utcnow()
    entitlement_id = str(uuid4())
    status = EntitlementStatus.PENDING if pending else EntitlementStatus.ACTIVE
    expires_at = now + duration if duration else None

    reserved = await inventory.reserve(session, unit_id, quantity, entitlement_id)
    await session.execute(
        insert(entitlements).values(
            id=entitlement_id,
            kind=kind,
            unit_id=unit_id,
            owner_ref=owner_ref,
            external_ref=external_ref,
            quantity=quantity,
            status=status.value,
            cancel_at_period_end=False,
            released=False,
            version=1,
            started_at=None if pending else now,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
    )
    event = EntitlementGranted(
        timestamp=now,
        entitlement_id=entitlement_id,
        kind=kind,
        unit_id=unit_id,
        owner_ref=owner_ref,
        status=status.value,
        expires_at=expires_at,
    )
    await event_store.append_event(session, entitlement_id, AGGREGATE_TYPE, event, 1)
    ent = await get_entitlement(session, entitlement_id)
    logger.info("Granted %s %s to %s on unit %s", kind, entitlement_id, owner_ref, unit_id)
    return EntitlementResult(ent, True, events=[reserved, event])


async def activate(
    session: AsyncSession,
    entitlement_id: str,
    now: datetime,
    expires_at: datetime | None = None,
) -> EntitlementResult:
    values = {"started_at": now}
    if expires_at is not None:
        values["expires_at"] = expires_at
    ent, changed = await _transition(
        session, entitlement_id, EntitlementStatus.ACTIVE,
        frozenset({EntitlementStatus.PENDING}), "activate", now, values,
    )
    if not changed:
        return EntitlementResult(ent, False)
    event = EntitlementActivated(
        timestamp=now, entitlement_id=entitlement_id, expires_at=ent["expires_at"]
    )
    await event_store.append_event(session, entitlement_id, AGGREGATE_TYPE, event, ent["version"])
    return EntitlementResult(ent, changed, events=[event])


async def renew(
    session: AsyncSession,
    entitlement_id: str,
    expires_at: datetime,
    now: datetime,
) -> EntitlementResult:
    """
    支払い成功による期間更新。PAST_DUE は ACTIVE に戻る。

    更新された期間は継続扱いなので、予約済みの期間終了キャンセルは取り消す。
    """
    ent, changed = await _transition(
        session, entitlement_id, EntitlementStatus.ACTIVE, BILLABLE_STATUSES,
        "renew", now, {"expires_at": expires_at, "cancel_at_period_end": False},
    )
    event = EntitlementRenewed(
        timestamp=now, entitlement_id=entitlement_id, expires_at=expires_at
    )
    await event_store.append_event(session, entitlement_id, AGGREGATE_TYPE, event, ent["version"])
    return EntitlementResult(ent, changed, events=[event])


async def mark_past_due(
    session: AsyncSession, entitlement_id: str, now: datetime
) -> EntitlementResult:
    ent, changed = await _transition(
        session, entitlement_id, EntitlementStatus.PAST_DUE,
        frozenset({EntitlementStatus.ACTIVE}), "mark past due", now,
    )
    if not changed:
        return EntitlementResult(ent, False)
    event = EntitlementPastDue(timestamp=now, entitlement_id=entitlement_id)
    await event_store.append_event(session, entitlement_id, AGGREGATE_TYPE, event, ent["version"])
    return EntitlementResult(ent, True, events=[event])


async def cancel(
    session: AsyncSession,
    entitlement_id: str,
    now: datetime,
    immediate: bool = True,
) -> EntitlementResult:
    """
    解約

    immediate なら即座に CANCELLED にして枠を解放する。
    そうでなければ cancel_at_period_end を立てるだけで、期限到来時に
    スイーパーが EXPIRED にして解放する。
    """
    if immediate:
        ent, changed = await _transition(
            session, entitlement_id, EntitlementStatus.CANCELLED, LIVE_STATUSES,
            "cancel", now,
        )
        if not changed:
            return EntitlementResult(ent, False)
        released, inventory_events = await _release(session, ent, now)
    else:
        result = await session.execute(
            update(entitlements)
            .where(entitlements.c.id == entitlement_id)
            .where(entitlements.c.status.in_([s.value for s in BILLABLE_STATUSES]))
            .where(entitlements.c.cancel_at_period_end.is_(False))
            .values(
                cancel_at_period_end=True,
                version=entitlements.c.version + 1,
                updated_at=now,
            )
        )
        ent = await get_entitlement(session, entitlement_id)
        if ent is None:
            raise NotFoundError(AGGREGATE_TYPE, entitlement_id)
        if result.rowcount != 1:
            if ent["cancel_at_period_end"] or ent["status"] == EntitlementStatus.CANCELLED.value:
                return EntitlementResult(ent, False)
            raise InvalidStateError(
                AGGREGATE_TYPE, entitlement_id, ent["status"], "cancel at period end"
            )
        released, inventory_events = 0, []

    event = EntitlementCancelled(
        timestamp=now,
        entitlement_id=entitlement_id,
        immediate=immediate,
        released_quantity=released,
    )
    await event_store.append_event(session, entitlement_id, AGGREGATE_TYPE, event, ent["version"])
    return EntitlementResult(ent, True, released, inventory_events + [event])


async def expire(
    session: AsyncSession,
    entitlement_id: str,
    now: datetime,
    from_statuses: frozenset[EntitlementStatus] = LIVE_STATUSES,
) -> EntitlementResult:
    """期限切れ (スイーパーから呼ばれる)。EXPIRED にして枠を解放する。"""
    ent, changed = await _transition(
        session, entitlement_id, EntitlementStatus.EXPIRED, from_statuses, "expire", now
    )
    if not changed:
        return EntitlementResult(ent, False)
    released, inventory_events = await _release(session, ent, now)
    event = EntitlementExpired(
        timestamp=now, entitlement_id=entitlement_id, released_quantity=released
    )
    await event_store.append_event(session, entitlement_id, AGGREGATE_TYPE, event, ent["version"])
    return EntitlementResult(ent, True, released, inventory_events + [event])
