"""
Ledger — イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
event_type はクラス名そのもの。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def payload(self) -> dict:
        return self.model_dump(mode="json")


# ── SellableUnit ─────────────────────────────────


class UnitCreated(DomainEvent):
    unit_id: str
    name: str
    kind: str
    capacity: int | None
    price_cents: int


class UnitCapacityChanged(DomainEvent):
    unit_id: str
    capacity: int | None


class InventoryReserved(DomainEvent):
    """在庫が引き当てられた (committed += quantity)"""
    unit_id: str
    quantity: int
    committed: int
    reference_id: str


class InventoryReleased(DomainEvent):
    """在庫が解放された (補償)"""
    unit_id: str
    quantity: int
    committed: int
    reference_id: str


# ── Order ────────────────────────────────────────


class OrderCreated(DomainEvent):
    order_id: str
    order_number: str
    status: str
    payment_method: str
    total_cents: int
    line_items: list[dict]
    expires_at: datetime | None = None


class OrderConfirmed(DomainEvent):
    """支払いが確認された"""
    order_id: str
    payment_ref: str | None = None


class OrderCancelled(DomainEvent):
    """キャンセル / ホールド期限切れ (補償トランザクション)"""
    order_id: str
    reason: str
    released_quantity: int


class OrderRefunded(DomainEvent):
    order_id: str
    reason: str
    released_quantity: int


class OrderDisputed(DomainEvent):
    order_id: str
    provider_dispute_id: str


class OrderRestored(DomainEvent):
    """紛争に勝ち、COMPLETED に復帰した"""
    order_id: str
    provider_dispute_id: str


# ── Entitlement ──────────────────────────────────


class EntitlementGranted(DomainEvent):
    entitlement_id: str
    kind: str
    unit_id: str
    owner_ref: str
    status: str
    expires_at: datetime | None = None


class EntitlementActivated(DomainEvent):
    entitlement_id: str
    expires_at: datetime | None = None


class EntitlementRenewed(DomainEvent):
    entitlement_id: str
    expires_at: datetime


class EntitlementPastDue(DomainEvent):
    entitlement_id: str


class EntitlementCancelled(DomainEvent):
    entitlement_id: str
    immediate: bool
    released_quantity: int


class EntitlementExpired(DomainEvent):
    entitlement_id: str
    released_quantity: int


# ── Dispute ──────────────────────────────────────


class DisputeOpened(DomainEvent):
    provider_dispute_id: str
    provider: str
    order_id: str | None
    amount_cents: int


class DisputeEvidenceSubmitted(DomainEvent):
    provider_dispute_id: str


class DisputeResolved(DomainEvent):
    provider_dispute_id: str
    status: str
    outcome_code: str
    order_id: str | None
