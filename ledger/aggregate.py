"""
Ledger — 注文集約 (Order Aggregate)

注文の状態遷移は明示的な遷移表で定義する。文字列比較の if/else を
あちこちに書かず、ORDER_TRANSITIONS に無い遷移はすべて拒否される。

    PENDING_PAYMENT → COMPLETED | CANCELLED | DISPUTED
    COMPLETED       → REFUNDED | DISPUTED
    DISPUTED        → COMPLETED | REFUNDED | CANCELLED
    CANCELLED, REFUNDED は終端 (後戻り不可)

OrderAggregate はイベントストアの履歴から状態を再構築する (監査用)。
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.DISPUTED}
    ),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED, OrderStatus.DISPUTED}),
    OrderStatus.DISPUTED: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.REFUNDED, OrderStatus.CANCELLED}
    ),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


def sources_for(target: OrderStatus) -> frozenset[OrderStatus]:
    """target へ遷移できる状態の集合 (条件付き UPDATE の WHERE に使う)"""
    return frozenset(s for s, targets in ORDER_TRANSITIONS.items() if target in targets)


# 予約レコードの状態は注文の状態から導出する
RESERVATION_STATUS_FOR = {
    OrderStatus.PENDING_PAYMENT: "HELD",
    OrderStatus.COMPLETED: "CONFIRMED",
    OrderStatus.DISPUTED: "CONFIRMED",
    OrderStatus.CANCELLED: "CANCELLED",
    OrderStatus.REFUNDED: "REFUNDED",
}


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.order_number: str = ""
        self.status: OrderStatus | None = None
        self.line_items: list[dict] = []
        self.total_cents: int = 0
        self.released_quantity: int = 0
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.order_number = data["order_number"]
        self.status = OrderStatus(data["status"])
        self.line_items = data["line_items"]
        self.total_cents = data["total_cents"]

    def apply_order_confirmed(self, _data: dict) -> None:
        self.status = OrderStatus.COMPLETED

    def apply_order_cancelled(self, data: dict) -> None:
        self.status = OrderStatus.CANCELLED
        self.released_quantity += data["released_quantity"]

    def apply_order_refunded(self, data: dict) -> None:
        self.status = OrderStatus.REFUNDED
        self.released_quantity += data["released_quantity"]

    def apply_order_disputed(self, _data: dict) -> None:
        self.status = OrderStatus.DISPUTED

    def apply_order_restored(self, _data: dict) -> None:
        self.status = OrderStatus.COMPLETED

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderCancelled": self.apply_order_cancelled,
            "OrderRefunded": self.apply_order_refunded,
            "OrderDisputed": self.apply_order_disputed,
            "OrderRestored": self.apply_order_restored,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
