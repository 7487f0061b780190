"""
Ledger — テーブル定義 (SQLAlchemy Core)

1 レコード = 1 ドキュメント。各テーブルは主キーと所有注文 ID の
両方で独立して検索できる。終端状態のレコードも監査のため削除しない。
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import TypeDecorator

metadata = MetaData()


class UTCDateTime(TypeDecorator):
    """UTC の naive datetime として保存し、読み出し時は aware に戻す。"""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


sellable_units = Table(
    "sellable_units",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("kind", String(32), nullable=False),
    Column("price_cents", Integer, nullable=False, default=0),
    Column("capacity", Integer, nullable=True),  # NULL = 無制限
    Column("committed", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=0),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("status", String(32), nullable=False),
    Column("buyer_name", String(200), nullable=False),
    Column("buyer_email", String(320), nullable=True),
    Column("buyer_phone", String(64), nullable=True),
    Column("payment_method", String(16), nullable=False),
    Column("payment_ref", String(128), nullable=True),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("subtotal_cents", Integer, nullable=False),
    Column("total_cents", Integer, nullable=False),
    Column("cancel_reason", Text, nullable=True),
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=True),
    Column("paid_at", UTCDateTime, nullable=True),
    Index("ix_orders_status_expires_at", "status", "expires_at"),
    Index("ix_orders_payment_ref", "payment_ref"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("unit_id", String(36), ForeignKey("sellable_units.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price_cents", Integer, nullable=False),
)

reservations = Table(
    "reservations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("order_item_id", String(36), ForeignKey("order_items.id"), nullable=False, unique=True),
    Column("unit_id", String(36), ForeignKey("sellable_units.id"), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("released", Boolean, nullable=False, default=False),
    Column("released_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
)

entitlements = Table(
    "entitlements",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("kind", String(16), nullable=False),
    Column("unit_id", String(36), ForeignKey("sellable_units.id"), nullable=False, index=True),
    Column("owner_ref", String(128), nullable=False, index=True),
    Column("external_ref", String(128), nullable=True, index=True),
    Column("quantity", Integer, nullable=False, default=1),
    Column("status", String(16), nullable=False),
    Column("cancel_at_period_end", Boolean, nullable=False, default=False),
    Column("released", Boolean, nullable=False, default=False),
    Column("released_at", UTCDateTime, nullable=True),
    Column("version", Integer, nullable=False, default=1),
    Column("started_at", UTCDateTime, nullable=True),
    Column("expires_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Index("ix_entitlements_kind_status_expires_at", "kind", "status", "expires_at"),
)

disputes = Table(
    "disputes",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("provider_dispute_id", String(128), nullable=False, unique=True),
    Column("provider", String(32), nullable=False),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=True, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("amount_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("reason", Text, nullable=True),
    Column("buyer_email", String(320), nullable=True),
    Column("response_deadline", UTCDateTime, nullable=True),
    Column("evidence_submitted_at", UTCDateTime, nullable=True),
    Column("internal_notes", Text, nullable=True),
    Column("outcome_code", String(64), nullable=True),
    Column("outcome_reason", Text, nullable=True),
    Column("resolved_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

webhook_events = Table(
    "webhook_events",
    metadata,
    Column("provider_event_id", String(128), primary_key=True),
    Column("provider", String(32), nullable=False),
    Column("event_type", String(128), nullable=False),
    Column("order_ref", String(128), nullable=True),
    Column("result", JSON, nullable=True),
    Column("processed_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False, index=True),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False),
    Column("aggregate_type", String(32), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_aggregate_version"),
)
