"""
Ledger — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
すべての状態変更はイベントストアに記録され、コミット後に Redis で発行される。

┌──────────────┐  POST /commands/*   ┌────────────────┐
│   Checkout   │ ──────────────────▶ │                │ ── ledger_events ──▶ Redis
│   / Admin    │                     │  Ledger API    │
└──────────────┘                     │                │
┌──────────────┐  POST /webhooks/*   │  (+ Sweeper)   │
│ Stripe/PayPal│ ──────────────────▶ │                │
└──────────────┘                     └───────┬────────┘
                                             │
                                     ┌───────▼────────┐
                                     │   Ledger DB    │
                                     └────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from . import (
    commands,
    disputes,
    entitlements,
    event_store,
    inventory,
    queries,
    sweeper,
    webhooks,
)
from .config import Settings, configure_logging
from .errors import (
    ExternalServiceError,
    InsufficientInventoryError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
)
from .gateway import PaymentGateway
from .reservations import LineItemRequest
from .schema import metadata, utcnow

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class LineItemIn(BaseModel):
    unit_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class BuyerIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: str | None = None
    phone: str | None = None


class CreateOrderRequest(BaseModel):
    items: list[LineItemIn] = Field(..., min_length=1)
    buyer: BuyerIn
    payment_method: str = "CARD"
    paid: bool = False
    payment_ref: str | None = None
    currency: str = "USD"


class ConfirmRequest(BaseModel):
    payment_ref: str | None = None


class ReasonRequest(BaseModel):
    reason: str = "requested_by_customer"


class CreateUnitRequest(BaseModel):
    name: str = Field(..., min_length=1)
    kind: str
    capacity: int | None = Field(None, ge=0)
    price_cents: int = Field(0, ge=0)
    unit_id: str | None = None


class CapacityRequest(BaseModel):
    capacity: int | None = Field(None, ge=0)


class GrantRequest(BaseModel):
    kind: str
    unit_id: str
    owner_ref: str = Field(..., min_length=1)
    duration_days: int | None = Field(None, gt=0)
    external_ref: str | None = None
    pending: bool = False


class ActivateRequest(BaseModel):
    duration_days: int | None = Field(None, gt=0)


class RenewRequest(BaseModel):
    expires_at: datetime


class CancelEntitlementRequest(BaseModel):
    immediate: bool = True


class NotesRequest(BaseModel):
    notes: str


# ── Error Handling ───────────────────────────────


def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc), **extra},
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InsufficientInventoryError)
    async def insufficient_inventory(_request: Request, exc: InsufficientInventoryError):
        return _error(
            409, exc,
            unit_id=exc.unit_id, requested=exc.requested, available=exc.available,
        )

    @app.exception_handler(InvalidStateError)
    async def invalid_state(_request: Request, exc: InvalidStateError):
        return _error(409, exc, current=exc.current)

    @app.exception_handler(NotFoundError)
    async def not_found(_request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(ExternalServiceError)
    async def external_service(_request: Request, exc: ExternalServiceError):
        return _error(502, exc, service=exc.service, attempts=exc.attempts)

    @app.exception_handler(LedgerError)
    async def ledger_error(_request: Request, exc: LedgerError):
        return _error(400, exc)

    @app.exception_handler(ValueError)
    async def value_error(_request: Request, exc: ValueError):
        return _error(422, exc)


# ── Application ──────────────────────────────────


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    engine_kwargs = {"echo": False}
    if settings.database_url.startswith("sqlite"):
        engine_kwargs["poolclass"] = NullPool
    engine = create_async_engine(settings.database_url, **engine_kwargs)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    gateway = PaymentGateway.from_settings(settings, transport=gateway_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """起動時にテーブルを作成し、スイーパーをバックグラウンドタスクとして開始する。"""
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

        owns_redis = app.state.redis is None
        if owns_redis:
            app.state.redis = aioredis.from_url(settings.redis_url, decode_responses=True)

        shutdown_event = asyncio.Event()
        sweeper_task = None
        if settings.sweeper_enabled:
            sweeper_task = asyncio.create_task(
                sweeper.run_scheduler(async_session, app.state.redis, settings, shutdown_event)
            )
        yield
        shutdown_event.set()
        if sweeper_task is not None:
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                pass
        if owns_redis:
            await app.state.redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Reservation Ledger", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = async_session
    app.state.redis = redis
    register_error_handlers(app)

    # ── Order Commands (Write 側) ────────────────

    @app.post("/commands/orders", status_code=201)
    async def cmd_create_order(req: CreateOrderRequest):
        """注文作成コマンド (チェックアウト)"""
        async with async_session() as session:
            return await commands.create_order(
                session,
                app.state.redis,
                [LineItemRequest(i.unit_id, i.quantity) for i in req.items],
                commands.BuyerInfo(req.buyer.name, req.buyer.email, req.buyer.phone),
                payment_method=req.payment_method,
                paid=req.paid,
                payment_ref=req.payment_ref,
                currency=req.currency,
                settings=settings,
            )

    @app.post("/commands/orders/{order_id}/confirm")
    async def cmd_confirm_order(order_id: str, req: ConfirmRequest | None = None):
        """支払い確認コマンド"""
        async with async_session() as session:
            result = await commands.confirm_payment(
                session, app.state.redis, order_id,
                req.payment_ref if req else None, settings=settings,
            )
            return result.summary()

    @app.post("/commands/orders/{order_id}/cancel")
    async def cmd_cancel_order(order_id: str, req: ReasonRequest | None = None):
        """キャンセルコマンド (在庫解放)"""
        reason = req.reason if req else "cancelled_by_customer"
        async with async_session() as session:
            result = await commands.cancel_order(
                session, app.state.redis, order_id, reason, settings=settings
            )
            return result.summary()

    @app.post("/commands/orders/{order_id}/refund")
    async def cmd_refund_order(order_id: str, req: ReasonRequest | None = None):
        """
        返金コマンド

        ゲートウェイが設定されていれば、先に外部の返金 API を呼ぶ
        (DB トランザクションの外)。失敗したら注文は変更しない。
        """
        reason = req.reason if req else "requested_by_customer"
        async with async_session() as session:
            order = await commands.get_order(session, order_id)
        if order is None:
            raise NotFoundError(commands.AGGREGATE_TYPE, order_id)

        if (
            gateway is not None
            and order["status"] in {s.value for s in commands.VOLUNTARY_REFUND_FROM}
            and order["payment_method"] not in {"CASH", "FREE"}
            and order["payment_ref"]
        ):
            logger.info("Refunding order %s through payment gateway", order_id)
            await gateway.refund(
                order["payment_ref"], order["total_cents"], order["currency"],
                idempotency_key=order_id,
            )

        async with async_session() as session:
            result = await commands.refund_order(
                session, app.state.redis, order_id, reason, settings=settings
            )
            return result.summary()

    # ── Catalog Commands ─────────────────────────

    @app.post("/commands/units", status_code=201)
    async def cmd_create_unit(req: CreateUnitRequest):
        """販売単位の登録"""
        async with async_session() as session:
            try:
                unit, event = await inventory.create_unit(
                    session, req.name, req.kind, req.capacity, req.price_cents, req.unit_id
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        await event_store.publish_events(app.state.redis, settings.events_channel, [event])
        return unit

    @app.post("/commands/units/{unit_id}/capacity")
    async def cmd_set_capacity(unit_id: str, req: CapacityRequest):
        """capacity の変更 (committed 未満は 409)"""
        async with async_session() as session:
            try:
                event = await inventory.set_capacity(session, unit_id, req.capacity)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            unit = await queries.get_unit(session, unit_id)
        await event_store.publish_events(app.state.redis, settings.events_channel, [event])
        return unit

    # ── Entitlement Commands ─────────────────────

    @app.post("/commands/entitlements", status_code=201)
    async def cmd_grant_entitlement(req: GrantRequest):
        """利用権の付与 (販売単位の枠を引き当てる)"""
        duration = timedelta(days=req.duration_days) if req.duration_days else None
        async with async_session() as session:
            result = await commands.commit_and_publish(
                session, app.state.redis, settings, entitlements.grant,
                req.kind, req.unit_id, req.owner_ref, duration, req.external_ref, req.pending,
            )
            return result.entitlement

    @app.post("/commands/entitlements/{entitlement_id}/activate")
    async def cmd_activate_entitlement(entitlement_id: str, req: ActivateRequest | None = None):
        now = utcnow()
        expires_at = now + timedelta(days=req.duration_days) if req and req.duration_days else None
        async with async_session() as session:
            result = await commands.commit_and_publish(
                session, app.state.redis, settings, entitlements.activate,
                entitlement_id, now, expires_at,
            )
            return result.summary()

    @app.post("/commands/entitlements/{entitlement_id}/renew")
    async def cmd_renew_entitlement(entitlement_id: str, req: RenewRequest):
        async with async_session() as session:
            result = await commands.commit_and_publish(
                session, app.state.redis, settings, entitlements.renew,
                entitlement_id, req.expires_at, utcnow(),
            )
            return result.summary()

    @app.post("/commands/entitlements/{entitlement_id}/cancel")
    async def cmd_cancel_entitlement(
        entitlement_id: str, req: CancelEntitlementRequest | None = None
    ):
        immediate = req.immediate if req else True
        async with async_session() as session:
            result = await commands.commit_and_publish(
                session, app.state.redis, settings, entitlements.cancel,
                entitlement_id, utcnow(), immediate,
            )
            return result.summary()

    # ── Dispute Commands (管理用) ────────────────

    @app.post("/commands/disputes/{dispute_id}/evidence")
    async def cmd_submit_evidence(dispute_id: str):
        """証拠提出済みにする (OPEN → UNDER_REVIEW)"""
        async with async_session() as session:
            result = await commands.commit_and_publish(
                session, app.state.redis, settings,
                disputes.mark_evidence_submitted, dispute_id,
            )
            return result.dispute

    @app.post("/commands/disputes/{dispute_id}/notes")
    async def cmd_add_notes(dispute_id: str, req: NotesRequest):
        async with async_session() as session:
            result = await commands.commit_and_publish(
                session, app.state.redis, settings, disputes.add_notes, dispute_id, req.notes
            )
            return result.dispute

    # ── Webhooks / Internal ──────────────────────

    @app.post("/webhooks/{provider}")
    async def receive_webhook(provider: str, event: webhooks.WebhookEvent):
        """決済プロバイダからの Webhook (再送は前回の結果を返す)"""
        async with async_session() as session:
            return await webhooks.handle_webhook(
                session, app.state.redis, provider, event, settings=settings
            )

    @app.post("/internal/sweep")
    async def trigger_sweep():
        """期限切れスイープを即時実行する"""
        report = await sweeper.run_sweep(async_session, app.state.redis, settings=settings)
        return report.to_dict()

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: str):
        async with async_session() as session:
            order = await queries.get_order(session, order_id)
            if not order:
                raise HTTPException(404, "Order not found")
            return order

    @app.get("/queries/units/{unit_id}")
    async def query_get_unit(unit_id: str):
        async with async_session() as session:
            unit = await queries.get_unit(session, unit_id)
            if not unit:
                raise HTTPException(404, "Unit not found")
            return unit

    @app.get("/queries/entitlements/{entitlement_id}")
    async def query_get_entitlement(entitlement_id: str):
        async with async_session() as session:
            ent = await queries.get_entitlement(session, entitlement_id)
            if not ent:
                raise HTTPException(404, "Entitlement not found")
            return ent

    @app.get("/queries/disputes")
    async def query_list_disputes(status: str | None = None, limit: int = 100):
        async with async_session() as session:
            return await disputes.list_disputes(session, status, limit)

    @app.get("/queries/disputes/stats")
    async def query_dispute_stats():
        async with async_session() as session:
            return await disputes.dispute_stats(session)

    @app.get("/queries/disputes/{dispute_id}")
    async def query_get_dispute(dispute_id: str):
        async with async_session() as session:
            dispute = await disputes.get_dispute(session, dispute_id)
            if not dispute:
                raise HTTPException(404, "Dispute not found")
            return dispute

    # ── Event Store (監査用) ─────────────────────

    @app.get("/events/{aggregate_id}")
    async def get_aggregate_events(aggregate_id: str):
        async with async_session() as session:
            return await event_store.load_events(session, aggregate_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "reservation-ledger"}

    return app


app = create_app()
