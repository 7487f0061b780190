"""
Ledger — 設定 (Configuration)

環境変数から設定を一度だけ読み込み、イミュータブルな Settings として扱う。
キャッシュ注文のホールド時間や紛争結果コードの対応表など、
ハードコードしがちな値もすべてここで上書きできる。
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./ledger.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
EVENTS_CHANNEL = "ledger_events"

# プロバイダ固有の紛争結果コード → 内部ステータス (WON / LOST / CLOSED)
# ここに無いコードはすべて CLOSED 扱い。
DEFAULT_DISPUTE_OUTCOMES: dict[str, str] = {
    "RESOLVED_SELLER_FAVOUR": "WON",  # PayPal
    "won": "WON",  # Stripe
    "charge_refunded": "WON",  # Stripe
    "RESOLVED_BUYER_FAVOUR": "LOST",  # PayPal
    "lost": "LOST",  # Stripe
}


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y"}


def _env_int(name: str, default: int) -> int:
    val = os.environ.get(name)
    return int(val) if val else default


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    return float(val) if val else default


def _outcome_map_from_env() -> dict[str, str]:
    raw = os.environ.get("DISPUTE_OUTCOME_MAP")
    outcomes = dict(DEFAULT_DISPUTE_OUTCOMES)
    if raw:
        outcomes.update(json.loads(raw))
    return outcomes


@dataclass(frozen=True)
class Settings:
    database_url: str = DATABASE_URL
    redis_url: str = REDIS_URL
    events_channel: str = EVENTS_CHANNEL
    cash_hold_minutes: int = 30
    pending_hold_minutes: int | None = None
    sweep_batch_size: int = 100
    cash_sweep_interval_seconds: int = 300
    entitlement_sweep_interval_seconds: int = 86400
    sweeper_enabled: bool = True
    webhook_retention_days: int = 7
    dispute_outcomes: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_DISPUTE_OUTCOMES)
    )
    payment_gateway_url: str | None = None
    gateway_max_attempts: int = 3
    gateway_backoff_base: float = 0.2
    gateway_backoff_max: float = 5.0
    log_level: str = "INFO"

    @property
    def cash_hold(self) -> timedelta:
        return timedelta(minutes=self.cash_hold_minutes)

    def hold_for(self, payment_method: str) -> timedelta | None:
        """未払い注文のホールド期間。None なら期限なし。"""
        if payment_method == "CASH":
            return self.cash_hold
        if self.pending_hold_minutes:
            return timedelta(minutes=self.pending_hold_minutes)
        return None

    @property
    def webhook_retention(self) -> timedelta:
        return timedelta(days=self.webhook_retention_days)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=DATABASE_URL,
            redis_url=REDIS_URL,
            events_channel=os.environ.get("EVENTS_CHANNEL", EVENTS_CHANNEL),
            cash_hold_minutes=_env_int("CASH_HOLD_MINUTES", 30),
            pending_hold_minutes=_env_int("PENDING_HOLD_MINUTES", 0) or None,
            sweep_batch_size=_env_int("SWEEP_BATCH_SIZE", 100),
            cash_sweep_interval_seconds=_env_int("CASH_SWEEP_INTERVAL_SECONDS", 300),
            entitlement_sweep_interval_seconds=_env_int(
                "ENTITLEMENT_SWEEP_INTERVAL_SECONDS", 86400
            ),
            sweeper_enabled=_env_bool("SWEEPER_ENABLED", True),
            webhook_retention_days=_env_int("WEBHOOK_RETENTION_DAYS", 7),
            dispute_outcomes=_outcome_map_from_env(),
            payment_gateway_url=os.environ.get("PAYMENT_GATEWAY_URL") or None,
            gateway_max_attempts=_env_int("GATEWAY_MAX_ATTEMPTS", 3),
            gateway_backoff_base=_env_float("GATEWAY_BACKOFF_BASE", 0.2),
            gateway_backoff_max=_env_float("GATEWAY_BACKOFF_MAX", 5.0),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
