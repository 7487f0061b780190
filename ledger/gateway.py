"""
Ledger — 決済ゲートウェイクライアント

任意返金のときだけ外部の決済ゲートウェイを呼ぶ。
呼び出しは DB トランザクションの外で行い、失敗しても台帳は変更しない。

一時的な失敗 (接続エラー・5xx・429) は指数バックオフで再試行する:

    delay = min(backoff_max, backoff_base * 2 ** (attempt - 1)) ± jitter

上限に達したら ExternalServiceError。
POST の再試行を安全にするため Idempotency-Key ヘッダーに注文 ID を付ける。
"""

import asyncio
import logging
import random
from dataclasses import dataclass

import httpx

from .config import Settings
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "payment-gateway"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 5.0
    jitter: float = 0.1  # 遅延の ± 割合
    retry_on_status: tuple[int, ...] = (408, 425, 429, 500, 502, 503, 504)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.gateway_max_attempts),
            backoff_base=settings.gateway_backoff_base,
            backoff_max=settings.gateway_backoff_max,
        )

    def compute_delay(self, attempt: int) -> float:
        base = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        jitter_range = base * self.jitter
        return max(0.0, base + random.uniform(-jitter_range, jitter_range))


class PaymentGateway:
    """決済ゲートウェイの返金 API クライアント"""

    def __init__(
        self,
        base_url: str,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
        sleep=asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy()
        self.transport = transport
        self.timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "PaymentGateway | None":
        """PAYMENT_GATEWAY_URL が未設定なら None (返金 API を呼ばない)。"""
        if not settings.payment_gateway_url:
            return None
        return cls(
            settings.payment_gateway_url,
            RetryPolicy.from_settings(settings),
            transport=transport,
        )

    async def refund(
        self,
        payment_ref: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> dict:
        payload = {
            "payment_ref": payment_ref,
            "amount_cents": amount_cents,
            "currency": currency,
        }
        headers = {"Idempotency-Key": idempotency_key}
        last_error = ""

        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        ) as client:
            for attempt in range(1, self.policy.max_attempts + 1):
                try:
                    resp = await client.post("/refunds", json=payload, headers=headers)
                except httpx.TransportError as e:
                    last_error = f"{type(e).__name__}: {e}"
                else:
                    if resp.status_code < 400:
                        logger.info(
                            "Refund of %s accepted on attempt %d", payment_ref, attempt
                        )
                        return resp.json() if resp.content else {}
                    last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                    if resp.status_code not in self.policy.retry_on_status:
                        raise ExternalServiceError(SERVICE_NAME, last_error, attempt)

                if attempt < self.policy.max_attempts:
                    delay = self.policy.compute_delay(attempt)
                    logger.warning(
                        "Refund of %s failed (%s); retrying in %.2fs (%d/%d)",
                        payment_ref, last_error, delay, attempt, self.policy.max_attempts,
                    )
                    await self._sleep(delay)

        logger.error(
            "Refund of %s failed after %d attempt(s): %s",
            payment_ref, self.policy.max_attempts, last_error,
        )
        raise ExternalServiceError(SERVICE_NAME, last_error, self.policy.max_attempts)
