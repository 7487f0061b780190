import httpx
import pytest

from ledger.config import Settings
from ledger.errors import ExternalServiceError
from ledger.gateway import PaymentGateway, RetryPolicy


class Recorder:
    """送信されたリクエストと待機時間を記録する"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.delays: list[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


def _gateway(recorder: Recorder, attempts: int = 3) -> PaymentGateway:
    return PaymentGateway(
        "https://gateway.test",
        RetryPolicy(max_attempts=attempts, backoff_base=0.1, backoff_max=1.0, jitter=0.0),
        transport=httpx.MockTransport(recorder.handler),
        sleep=recorder.sleep,
    )


async def test_refund_succeeds_after_transient_failures():
    recorder = Recorder([
        httpx.ConnectError("connection refused"),
        httpx.Response(503),
        httpx.Response(200, json={"refund_id": "re_1"}),
    ])

    result = await _gateway(recorder).refund("pi_1", 5000, "USD", idempotency_key="order-1")

    assert result == {"refund_id": "re_1"}
    assert len(recorder.requests) == 3
    assert recorder.delays == [0.1, 0.2]
    assert all(r.headers["Idempotency-Key"] == "order-1" for r in recorder.requests)


async def test_refund_gives_up_after_max_attempts():
    recorder = Recorder([httpx.Response(500)] * 3)

    with pytest.raises(ExternalServiceError) as exc_info:
        await _gateway(recorder).refund("pi_1", 5000, "USD", idempotency_key="order-1")

    assert exc_info.value.attempts == 3
    assert len(recorder.requests) == 3
    assert len(recorder.delays) == 2


async def test_client_error_is_not_retried():
    recorder = Recorder([httpx.Response(400, json={"error": "already refunded"})])

    with pytest.raises(ExternalServiceError) as exc_info:
        await _gateway(recorder).refund("pi_1", 5000, "USD", idempotency_key="order-1")

    assert exc_info.value.attempts == 1
    assert recorder.delays == []


def test_backoff_is_capped():
    policy = RetryPolicy(backoff_base=1.0, backoff_max=5.0, jitter=0.0)
    assert [policy.compute_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_stays_in_range():
    policy = RetryPolicy(backoff_base=1.0, backoff_max=10.0, jitter=0.1)
    for _ in range(50):
        assert 1.8 <= policy.compute_delay(2) <= 2.2


def test_gateway_disabled_without_url():
    assert PaymentGateway.from_settings(Settings(payment_gateway_url=None)) is None
    gateway = PaymentGateway.from_settings(
        Settings(payment_gateway_url="https://gw.test/", gateway_max_attempts=5)
    )
    assert gateway.base_url == "https://gw.test"
    assert gateway.policy.max_attempts == 5
