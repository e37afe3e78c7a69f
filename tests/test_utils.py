import json
import logging
from decimal import Decimal

import httpx
import pytest

from raven_engine import constants
from raven_engine.clients.notifier import NotificationSender, dispatch
from raven_engine.clients.payment_processor import FakePaymentProcessor, HttpPaymentProcessor, ProcessorResult
from raven_engine.models.enums import NotificationKind, SettlementOperation
from raven_engine.utils.cache import TTLCache
from raven_engine.utils.fees import FeeSchedule
from raven_engine.utils.ids import idempotency_key
from raven_engine.utils.logging import setup_logging
from raven_engine.utils.retry import RetryPolicy


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_retry_policy_retries_only_retryable_failures():
    delays = []
    results = iter(
        [
            ProcessorResult.unavailable("timeout"),
            ProcessorResult.unavailable("timeout"),
            ProcessorResult(success=True, reference="ref"),
        ]
    )
    policy = RetryPolicy(max_attempts=3, delay_seconds=0.5, backoff=2.0, sleep=delays.append)

    result = policy.run(lambda: next(results))

    assert result.success
    assert delays == [0.5, 1.0]

    declined = RetryPolicy(sleep=delays.append).run(lambda: ProcessorResult.declined("no funds"))
    assert not declined.success
    assert delays == [0.5, 1.0]


def test_retry_policy_returns_last_failure_when_attempts_run_out():
    calls = []

    def call():
        calls.append(1)
        return ProcessorResult.unavailable("down")

    result = RetryPolicy(max_attempts=2, sleep=lambda _: None).run(call)

    assert result.retryable
    assert len(calls) == 2


def test_retry_policy_logs_each_retry_and_lets_errors_through(caplog):
    results = iter([ProcessorResult.unavailable("gateway timeout"), ProcessorResult(success=True, reference="r")])
    policy = RetryPolicy(max_attempts=3, sleep=lambda _: None)

    with caplog.at_level(logging.WARNING):
        assert policy.run(lambda: next(results), label="capture").success
    assert "Retryable capture failure (attempt 1/3): gateway timeout" in caplog.text

    def broken():
        raise RuntimeError("adapter bug")

    with pytest.raises(RuntimeError):
        policy.run(broken)


def test_ttl_cache_expires_entries():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    loads = []

    def loader(key):
        loads.append(key)
        return f"value-{len(loads)}"

    assert cache.get_or_load("USD", loader) == "value-1"
    clock.now = 9.9
    assert cache.get_or_load("USD", loader) == "value-1"
    clock.now = 10.0
    assert cache.get_or_load("USD", loader) == "value-2"

    cache.invalidate("USD")
    assert cache.get("USD") is None
    cache.put("EUR", "x")
    cache.invalidate()
    assert cache.get("EUR") is None


def test_fee_split_rounds_half_up():
    fees = FeeSchedule(lambda currency: Decimal("0.15"), TTLCache(ttl_seconds=60))

    assert fees.split(Decimal("100"), "usd") == (Decimal("15.00"), Decimal("85.00"))
    assert fees.split(Decimal("10.10"), "USD") == (Decimal("1.52"), Decimal("8.58"))
    assert fees.split(Decimal("0.03"), "USD") == (Decimal("0.00"), Decimal("0.03"))


def test_default_fee_rate_is_configurable(monkeypatch):
    monkeypatch.setattr(constants, "PLATFORM_FEE_RATE", Decimal("0.20"))

    assert FeeSchedule().rate("usd") == Decimal("0.20")


def test_idempotency_key_format():
    assert idempotency_key("s1", SettlementOperation.REFUND, 2) == "s1:refund:2"


def test_fake_processor_honours_idempotency_keys():
    processor = FakePaymentProcessor()

    first = processor.hold("alice", Decimal("10.00"), "USD", "s1:hold:1")
    second = processor.hold("alice", Decimal("10.00"), "USD", "s1:hold:1")

    assert first == second
    assert processor.effect_count("hold") == 1

    captured = processor.capture(first.reference, "s1:release:1")
    assert captured.success
    voided = processor.void(first.reference, "s1:refund:1")
    assert not voided.success
    assert voided.failure_reason == f"hold {first.reference} is captured"


def test_fake_processor_retryable_failures_are_not_cached():
    processor = FakePaymentProcessor()
    processor.fail_next("hold", retryable=True)

    assert processor.hold("alice", Decimal("10.00"), "USD", "k").retryable
    assert processor.hold("alice", Decimal("10.00"), "USD", "k").success


def _processor(handler) -> HttpPaymentProcessor:
    return HttpPaymentProcessor("https://processor.test", api_key="secret", transport=httpx.MockTransport(handler))


def test_http_processor_sends_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["key"] = request.headers["Idempotency-Key"]
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"hold_id": "h_123", "status": "held"})

    result = _processor(handler).hold("alice", Decimal("12.50"), "USD", "s1:hold:1")

    assert result == ProcessorResult(success=True, reference="h_123", status="held")
    assert seen == {
        "path": "/holds",
        "key": "s1:hold:1",
        "auth": "Bearer secret",
        "body": {"payer_id": "alice", "amount": "12.50", "currency": "USD"},
    }


@pytest.mark.parametrize(
    "status_code, retryable",
    [(402, False), (409, False), (429, True), (500, True), (503, True)],
)
def test_http_processor_classifies_failures(status_code, retryable):
    processor = _processor(lambda request: httpx.Response(status_code, json={"error": "nope"}))

    result = processor.capture("h_123", "s1:release:1")

    assert not result.success
    assert result.retryable is retryable


def test_http_processor_declines_on_non_json_error_page():
    processor = _processor(lambda request: httpx.Response(400, text="<html>Bad Request</html>"))

    result = processor.hold("alice", Decimal("10.00"), "USD", "s1:hold:1")

    assert result == ProcessorResult.declined("processor returned 400")
    assert not result.retryable


def test_http_processor_unreadable_success_keeps_outcome_open():
    processor = _processor(lambda request: httpx.Response(201, text="OK"))

    result = processor.capture("h_123", "s1:release:1")

    assert not result.success
    assert result.retryable
    assert result.failure_reason == "unreadable response (201)"


def test_http_processor_timeout_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    result = _processor(handler).void("h_123", "s1:refund:1")

    assert result.retryable
    assert "timeout" in result.failure_reason


def test_dispatch_swallows_sender_failures(caplog):
    class BrokenSender(NotificationSender):
        def notify(self, user_id, kind, payload):
            raise RuntimeError("push gateway down")

    with caplog.at_level(logging.ERROR):
        dispatch(BrokenSender(), "alice", NotificationKind.NEW_MESSAGE, conversation_id="c1")

    assert "Failed to send NEW_MESSAGE notification to alice" in caplog.text


def test_setup_logging_writes_log_file():
    setup_logging()
    logging.getLogger("raven_engine.test").info("hello from tests")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "hello from tests" in (constants.LOG_DIR / "raven-engine.log").read_text()
