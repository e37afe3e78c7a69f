"""Payment processor port and adapters.

The engine talks to an external processor through ``PaymentProcessor``:
``hold`` reserves funds from the payer and returns a stable hold reference,
``capture`` transfers held funds, ``void`` releases them back to the payer.
Every call carries an idempotency key; a repeated key returns the original
outcome instead of producing a second effect.

Failures are returned as ``ProcessorResult(success=False)`` values, with
``retryable`` set for timeouts and transient outages, so callers decide
retries from data rather than from exceptions.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

import httpx

from raven_engine import constants

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorResult:
    """Outcome of one processor call."""

    success: bool
    reference: Optional[str] = None
    status: Optional[str] = None
    failure_reason: Optional[str] = None
    retryable: bool = False

    @classmethod
    def declined(cls, reason: str) -> "ProcessorResult":
        return cls(success=False, status="declined", failure_reason=reason)

    @classmethod
    def unavailable(cls, reason: str) -> "ProcessorResult":
        return cls(success=False, status="unavailable", failure_reason=reason, retryable=True)


class PaymentProcessor(ABC):
    """Abstract payment processor interface."""

    @abstractmethod
    def hold(self, payer_id: str, amount: Decimal, currency: str, idempotency_key: str) -> ProcessorResult:
        """Reserve funds; ``reference`` is the hold reference."""

    @abstractmethod
    def capture(self, hold_reference: str, idempotency_key: str) -> ProcessorResult:
        """Transfer held funds to the payee; ``reference`` is the receipt."""

    @abstractmethod
    def void(self, hold_reference: str, idempotency_key: str) -> ProcessorResult:
        """Release held funds back to the payer; ``reference`` is the receipt."""


@dataclass
class _ScriptedFailure:
    operation: str
    result: ProcessorResult
    apply_effect: bool


class FakePaymentProcessor(PaymentProcessor):
    """In-memory processor for development and tests.

    Honors idempotency keys the way a real processor does, keeps a log of
    every call and of every effect actually applied, and can be scripted to
    decline or time out.
    """

    def __init__(self) -> None:
        self.should_succeed = True
        self.failure_reason = "Card declined"
        self.calls: List[Dict[str, object]] = []
        self.effects: List[Dict[str, object]] = []
        self.holds: Dict[str, str] = {}
        self._outcomes: Dict[str, ProcessorResult] = {}
        self._scripted: List[_ScriptedFailure] = []
        self._lock = threading.Lock()

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        """Configure processor behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def fail_next(self, operation: str, *, times: int = 1, retryable: bool = False, apply_effect: bool = False) -> None:
        """Script the next ``times`` calls of ``operation`` to fail.

        With ``apply_effect`` the processor performs the operation but the
        caller only sees the failure, as with a response lost to a timeout.
        """
        result = (
            ProcessorResult.unavailable(f"{operation} timed out")
            if retryable
            else ProcessorResult.declined(self.failure_reason)
        )
        for _ in range(times):
            self._scripted.append(_ScriptedFailure(operation, result, apply_effect))

    def effect_count(self, operation: str) -> int:
        return sum(1 for effect in self.effects if effect["operation"] == operation)

    def hold(self, payer_id: str, amount: Decimal, currency: str, idempotency_key: str) -> ProcessorResult:
        return self._call("hold", idempotency_key, {"payer_id": payer_id, "amount": amount, "currency": currency})

    def capture(self, hold_reference: str, idempotency_key: str) -> ProcessorResult:
        return self._call("capture", idempotency_key, {"hold_reference": hold_reference})

    def void(self, hold_reference: str, idempotency_key: str) -> ProcessorResult:
        return self._call("void", idempotency_key, {"hold_reference": hold_reference})

    def _call(self, operation: str, key: str, payload: Dict[str, object]) -> ProcessorResult:
        with self._lock:
            self.calls.append({"operation": operation, "idempotency_key": key, **payload})
            if key in self._outcomes:
                return self._outcomes[key]

            scripted = self._take_scripted(operation)
            if scripted is not None and not scripted.apply_effect:
                if not scripted.result.retryable:
                    self._outcomes[key] = scripted.result
                return scripted.result

            if scripted is None and not self.should_succeed:
                outcome = ProcessorResult.declined(self.failure_reason)
                self._outcomes[key] = outcome
                return outcome

            outcome = self._apply(operation, key, payload)
            self._outcomes[key] = outcome
            return scripted.result if scripted is not None else outcome

    def _take_scripted(self, operation: str) -> Optional[_ScriptedFailure]:
        for index, scripted in enumerate(self._scripted):
            if scripted.operation == operation:
                return self._scripted.pop(index)
        return None

    def _apply(self, operation: str, key: str, payload: Dict[str, object]) -> ProcessorResult:
        if operation == "hold":
            reference = f"fake_hold_{uuid4().hex[:12]}"
            self.holds[reference] = "held"
        else:
            hold_reference = str(payload["hold_reference"])
            state = self.holds.get(hold_reference)
            if state != "held":
                return ProcessorResult.declined(f"hold {hold_reference} is {state or 'unknown'}")
            self.holds[hold_reference] = "captured" if operation == "capture" else "voided"
            reference = f"fake_{operation}_{uuid4().hex[:12]}"
        self.effects.append({"operation": operation, "idempotency_key": key, "reference": reference, **payload})
        return ProcessorResult(success=True, reference=reference, status="succeeded")


class HttpPaymentProcessor(PaymentProcessor):
    """Adapter for a REST payment processor speaking JSON over HTTP.

    ``POST /holds`` creates a hold, ``POST /holds/{ref}/capture`` and
    ``POST /holds/{ref}/void`` settle it. The idempotency key travels in the
    ``Idempotency-Key`` header.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = constants.PAYMENT_PROCESSOR_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def hold(self, payer_id: str, amount: Decimal, currency: str, idempotency_key: str) -> ProcessorResult:
        payload = {"payer_id": payer_id, "amount": str(amount), "currency": currency}
        return self._post("/holds", payload, idempotency_key, reference_field="hold_id")

    def capture(self, hold_reference: str, idempotency_key: str) -> ProcessorResult:
        return self._post(f"/holds/{hold_reference}/capture", {}, idempotency_key, reference_field="receipt_id")

    def void(self, hold_reference: str, idempotency_key: str) -> ProcessorResult:
        return self._post(f"/holds/{hold_reference}/void", {}, idempotency_key, reference_field="receipt_id")

    def _post(self, path: str, payload: Dict[str, object], key: str, reference_field: str) -> ProcessorResult:
        try:
            response = self._client.post(path, json=payload, headers={"Idempotency-Key": key})
        except httpx.TimeoutException as exc:
            LOG.warning("Payment processor timeout on %s: %s", path, exc)
            return ProcessorResult.unavailable(f"timeout: {exc}")
        except httpx.TransportError as exc:
            LOG.warning("Payment processor unreachable on %s: %s", path, exc)
            return ProcessorResult.unavailable(f"transport error: {exc}")

        if response.status_code == 429 or response.status_code >= 500:
            return ProcessorResult.unavailable(f"processor returned {response.status_code}")
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = None
        if not isinstance(body, dict):
            LOG.warning("Payment processor sent an unreadable %s body on %s", response.status_code, path)
            if response.status_code >= 400:
                return ProcessorResult.declined(f"processor returned {response.status_code}")
            # The operation may have happened; the same key must be retried.
            return ProcessorResult.unavailable(f"unreadable response ({response.status_code})")
        if response.status_code >= 400:
            return ProcessorResult.declined(str(body.get("error") or f"processor returned {response.status_code}"))
        return ProcessorResult(
            success=True,
            reference=body.get(reference_field),
            status=body.get("status", "succeeded"),
        )


def build_processor() -> PaymentProcessor:
    """Return the configured processor adapter."""
    if constants.PAYMENT_PROCESSOR_URL:
        return HttpPaymentProcessor(constants.PAYMENT_PROCESSOR_URL)
    LOG.warning("No payment processor URL configured; using the in-memory fake processor.")
    return FakePaymentProcessor()
