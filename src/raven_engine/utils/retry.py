"""Retry policy for payment processor calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_exponential

from raven_engine import constants
from raven_engine.clients.payment_processor import ProcessorResult

LOG = logging.getLogger(__name__)


def _should_retry(result: ProcessorResult) -> bool:
    return not result.success and result.retryable


def _last_result(retry_state: RetryCallState) -> ProcessorResult:
    return retry_state.outcome.result()


@dataclass
class RetryPolicy:
    """Re-issue a processor call while its result is marked retryable.

    The wrapped call must reuse one idempotency key across attempts so that
    every attempt addresses the same processor-side effect. Once attempts run
    out the last failed result is returned, not raised.
    """

    max_attempts: int = constants.PAYMENT_MAX_ATTEMPTS
    delay_seconds: float = constants.PAYMENT_RETRY_DELAY_SECONDS
    backoff: float = constants.PAYMENT_RETRY_BACKOFF
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def run(self, call: Callable[[], ProcessorResult], label: str = "processor call") -> ProcessorResult:
        def log_retry(retry_state: RetryCallState) -> None:
            LOG.warning(
                "Retryable %s failure (attempt %d/%d): %s",
                label,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.outcome.result().failure_reason,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.delay_seconds, exp_base=self.backoff, min=0),
            retry=retry_if_result(_should_retry),
            before_sleep=log_retry,
            retry_error_callback=_last_result,
            sleep=self.sleep,
        )
        return retrying(call)
