"""Bounded retry of source calls, backed by tenacity.

Every source call made by the range fetcher goes through ``call_with_retry``:
throttling and soft transient failures are retried with exponential backoff
until either the attempt budget or the elapsed-time cap runs out. Any other
error propagates immediately.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from kinesis_ingest.core.domain.errors import (
    FetchCancelled,
    SourceThrottled,
    SourceTransientError,
)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (SourceThrottled, SourceTransientError)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff parameters for one source call.

    max_attempts is the TOTAL number of tries, not the number of retries.
    """

    max_attempts: int = 4
    initial_wait_ms: int = 100
    max_wait_ms: int = 10_000
    timeout_ms: int = 10_000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.initial_wait_ms < 0 or self.max_wait_ms < self.initial_wait_ms:
            raise ValueError("require 0 <= initial_wait_ms <= max_wait_ms")

    def with_timeout(self, timeout_ms: int | None) -> RetryPolicy:
        if timeout_ms is None:
            return self
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_wait_ms=self.initial_wait_ms,
            max_wait_ms=self.max_wait_ms,
            timeout_ms=timeout_ms,
        )


class RetriesExhausted(Exception):
    """Raised when the retry budget of a single source call runs out."""

    def __init__(self, attempts: int, elapsed_ms: float, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.elapsed_ms = elapsed_ms
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts in {elapsed_ms:.0f} ms: {last_error}")


def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    cancel: threading.Event | None = None,
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Run ``operation`` under the policy's retry budget.

    Backoff sleeps wake up early on ``cancel``, which then raises
    FetchCancelled instead of retrying.
    """
    started = time.monotonic()
    attempt = 0
    last_error: BaseException | None = None

    def _sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise FetchCancelled("cancelled during retry backoff")

    timeout_s = policy.timeout_ms / 1000.0
    backoff = wait_exponential(
        multiplier=policy.initial_wait_ms / 1000.0,
        min=policy.initial_wait_ms / 1000.0,
        max=policy.max_wait_ms / 1000.0,
    )

    def _wait(retry_state: RetryCallState) -> float:
        # never sleep past the elapsed-time cap
        remaining = timeout_s - (time.monotonic() - started)
        return max(0.0, min(backoff(retry_state), remaining))

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts) | stop_after_delay(timeout_s),
        wait=_wait,
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        sleep=_sleep,
        reraise=False,
    )

    try:
        for attempt_state in retrying:
            with attempt_state:
                attempt = attempt_state.retry_state.attempt_number
                if cancel is not None and cancel.is_set():
                    raise FetchCancelled("cancelled before source call")
                try:
                    return operation()
                except RETRYABLE_ERRORS as exc:
                    last_error = exc
                    if on_retry is not None and attempt < policy.max_attempts:
                        on_retry(attempt, exc)
                    raise
    except RetryError as exc:
        elapsed_ms = (time.monotonic() - started) * 1000.0
        final_error = last_error or exc.last_attempt.exception()
        raise RetriesExhausted(attempt, elapsed_ms, final_error) from exc

    raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
