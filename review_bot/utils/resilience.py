"""Retry and circuit breaker utilities for outbound model calls."""

import asyncio
import functools
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpenError(Exception):
    """Raised instead of calling through while the breaker is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit breaker '{name}' is open; retry after {retry_after:.1f}s"
        )
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Count-based sliding-window circuit breaker.

    The last ``window_size`` outcomes are kept. Once at least
    ``minimum_calls`` outcomes are recorded and the failure rate reaches
    ``failure_rate_threshold`` percent, the breaker opens for
    ``open_seconds``. After that a single trial call is let through
    (half-open): success closes the breaker, failure re-opens it.

    State is process-local and guarded by a lock so that one instance can be
    shared by every review executed in the worker process.
    """

    def __init__(
        self,
        name: str,
        window_size: int = 20,
        minimum_calls: int = 10,
        failure_rate_threshold: float = 50.0,
        open_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.window_size = window_size
        self.minimum_calls = minimum_calls
        self.failure_rate_threshold = failure_rate_threshold
        self.open_seconds = open_seconds
        self._clock = clock
        self._outcomes: deque[bool] = deque(maxlen=window_size)
        self._state = BreakerState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._refresh()
            return self._state

    def _refresh(self) -> None:
        if (
            self._state == BreakerState.OPEN
            and self._clock() - self._opened_at >= self.open_seconds
        ):
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"Circuit breaker '{self.name}' is half-open")

    def _open(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            f"Circuit breaker '{self.name}' opened for {self.open_seconds:.0f}s"
        )

    def before_call(self) -> bool:
        """
        Admit a call or raise ``CircuitBreakerOpenError``.

        Returns True when the admitted call is the half-open trial.
        """
        with self._lock:
            self._refresh()
            if self._state == BreakerState.OPEN:
                retry_after = self.open_seconds - (self._clock() - self._opened_at)
                raise CircuitBreakerOpenError(self.name, max(retry_after, 0.0))
            if self._state == BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerOpenError(self.name, 0.0)
                self._trial_in_flight = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' closed after trial call")
                self._state = BreakerState.CLOSED
                self._outcomes.clear()
                self._trial_in_flight = False
            self._outcomes.append(True)

    def record_failure(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._open()
                return
            self._outcomes.append(False)
            if len(self._outcomes) < self.minimum_calls:
                return
            failures = sum(1 for ok in self._outcomes if not ok)
            if failures * 100.0 / len(self._outcomes) >= self.failure_rate_threshold:
                self._open()

    def release_trial(self) -> None:
        """Forget a half-open trial whose outcome was not recorded."""
        with self._lock:
            self._trial_in_flight = False


async def with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    breaker: CircuitBreaker | None = None,
    **kwargs: Any,
) -> T:
    """
    Execute an async function with fixed-backoff retries behind a breaker.

    The breaker is consulted once, before the first attempt; the whole retry
    sequence counts as one call. Errors rejected by ``is_retryable`` propagate
    immediately and are not recorded by the breaker.

    Args:
        func: The async function to execute
        *args: Positional arguments to pass to func
        is_retryable: Classifier deciding whether an error is transient
        max_attempts: Total number of attempts, including the first
        backoff_seconds: Pause between attempts
        breaker: Optional circuit breaker guarding the call
        **kwargs: Keyword arguments to pass to func

    Returns:
        The result of the function call

    Raises:
        CircuitBreakerOpenError: If the breaker refused the call
        The last exception if all attempts are exhausted
    """
    if breaker is not None:
        is_trial = breaker.before_call()
    else:
        is_trial = False

    attempts = max(1, max_attempts)
    recorded = False
    try:
        for attempt in range(1, attempts + 1):
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if not is_retryable(e):
                    logger.error(f"Non-retryable error: {type(e).__name__}: {e}")
                    raise

                if attempt < attempts:
                    logger.warning(
                        f"Attempt {attempt}/{attempts} failed with {type(e).__name__}: {e}. "
                        f"Retrying in {backoff_seconds:.1f}s..."
                    )
                    await asyncio.sleep(backoff_seconds)
                    continue

                logger.error(f"All {attempts} attempts exhausted. Last error: {e}")
                if breaker is not None:
                    breaker.record_failure()
                    recorded = True
                raise
            else:
                if breaker is not None:
                    breaker.record_success()
                    recorded = True
                return result
    finally:
        # Cancellation and non-retryable errors leave no outcome behind
        if is_trial and not recorded:
            breaker.release_trial()

    raise AssertionError("unreachable")  # pragma: no cover


def resilient(
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    breaker: CircuitBreaker | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator form of ``with_retry``.

    Example:
        @resilient(is_retryable=lambda e: isinstance(e, TimeoutError), breaker=cb)
        async def call_model():
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                func,
                *args,
                is_retryable=is_retryable,
                max_attempts=max_attempts,
                backoff_seconds=backoff_seconds,
                breaker=breaker,
                **kwargs,
            )

        return wrapper

    return decorator
