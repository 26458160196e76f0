"""Single retry policy shared by lease arbitration, HTTP calls and cycle-phase I/O."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_any(exc: BaseException) -> bool:
    return isinstance(exc, Exception)


def retry_transient(exc: BaseException) -> bool:
    """Timeouts and transport failures are worth another attempt; everything else is not."""
    from trading.errors import NetworkError

    return isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, NetworkError))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    backoff: str = "linear"
    max_delay_seconds: float = 30.0
    jitter_seconds: float = 0.0
    retry_on: Callable[[BaseException], bool] = retry_any

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        step = max(1, int(attempt))
        base = max(0.0, float(self.base_delay_seconds))
        if self.backoff == "exponential":
            delay = base * (2 ** (step - 1))
        else:
            delay = base * step
        delay = min(max(0.0, float(self.max_delay_seconds)), delay)
        if self.jitter_seconds > 0:
            delay += random.uniform(0.0, float(self.jitter_seconds))
        return delay

    @classmethod
    def for_lease_claim(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(getattr(config, "LEASE_CLAIM_MAX_ATTEMPTS", 3) or 3)),
            base_delay_seconds=float(getattr(config, "LEASE_CLAIM_RETRY_BASE_SECONDS", 0.5)),
            backoff="linear",
        )

    @classmethod
    def for_http(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3)),
            base_delay_seconds=float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5),
            backoff="exponential",
            max_delay_seconds=float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0),
            jitter_seconds=float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.0),
        )

    @classmethod
    def for_phase_io(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(getattr(config, "PHASE_IO_RETRY_ATTEMPTS", 2) or 1)),
            base_delay_seconds=float(getattr(config, "PHASE_IO_RETRY_BASE_SECONDS", 1.0)),
            backoff="linear",
            retry_on=retry_transient,
        )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_result: Callable[[T], bool] | None = None,
    before_retry: Callable[[int], Awaitable[bool]] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run `operation` until it succeeds or the policy gives up.

    An exception is retried when `policy.retry_on` accepts it; a returned value is
    retried when `retry_result` says so. `before_retry(next_attempt)` runs after the
    delay and may veto the next attempt, in which case the last outcome is returned
    (or re-raised).
    """
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        pending_exc: Exception | None = None
        pending_result: Any = None
        try:
            result = await operation()
        except Exception as exc:
            if attempt >= attempts or not policy.retry_on(exc):
                raise
            pending_exc = exc
        else:
            if attempt >= attempts or retry_result is None or not retry_result(result):
                return result
            pending_result = result

        delay = policy.delay_for(attempt)
        logger.debug(
            "RETRY label=%s attempt=%s/%s delay=%.2fs error=%s",
            label,
            attempt,
            attempts,
            delay,
            pending_exc,
        )
        await sleep(delay)
        if before_retry is not None and not await before_retry(attempt + 1):
            logger.info("RETRY_ABORTED label=%s attempt=%s", label, attempt)
            if pending_exc is not None:
                raise pending_exc
            return pending_result
    raise RuntimeError(f"retry loop exhausted without outcome label={label}")
