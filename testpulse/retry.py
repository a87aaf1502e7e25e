"""Exponential backoff shared by the notifiers."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

__all__ = ["BackoffPolicy", "RetryError", "retry_async"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class RetryError(RuntimeError):
    """All attempts failed; ``last_error`` holds the final exception."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 5.0
    factor: float = 2.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.factor < 1 or self.jitter < 0:
            raise ValueError("backoff delays must be non-negative and non-shrinking")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based)."""

        delay = self.base_delay * (self.factor ** (attempt - 1))
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def delays(self) -> list[float]:
        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts)]


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    label: str = "operation",
    on_error: Callable[[int, Exception], None] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> tuple[T, int]:
    """Run ``operation(attempt)`` until it succeeds; return ``(result, attempts)``."""

    last_error: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation(attempt), attempt
        except Exception as exc:
            last_error = exc
            if on_error is not None:
                on_error(attempt, exc)
            else:
                LOGGER.warning("%s failed on attempt %s/%s: %s", label, attempt, policy.max_attempts, exc)
        if attempt >= policy.max_attempts:
            break
        delay = policy.delay_for(attempt)
        LOGGER.info("Retrying %s in %.1fs", label, delay)
        await sleep(delay)
    raise RetryError(
        f"{label} failed after {policy.max_attempts} attempts",
        attempts=policy.max_attempts,
        last_error=last_error,
    ) from last_error
