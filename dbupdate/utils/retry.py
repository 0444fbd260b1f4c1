"""
Retrying async calls.

Two callers:
- `with_retry(4, 1.0)` on scheduled update stages (any exception, five
  attempts one second apart)
- `retry_call` with a status-aware `RetryPolicy` for Adobe Analytics report
  requests

Page crawling does not go through here: HTTPFetcher retries network errors
itself, and "Access Denied" pages are left for the next run.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from dbupdate.utils.backoff import BackoffConfig, calculate_backoff, fixed_delay
from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryError(Exception):
    """Every attempt failed.

    Attributes:
        attempts: How many times the call was made.
        last_error: Exception raised by the final attempt.
        last_status: HTTP status of the last HTTPStatusError seen, if any.
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Exception | None = None,
        last_status: int | None = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.last_status = last_status


class HTTPStatusError(Exception):
    """An API answered with an error status; raised by clients so it can be classified."""

    def __init__(self, status: int, message: str = ""):
        super().__init__(message or f"HTTP {status}")
        self.status = status


@dataclass
class RetryPolicy:
    """Which failures are worth another attempt, and how long to wait.

    `retryable_exceptions=None` retries every exception. HTTPStatusError is
    always classified by status instead.

    Example:
        >>> RetryPolicy().should_retry_status(503)
        True
        >>> RetryPolicy().should_retry_status(404)
        False
    """

    max_retries: int = 3
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    retryable_exceptions: tuple[type[Exception], ...] | None = (
        ConnectionError,
        TimeoutError,
        OSError,
    )
    retryable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )
    non_retryable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({400, 401, 403, 404, 410})
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")

        both = self.retryable_status_codes & self.non_retryable_status_codes
        if both:
            raise ValueError(f"Status codes cannot be both retryable and non-retryable: {both}")

    def should_retry_exception(self, exc: Exception) -> bool:
        return self.retryable_exceptions is None or isinstance(exc, self.retryable_exceptions)

    def should_retry_status(self, status: int) -> bool:
        return (
            status in self.retryable_status_codes
            and status not in self.non_retryable_status_codes
        )

    def should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, HTTPStatusError):
            return self.should_retry_status(exc.status)
        return self.should_retry_exception(exc)


async def retry_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy | None = None,
    operation_name: str | None = None,
    **kwargs: Any,
) -> T:
    """Await `func(*args, **kwargs)`, retrying failures the policy allows.

    Raises:
        RetryError: After `policy.max_retries + 1` failed attempts.
        Exception: The first failure the policy does not retry, unchanged.
    """
    policy = policy or RetryPolicy()
    name = operation_name or getattr(func, "__name__", "call")
    attempts = policy.max_retries + 1

    last_error: Exception | None = None
    last_status: int | None = None

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_error = e
            status = e.status if isinstance(e, HTTPStatusError) else None
            if status is not None:
                last_status = status

            if not policy.should_retry(e):
                logger.warning(
                    "Giving up on non-retryable error",
                    operation=name,
                    error_type=type(e).__name__,
                    error=str(e),
                    status=status,
                    attempt=attempt + 1,
                )
                raise

            if attempt + 1 == attempts:
                break

            delay = calculate_backoff(attempt, policy.backoff)
            logger.warning(
                "Retrying",
                operation=name,
                error_type=type(e).__name__,
                error=str(e),
                status=status,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay_seconds=round(delay, 2),
            )
            await asyncio.sleep(delay)

    raise RetryError(
        f"{name} failed after {attempts} attempts",
        attempts=attempts,
        last_error=last_error,
        last_status=last_status,
    )


def with_retry(
    retries: int = 4,
    delay: float = 1.0,
    *,
    policy: RetryPolicy | None = None,
    operation_name: str | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async function (or method) with `retry_call`.

    Without an explicit policy any exception is retried `retries` times,
    `delay` seconds apart.

    Example:
        >>> @with_retry(4, 1.0)
        ... async def update_activity_map() -> int:
        ...     ...
    """
    policy = policy or RetryPolicy(
        max_retries=retries,
        backoff=fixed_delay(delay),
        retryable_exceptions=None,
    )

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_call(
                func,
                *args,
                policy=policy,
                operation_name=operation_name or func.__qualname__,
                **kwargs,
            )

        return wrapper

    return decorator
