"""Async utility functions for resilient chat API calls.

This module provides:
- The exception taxonomy shared by stores, scheduler and reconciler
- Result-based retry helper built on tenacity
- Rate limiting with token bucket algorithm
- Timeout wrappers for async operations
- Per-key locks for serializing read-then-write sequences
"""

from __future__ import annotations

import asyncio
import builtins
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

if TYPE_CHECKING:
    from question_router.models.escalation import DispatchErrorKind
    from question_router.models.question import Question

log = structlog.get_logger()

T = TypeVar("T")


# =============================================================================
# Custom Exceptions
# =============================================================================


class RouterError(Exception):
    """Base exception for all question router errors."""


class DuplicateMessageError(RouterError):
    """A question already exists for this (workspace, message) pair.

    Attributes:
        existing: The question that was stored first.
    """

    def __init__(self, existing: Question) -> None:
        super().__init__(
            f"Question already tracked for message {existing.message_id} "
            f"in workspace {existing.workspace_id}"
        )
        self.existing = existing


class QuestionNotFound(RouterError):
    """No question exists with the requested identity."""


class InvalidTransitionError(RouterError):
    """A status or level change is not allowed by the lifecycle rules."""


class ConcurrentStateConflict(RouterError):
    """The question row changed between read and conditional write."""

    def __init__(self, question_id: str, expected_version: int) -> None:
        super().__init__(
            f"Question {question_id} no longer at version {expected_version}"
        )
        self.question_id = question_id
        self.expected_version = expected_version


class ConfigurationInvalid(RouterError):
    """Escalation settings or targets were rejected before persistence."""


class NotificationError(RouterError):
    """The chat platform refused or failed to deliver a notification.

    Attributes:
        kind: Classification used to decide whether a retry is worthwhile.
    """

    def __init__(self, message: str, kind: DispatchErrorKind) -> None:
        super().__init__(message)
        self.kind = kind


class StartupError(RouterError):
    """Failed to start the service."""


class TimeoutError(RouterError):
    """Operation timed out."""


# =============================================================================
# Retry Helpers
# =============================================================================


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts for debugging."""
    if retry_state.outcome is None:
        return

    wait_time = retry_state.next_action.sleep if retry_state.next_action else 0
    exception = retry_state.outcome.exception()
    if exception:
        log.warning(
            "retrying_operation",
            attempt=retry_state.attempt_number,
            exception_type=type(exception).__name__,
            exception_message=str(exception),
            wait_time=wait_time,
        )
    else:
        log.warning(
            "retrying_operation",
            attempt=retry_state.attempt_number,
            result=repr(retry_state.outcome.result()),
            wait_time=wait_time,
        )


def _return_last_result(retry_state: RetryCallState) -> Any:
    """Hand back the final attempt's result once attempts are exhausted."""
    if retry_state.outcome is None:
        return None
    return retry_state.outcome.result()


def create_result_retrying(
    should_retry: Callable[[Any], bool],
    max_attempts: int,
    wait_seconds: float,
) -> AsyncRetrying:
    """Create a retrying controller that inspects results instead of exceptions.

    Once attempts run out the last result is returned as-is, so callers never
    see a ``RetryError``.

    Args:
        should_retry: Predicate applied to each attempt's result.
        max_attempts: Total attempts, including the first.
        wait_seconds: Fixed pause between attempts.

    Returns:
        An AsyncRetrying instance; call it with the coroutine function to run.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(wait_seconds),
        retry=retry_if_result(should_retry),
        before_sleep=_log_retry,
        retry_error_callback=_return_last_result,
    )


# =============================================================================
# Rate Limiter
# =============================================================================


class RateLimiter:
    """Token bucket rate limiter for async operations.

    Tokens are added to the bucket at a fixed rate, and each operation
    consumes one token. If no tokens are available, the operation waits
    until a token becomes available.

    Example:
        limiter = RateLimiter(rate=1, capacity=5)

        async with limiter:
            await client.chat_postMessage(...)
    """

    def __init__(self, rate: float, capacity: float | None = None) -> None:
        """Initialize the rate limiter.

        Args:
            rate: Number of operations allowed per second.
            capacity: Maximum number of tokens in the bucket (burst capacity).
                     Defaults to rate (no bursting beyond 1 second).
        """
        if rate <= 0:
            raise ValueError("Rate must be positive")
        self._rate = rate
        self._capacity = capacity if capacity is not None else max(rate, 1.0)
        self._tokens = self._capacity
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        """Return the configured rate limit (operations per second)."""
        return self._rate

    @property
    def capacity(self) -> float:
        """Return the bucket capacity (maximum burst size)."""
        return self._capacity

    @property
    def available_tokens(self) -> float:
        """Return the current number of available tokens."""
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_update = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens from the bucket, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire.

        Raises:
            ValueError: If tokens exceeds capacity.
        """
        if tokens > self._capacity:
            msg = f"Cannot acquire {tokens} tokens; capacity is {self._capacity}"
            raise ValueError(msg)

        async with self._lock:
            self._refill()

            if self._tokens >= tokens:
                self._tokens -= tokens
                return

            deficit = tokens - self._tokens
            wait_time = deficit / self._rate

            log.debug("rate_limiter_waiting", wait_time=wait_time, deficit=deficit)
            await asyncio.sleep(wait_time)

            self._refill()
            self._tokens -= tokens

    async def try_acquire(self, tokens: float = 1.0) -> bool:
        """Try to acquire tokens without waiting.

        Returns:
            True if tokens were acquired, False otherwise.
        """
        async with self._lock:
            self._refill()

            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    async def __aenter__(self) -> RateLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass


# =============================================================================
# Keyed Locks
# =============================================================================


class KeyedLock:
    """A family of asyncio locks, one per key, created on demand.

    Used to serialize read-then-write sequences on a single question within
    one process. Locks are dropped once nobody holds or waits for them.

    Example:
        locks = KeyedLock()

        async with locks.hold(question.id):
            current = await store.get_question(question.id)
            await store.update_question(current.id, current.version, ...)
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        """Return True if the lock for ``key`` is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


# =============================================================================
# Timeout Utilities
# =============================================================================


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str | None = None,
) -> T:
    """Execute an awaitable with a timeout.

    Args:
        coro: The coroutine to execute.
        timeout: Timeout in seconds.
        error_message: Custom error message for timeout.

    Returns:
        The result of the coroutine.

    Raises:
        TimeoutError: If the operation times out.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except builtins.TimeoutError as e:
        msg = error_message or f"Operation timed out after {timeout}s"
        log.warning("operation_timeout", timeout=timeout)
        raise TimeoutError(msg) from e
