"""Retry loop around provider calls."""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from .error_handling import (
    ClassifiedError, ErrorKind, calculate_retry_delay, classify_error,
    is_panic, truncate_for_logging,
)
from .errors import ContextLengthExceededError, ProcessPanicError, RetryExhaustedError
from .logger import get_logger
from .session_store import SessionStore

_log = get_logger(__name__)

__all__ = ["RetryConfig", "RetryStatus", "RetryResult", "execute_with_retry", "retry_operation"]

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_AUTONOMOUS_MAX_RETRIES = 6


@dataclass
class RetryConfig:
    role: str = "agent"
    max_retries: int = DEFAULT_MAX_RETRIES
    autonomous: bool = False

    @classmethod
    def default(cls, max_retries: int = DEFAULT_MAX_RETRIES) -> "RetryConfig":
        return cls(role="agent", max_retries=max_retries)

    @classmethod
    def planning(cls, max_retries: int = DEFAULT_AUTONOMOUS_MAX_RETRIES) -> "RetryConfig":
        return cls(role="planning", max_retries=max_retries, autonomous=True)

    @classmethod
    def player(cls, max_retries: int = DEFAULT_AUTONOMOUS_MAX_RETRIES) -> "RetryConfig":
        return cls(role="player", max_retries=max_retries, autonomous=True)

    @classmethod
    def coach(cls, max_retries: int = DEFAULT_AUTONOMOUS_MAX_RETRIES) -> "RetryConfig":
        return cls(role="coach", max_retries=max_retries, autonomous=True)


class RetryStatus(str, Enum):
    SUCCESS = "success"
    MAX_RETRIES_REACHED = "max_retries_reached"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    PANIC = "panic"
    NON_RECOVERABLE = "non_recoverable"


@dataclass
class RetryResult(Generic[T]):
    status: RetryStatus
    value: Optional[T] = None
    error: Optional[BaseException] = None
    classified: Optional[ClassifiedError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is RetryStatus.SUCCESS


SnapshotFn = Callable[[], Dict[str, Any]]
RetryHook = Callable[[int, int, float, ClassifiedError], None]


def _record_context_overflow(error: BaseException, config: RetryConfig,
                             store: Optional[SessionStore],
                             snapshot: Optional[SnapshotFn]) -> None:
    entry: Dict[str, Any] = {
        "error_type": ErrorKind.CONTEXT_LENGTH_EXCEEDED.value,
        "role": config.role,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": truncate_for_logging(str(error), 1000),
    }
    if snapshot is not None:
        entry.update(snapshot())
    _log.error("Context length exceeded (role=%s, used=%s/%s tokens, %.1f%%, prompt=%s chars)",
               config.role, entry.get("used_tokens", "?"), entry.get("total_tokens", "?"),
               float(entry.get("percentage_used", 0.0)), entry.get("prompt_length", "?"))
    if store is not None:
        store.record_error(entry)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    store: Optional[SessionStore] = None,
    snapshot: Optional[SnapshotFn] = None,
    on_retry: Optional[RetryHook] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> RetryResult[T]:
    """Run ``operation`` until it succeeds or the failure is not worth retrying.

    Context-length failures are never retried: the same request against the
    same window would fail the same way. ``snapshot`` supplies the token
    figures written to the session's error log in that case.
    """
    attempts = max(config.max_retries, 1)
    for attempt in range(1, attempts + 1):
        try:
            value = await operation()
            if attempt > 1:
                _log.info("%s call succeeded on attempt %d", config.role, attempt)
            return RetryResult(RetryStatus.SUCCESS, value=value, attempts=attempt)
        except Exception as e:
            if is_panic(e):
                _log.error("%s call hit an unrecoverable backend panic: %s", config.role, e)
                return RetryResult(RetryStatus.PANIC, error=e, attempts=attempt)

            classified = classify_error(e)
            if classified.kind is ErrorKind.CONTEXT_LENGTH_EXCEEDED:
                _record_context_overflow(e, config, store, snapshot)
                return RetryResult(RetryStatus.CONTEXT_LENGTH_EXCEEDED, error=e,
                                   classified=classified, attempts=attempt)
            if not classified.is_recoverable:
                _log.error("%s call failed (non-recoverable): %s", config.role, classified.cause)
                return RetryResult(RetryStatus.NON_RECOVERABLE, error=e,
                                   classified=classified, attempts=attempt)
            if attempt >= attempts:
                _log.error("%s call failed after %d attempts: %s", config.role, attempt, classified)
                return RetryResult(RetryStatus.MAX_RETRIES_REACHED, error=e,
                                   classified=classified, attempts=attempt)

            delay = calculate_retry_delay(attempt, config.autonomous, rng)
            _log.warning("%s call failed (%s), retrying in %.1fs (attempt %d/%d)",
                         config.role, classified.kind.value, delay, attempt, attempts)
            if on_retry is not None:
                on_retry(attempt, attempts, delay, classified)
            await sleep(delay)

    raise AssertionError("unreachable")


async def retry_operation(operation: Callable[[], Awaitable[T]], config: RetryConfig,
                          **kwargs: Any) -> T:
    """Like :func:`execute_with_retry` but raises on anything except success."""
    result = await execute_with_retry(operation, config, **kwargs)
    if result.ok:
        return result.value
    if result.status is RetryStatus.CONTEXT_LENGTH_EXCEEDED:
        raise ContextLengthExceededError(str(result.error)) from result.error
    if result.status is RetryStatus.PANIC:
        raise ProcessPanicError(str(result.error)) from result.error
    if result.status is RetryStatus.MAX_RETRIES_REACHED:
        raise RetryExhaustedError(result.attempts, result.error) from result.error
    raise result.error
