"""Error classification and backoff for provider calls.

Classification is a heuristic over provider error text. Everything that
decides how a failure is treated goes through :func:`classify_error`, so typed
provider errors can replace the string matching without touching the retry
policy.
"""

import asyncio
import random
import re
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from .logger import get_logger
from .session_store import SessionStore

_log = get_logger(__name__)

__all__ = [
    "ErrorKind", "ClassifiedError", "classify_error", "is_panic",
    "calculate_retry_delay", "truncate_for_logging", "ErrorContext",
]

BASE_RETRY_DELAY_MS = 1000
MAX_RETRY_DELAY_MS = 10000
JITTER_RATIO = 0.3
AUTONOMOUS_RETRY_DELAYS_MS = (10_000, 30_000, 60_000, 120_000, 180_000, 200_000)

_CONTEXT_LENGTH_PATTERNS = (
    "context length", "context_length", "contextwindowexceeded", "context window exceeded",
    "prompt is too long", "maximum context length", "too many tokens",
)
_RATE_LIMIT_PATTERNS = ("rate limit", "rate_limit", "ratelimit", "too many requests")
_TIMEOUT_PATTERNS = ("timeout", "timed out", "request or response body error")
_NETWORK_PATTERNS = ("network", "connection", "dns", "refused", "connection reset", "broken pipe")
_SERVER_PATTERNS = ("server error", "internal error", "bad gateway", "service unavailable")
_BUSY_PATTERNS = ("overloaded", "busy", "capacity", "unavailable")

_STATUS_429_RE = re.compile(r"\b429\b")
_STATUS_5XX_RE = re.compile(r"\b50[0234]\b")


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    NON_RECOVERABLE = "non_recoverable"

    @property
    def recoverable(self) -> bool:
        return self is not ErrorKind.NON_RECOVERABLE


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    cause: str

    @property
    def is_recoverable(self) -> bool:
        return self.kind.recoverable

    def __str__(self) -> str:
        label = "Recoverable" if self.is_recoverable else "NonRecoverable"
        return f"{label}({self.kind.value}): {self.cause}"


def _error_text(err: Union[BaseException, str]) -> str:
    if isinstance(err, BaseException):
        return f"{type(err).__name__}: {err}"
    return str(err)


def _contains(text: str, patterns) -> bool:
    return any(p in text for p in patterns)


def classify_error(err: Union[BaseException, str]) -> ClassifiedError:
    """Sort a failure into a recoverable kind or non-recoverable."""
    raw = _error_text(err)
    text = raw.lower()
    cause = truncate_for_logging(raw, 500)

    if _contains(text, _CONTEXT_LENGTH_PATTERNS):
        return ClassifiedError(ErrorKind.CONTEXT_LENGTH_EXCEEDED, cause)
    if _contains(text, _RATE_LIMIT_PATTERNS) or _STATUS_429_RE.search(text):
        return ClassifiedError(ErrorKind.RATE_LIMIT, cause)
    if isinstance(err, (asyncio.TimeoutError, TimeoutError)) or _contains(text, _TIMEOUT_PATTERNS):
        return ClassifiedError(ErrorKind.TIMEOUT, cause)
    if _contains(text, _NETWORK_PATTERNS):
        return ClassifiedError(ErrorKind.SERVER_ERROR, f"network: {cause}")
    if _STATUS_5XX_RE.search(text) or _contains(text, _SERVER_PATTERNS):
        return ClassifiedError(ErrorKind.SERVER_ERROR, cause)
    if _contains(text, _BUSY_PATTERNS):
        return ClassifiedError(ErrorKind.SERVER_ERROR, f"model busy: {cause}")
    return ClassifiedError(ErrorKind.NON_RECOVERABLE, cause)


def is_panic(err: Union[BaseException, str]) -> bool:
    """The backend process itself died; retrying cannot help."""
    return "panic" in _error_text(err).lower()


def calculate_retry_delay(attempt: int, autonomous: bool = False,
                          rng: Optional[random.Random] = None) -> float:
    """Backoff in seconds before retry number ``attempt`` (1-based).

    Interactive sessions double from 1s up to 10s. Autonomous sessions follow a
    slower fixed curve (10s .. 200s) so long unattended runs ride out outages.
    Both get +/-30% jitter.
    """
    attempt = max(attempt, 1)
    if autonomous:
        base_ms = AUTONOMOUS_RETRY_DELAYS_MS[min(attempt - 1, len(AUTONOMOUS_RETRY_DELAYS_MS) - 1)]
    else:
        base_ms = min(BASE_RETRY_DELAY_MS * (2 ** (attempt - 1)), MAX_RETRY_DELAY_MS)
    rand = (rng or random).random()
    jitter = base_ms * JITTER_RATIO * (rand * 2 - 1)
    return max(base_ms + jitter, 0) / 1000.0


def truncate_for_logging(text: str, max_len: int = 1000) -> str:
    if len(text) <= max_len:
        return text
    return f"{text[:max_len]}... (truncated, {len(text.encode('utf-8'))} total bytes)"


@dataclass
class ErrorContext:
    """Everything worth knowing about a failed provider call."""
    operation: str
    provider: str
    model: str
    session_id: Optional[str] = None
    role: str = "agent"
    last_prompt: str = ""
    raw_response: Optional[str] = None
    used_tokens: int = 0
    total_tokens: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    stack_trace: str = ""

    @classmethod
    def capture(cls, operation: str, provider: str, model: str, **kwargs: Any) -> "ErrorContext":
        ctx = cls(operation=operation, provider=provider, model=model, **kwargs)
        ctx.stack_trace = traceback.format_exc()
        return ctx

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_prompt"] = truncate_for_logging(self.last_prompt, 2000)
        if self.raw_response is not None:
            data["raw_response"] = truncate_for_logging(self.raw_response, 2000)
        return data

    def log_error(self, error: BaseException, store: Optional[SessionStore] = None) -> Optional[str]:
        """Log the failure and, with a store, dump the details to an error file."""
        _log.error("%s failed (%s/%s, role=%s, tokens=%d/%d): %s",
                   self.operation, self.provider, self.model, self.role,
                   self.used_tokens, self.total_tokens, truncate_for_logging(str(error), 500))
        if store is None:
            return None
        data = self.to_dict()
        data["error"] = str(error)
        data["classification"] = str(classify_error(error))
        name = f"error_{int(time.time())}_{self.session_id or 'nosession'}"
        return store.save_error_context(name, data)
