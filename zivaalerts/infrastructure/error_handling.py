"""
Provider error classification and retry policy.

Every call site that talks to the Graph API (ad account probes) or the
WhatsApp Cloud API (message sends) funnels its failures through ``classify``
so that "retry later", "needs re-auth" and "retire the credential" are decided
in one place.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Graph / WhatsApp rate limiting and throttling codes.
RATE_LIMIT_CODES: FrozenSet[int] = frozenset({
    4,       # application request limit
    17,      # user request limit
    32,      # page request limit
    613,     # calls exceeded the rate limit
    80007,   # WhatsApp Business Account rate limit
    130429,  # WhatsApp throughput limit
    131056,  # WhatsApp business/consumer pair rate limit
})
TRANSIENT_CODES: FrozenSet[int] = frozenset({2})  # service temporarily unavailable
REAUTH_CODES: FrozenSet[int] = frozenset({190, 102})
PERMISSION_CODE = 100
PERMISSION_SUBCODE = 33

# WhatsApp: more than 24 hours since the customer last replied.
REENGAGEMENT_REQUIRED_CODE = 131047


class Action(Enum):
    RETRYABLE = "retryable"
    NEEDS_REAUTH = "needs_reauth"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """Base class for errors raised by the alert pipeline."""


class ProviderError(PipelineError):
    """Error reported by the ads or messaging provider."""

    def __init__(
        self,
        message: str = "",
        *,
        http_status: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
    ) -> None:
        super().__init__(message or f"provider error (status={http_status}, code={code}, subcode={subcode})")
        self.message = message
        self.http_status = http_status
        self.code = code
        self.subcode = subcode

    @classmethod
    def from_response(cls, http_status: Optional[int], payload: Any) -> "ProviderError":
        """Build from a Graph-style ``{"error": {...}}`` body (or anything else)."""
        err: Dict[str, Any] = {}
        if isinstance(payload, dict):
            err = payload.get("error") or {}
            if not isinstance(err, dict):
                err = {"message": str(err)}
        return cls(
            str(err.get("message") or ""),
            http_status=http_status,
            code=_to_int(err.get("code")),
            subcode=_to_int(err.get("error_subcode")),
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "http_status": self.http_status,
            "code": self.code,
            "subcode": self.subcode,
            "message": self.message,
        }


class TransientProviderError(PipelineError):
    pass


class CredentialError(PipelineError):
    pass


class AccountPermissionError(PipelineError):
    pass


class ConfigurationError(PipelineError):
    pass


class NetworkError(PipelineError):
    """Local connectivity failure: the provider never answered."""


class SchedulerFatalError(PipelineError):
    """A whole scheduled run could not proceed (e.g. store unreachable)."""


def _to_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def classify(error: Any) -> Action:
    """Map a provider error to the action callers must take.

    Accepts a ``ProviderError``, a ``NetworkError`` or any object exposing
    ``http_status``/``code``/``subcode``. Pure: no logging, no side effects.
    """
    if isinstance(error, NetworkError):
        return Action.RETRYABLE
    code = _to_int(getattr(error, "code", None))
    subcode = _to_int(getattr(error, "subcode", None))
    status = _to_int(getattr(error, "http_status", None))

    if code == PERMISSION_CODE and subcode == PERMISSION_SUBCODE:
        return Action.PERMISSION_DENIED
    if code in REAUTH_CODES:
        return Action.NEEDS_REAUTH
    if code in RATE_LIMIT_CODES or code in TRANSIENT_CODES:
        return Action.RETRYABLE
    if status is not None and 500 <= status < 600:
        return Action.RETRYABLE
    return Action.UNKNOWN


_EXCEPTION_FOR_ACTION = {
    Action.RETRYABLE: TransientProviderError,
    Action.NEEDS_REAUTH: CredentialError,
    Action.PERMISSION_DENIED: AccountPermissionError,
}


def exception_for(error: ProviderError) -> PipelineError:
    """Typed exception for a classified provider error."""
    exc_type = _EXCEPTION_FOR_ACTION.get(classify(error))
    if exc_type is None:
        return error
    exc = exc_type(str(error))
    exc.__cause__ = error
    return exc


# -----------------------
# Retry policy
# -----------------------
@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    initial_delay: float = 1.0
    exponential_base: float = 2.0
    max_delay: float = 300.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number ``attempt`` (1-based)."""
        delay = self.initial_delay * (self.exponential_base ** max(0, attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay


class RetryHandler:
    def __init__(self, config: Optional[RetryConfig] = None, sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep

    def execute(self, func: Callable[..., T], *args, retryable_exceptions: tuple = (Exception,), **kwargs) -> T:
        last_exception: Optional[BaseException] = None
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except retryable_exceptions as e:
                last_exception = e
                if attempt < self.config.max_attempts:
                    delay = self.config.delay_for(attempt)
                    logger.warning(
                        f"Retry attempt {attempt}/{self.config.max_attempts} "
                        f"after {delay:.2f}s: {e}"
                    )
                    self._sleep(delay)
                else:
                    logger.error(f"Max attempts ({self.config.max_attempts}) exceeded")
        assert last_exception is not None
        raise last_exception


__all__ = [
    "Action",
    "PipelineError",
    "ProviderError",
    "TransientProviderError",
    "CredentialError",
    "AccountPermissionError",
    "ConfigurationError",
    "NetworkError",
    "SchedulerFatalError",
    "classify",
    "exception_for",
    "RetryConfig",
    "RetryHandler",
    "RATE_LIMIT_CODES",
    "REENGAGEMENT_REQUIRED_CODE",
]
