from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..utils import Clock, RealClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    name: str
    requests_per_window: int
    window_seconds: int


@dataclass
class RateLimitState:
    requests_made: int = 0
    window_start: Optional[datetime] = None
    denied: int = 0


@dataclass
class RateLimitManager:
    """Process-wide fixed-window limiter over one or more windows.

    A request is admitted only when every window has room; admission counts
    against all windows at once. Thread-safe.
    """
    configs: List[RateLimitConfig]
    clock: Clock = field(default_factory=RealClock)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self.states: Dict[str, RateLimitState] = {c.name: RateLimitState() for c in self.configs}

    @classmethod
    def for_messaging(cls, per_minute: int, per_hour: int, clock: Optional[Clock] = None) -> "RateLimitManager":
        return cls(
            configs=[
                RateLimitConfig("per_minute", per_minute, 60),
                RateLimitConfig("per_hour", per_hour, 3600),
            ],
            clock=clock or RealClock(),
        )

    def _roll(self, config: RateLimitConfig, state: RateLimitState, now: datetime) -> None:
        if state.window_start is None or (now - state.window_start).total_seconds() >= config.window_seconds:
            state.window_start = now
            state.requests_made = 0

    def try_acquire(self) -> bool:
        with self._lock:
            now = self.clock.now_utc()
            for config in self.configs:
                self._roll(config, self.states[config.name], now)
            full = [c for c in self.configs if self.states[c.name].requests_made >= c.requests_per_window]
            if full:
                for c in full:
                    self.states[c.name].denied += 1
                logger.debug(f"Rate limit reached on {', '.join(c.name for c in full)}")
                return False
            for config in self.configs:
                self.states[config.name].requests_made += 1
            return True

    def retry_after(self) -> float:
        """Seconds until every exhausted window has reset (0 if none is exhausted)."""
        with self._lock:
            now = self.clock.now_utc()
            wait = 0.0
            for config in self.configs:
                state = self.states[config.name]
                if state.window_start is None or state.requests_made < config.requests_per_window:
                    continue
                reset = state.window_start + timedelta(seconds=config.window_seconds)
                wait = max(wait, (reset - now).total_seconds())
            return max(0.0, wait)

    def get_rate_limit_status(self) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = {}
            for config in self.configs:
                state = self.states[config.name]
                out[config.name] = {
                    "requests_made": state.requests_made,
                    "requests_limit": config.requests_per_window,
                    "remaining": max(0, config.requests_per_window - state.requests_made),
                    "denied": state.denied,
                    "window_start": state.window_start.isoformat() if state.window_start else None,
                }
            return out
