from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from warden.logging import get_logger
from warden.storage.memory import MemoryCounterStore
from warden.storage.models import CounterAcquire, CounterWindow, utc_now

logger = get_logger(__name__)


class CounterStore(Protocol):
    def try_acquire(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> CounterAcquire: ...

    def release(self, key: str, attempt_id: str) -> bool: ...

    def snapshot(self, key: str, window_seconds: float, now: float) -> CounterWindow: ...

    def reset(self, key: str) -> None: ...

    def reset_all(self) -> None: ...

    def keys(self) -> List[str]: ...

    def purge(self, window_seconds: float, now: float) -> int: ...


@dataclass(frozen=True)
class RateLimiterConfig:
    window_seconds: float
    max_attempts: int
    skip_successful_requests: bool = False

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def login(cls, max_attempts: int = 10, window_seconds: float = 15 * 60) -> "RateLimiterConfig":
        return cls(window_seconds, max_attempts, skip_successful_requests=True)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    attempt_id: Optional[str]
    remaining: int
    retry_after_seconds: float


@dataclass(frozen=True)
class RateLimitInfo:
    total_hits_in_window: int
    remaining: int
    retry_after_seconds: float
    is_blocked: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "totalHitsInWindow": self.total_hits_in_window,
            "remainingPoints": self.remaining,
            "msBeforeNext": int(self.retry_after_seconds * 1000),
            "isBlocked": self.is_blocked,
        }


class RateLimiter:
    """Per-key sliding-log attempt limiter.

    An attempt made at ``t`` counts against its key while
    ``t > now - window``. A denied call is not recorded, so a blocked key
    frees up exactly when its oldest attempt leaves the window.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        *,
        store: Optional[CounterStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.store: CounterStore = store or MemoryCounterStore()
        self._clock = clock

    def _now(self) -> float:
        return self._clock().timestamp()

    def _retry_after(self, oldest: Optional[float], now: float) -> float:
        if oldest is None:
            return 0.0
        return max(0.0, oldest + self.config.window_seconds - now)

    def acquire(self, key: str) -> RateLimitDecision:
        now = self._now()
        result = self.store.try_acquire(
            key, self.config.max_attempts, self.config.window_seconds, now
        )
        remaining = max(0, self.config.max_attempts - result.count)
        if not result.allowed:
            retry_after = self._retry_after(result.oldest, now)
            logger.info(
                "rate_limit_denied",
                key=key,
                hits=result.count,
                retry_after_seconds=round(retry_after, 3),
            )
            return RateLimitDecision(False, None, 0, retry_after)
        return RateLimitDecision(True, result.attempt_id, remaining, 0.0)

    def is_allowed(self, key: str) -> bool:
        return self.acquire(key).allowed

    def record_success(self, key: str, attempt_id: Optional[str]) -> bool:
        """Drop a successful attempt from the window when configured to skip them."""
        if not self.config.skip_successful_requests or not attempt_id:
            return False
        return self.store.release(key, attempt_id)

    def get_info(self, key: str) -> RateLimitInfo:
        now = self._now()
        window = self.store.snapshot(key, self.config.window_seconds, now)
        blocked = window.count >= self.config.max_attempts
        return RateLimitInfo(
            total_hits_in_window=window.count,
            remaining=max(0, self.config.max_attempts - window.count),
            retry_after_seconds=self._retry_after(window.oldest, now) if blocked else 0.0,
            is_blocked=blocked,
        )

    def is_blocked(self, key: str) -> bool:
        return self.get_info(key).is_blocked

    def reset(self, key: str) -> None:
        self.store.reset(key)

    def reset_all(self) -> None:
        self.store.reset_all()

    def active_keys(self) -> List[str]:
        return self.store.keys()

    def get_stats(self) -> Dict[str, int]:
        now = self._now()
        keys = self.store.keys()
        total_attempts = 0
        blocked = 0
        for key in keys:
            window = self.store.snapshot(key, self.config.window_seconds, now)
            total_attempts += window.count
            if window.count >= self.config.max_attempts:
                blocked += 1
        return {
            "totalKeys": len(keys),
            "totalAttempts": total_attempts,
            "blockedKeys": blocked,
        }

    def cleanup(self) -> int:
        removed = self.store.purge(self.config.window_seconds, self._now())
        if removed:
            logger.debug("rate_limit_cleanup", removed=removed)
        return removed
