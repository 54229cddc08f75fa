from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from roastauth.logging import get_logger
from roastauth.storage.models import RateLimitHit, RateLimitRecord

logger = get_logger(__name__)


class RateLimitStore(Protocol):
    async def hit_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window: timedelta,
        lockout: Optional[timedelta],
        *,
        now: Optional[datetime] = None,
    ) -> RateLimitHit: ...

    async def get_rate_limit(self, key: str) -> Optional[RateLimitRecord]: ...

    async def delete_rate_limit(self, key: str) -> None: ...


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_time: datetime
    locked_until: Optional[datetime] = None

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        until = self.locked_until or self.reset_time
        return max(1, math.ceil((until - now).total_seconds()))

    def headers(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Rate limit headers; ``Retry-After`` only accompanies a rejection."""
        reset_at = self.locked_until or self.reset_time
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(reset_at.timestamp())),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds(now))
        return headers


class RateLimiter:
    """Fixed-window attempt counter with optional lockout escalation.

    Once ``max_attempts`` have been used inside a window the next attempt is
    rejected and, when ``lockout`` is set, every attempt is refused until the
    lockout passes, even if the window itself has already rolled over.
    Each attempt is one atomic store operation, so concurrent requests from the
    same client cannot under-count, including across workers sharing Redis.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        max_attempts: int = 10,
        window: timedelta = timedelta(minutes=15),
        lockout: Optional[timedelta] = timedelta(minutes=30),
        name: str = "login",
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.store = store
        self.max_attempts = max_attempts
        self.window = window
        self.lockout = lockout
        self.name = name

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _key(self, client_key: str) -> str:
        return f"{self.name}:{client_key}"

    async def check(self, client_key: str) -> RateLimitDecision:
        """Count one attempt for ``client_key`` and decide whether it may proceed."""
        hit = await self.store.hit_rate_limit(
            self._key(client_key),
            self.max_attempts,
            self.window,
            self.lockout,
            now=self._now(),
        )
        if hit.lockout_started and hit.record.locked_until is not None:
            logger.warning(
                "rate_limit_lockout_started",
                limiter=self.name,
                locked_until=hit.record.locked_until.isoformat(),
            )
        return self._allow(hit.record) if hit.allowed else self._reject(hit.record)

    async def reset(self, client_key: str) -> None:
        """Forget all attempts for ``client_key`` (called after a successful login)."""
        await self.store.delete_rate_limit(self._key(client_key))

    def _allow(self, record: RateLimitRecord) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=self.max_attempts,
            remaining=self.max_attempts - record.count,
            reset_time=record.reset_time,
        )

    def _reject(self, record: RateLimitRecord) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            limit=self.max_attempts,
            remaining=0,
            reset_time=record.reset_time,
            locked_until=record.locked_until,
        )
