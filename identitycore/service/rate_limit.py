from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from identitycore.config import Settings
from identitycore.logging import get_logger, hash_identifier
from identitycore.service.errors import RateLimitExceeded
from identitycore.storage.models import RateLimitRecord
from identitycore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window: timedelta

    @classmethod
    def password_reset(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            limit=settings.password_reset_rate_limit,
            window=timedelta(seconds=settings.password_reset_rate_window_seconds),
        )


class RateLimiter(Protocol):
    policy: RateLimitPolicy

    async def hit(self, identifier: str, *, op: str = "rate_limit") -> RateLimitRecord: ...

    async def reset(self, identifier: str) -> None: ...

    async def cleanup_expired(self) -> int: ...


def _reject(op: str, record: RateLimitRecord) -> RateLimitExceeded:
    logger.warning(
        "rate_limit_exceeded",
        op=op,
        identifier_hash=hash_identifier(record.identifier),
        attempts=record.attempts,
        retry_at=record.retry_at.isoformat(),
    )
    return RateLimitExceeded(op, retry_at=record.retry_at, attempts=record.attempts)


class InMemoryRateLimiter:
    """Fixed-window counters kept in process memory.

    Check-and-increment runs under one lock, so concurrent workers can never
    exceed the limit. Once the limit is reached further attempts are refused
    without being counted until the window closes.
    """

    def __init__(self, policy: RateLimitPolicy) -> None:
        self.policy = policy
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def hit(self, identifier: str, *, op: str = "rate_limit") -> RateLimitRecord:
        now = self._now()
        with self._lock:
            record = self._records.get(identifier)
            if record is None or record.is_expired(now):
                record = RateLimitRecord(
                    identifier=identifier,
                    window_start=now,
                    attempts=0,
                    window=self.policy.window,
                )
                self._records[identifier] = record
            blocked = self.policy.limit > 0 and record.attempts >= self.policy.limit
            if not blocked:
                record.attempts += 1
            snapshot = copy.copy(record)
        if blocked:
            raise _reject(op, snapshot)
        return snapshot

    async def reset(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)

    async def cleanup_expired(self) -> int:
        now = self._now()
        with self._lock:
            stale = [key for key, rec in self._records.items() if rec.is_expired(now)]
            for key in stale:
                self._records.pop(key, None)
        return len(stale)

    def peek(self, identifier: str) -> Optional[RateLimitRecord]:
        with self._lock:
            record = self._records.get(identifier)
            return copy.copy(record) if record else None


class RedisRateLimiter:
    """Fixed-window counters shared across processes through Redis."""

    def __init__(
        self,
        cache: RedisCache,
        policy: RateLimitPolicy,
        *,
        namespace: str = "password_reset",
    ) -> None:
        self.cache = cache
        self.policy = policy
        self.namespace = namespace

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _key(self, identifier: str) -> str:
        return f"{self.namespace}:{identifier}"

    async def hit(self, identifier: str, *, op: str = "rate_limit") -> RateLimitRecord:
        window_seconds = int(self.policy.window.total_seconds())
        if self.policy.limit <= 0:
            return RateLimitRecord(identifier, self._now(), 0, self.policy.window)
        allowed, attempts, ttl_ms = await self.cache.hit_fixed_window(
            self._key(identifier), self.policy.limit, window_seconds
        )
        now = self._now()
        window_end = now + timedelta(milliseconds=ttl_ms)
        record = RateLimitRecord(
            identifier=identifier,
            window_start=window_end - self.policy.window,
            attempts=attempts,
            window=self.policy.window,
        )
        if not allowed:
            raise _reject(op, record)
        return record

    async def reset(self, identifier: str) -> None:
        await self.cache.clear_rate_limit(self._key(identifier))

    async def cleanup_expired(self) -> int:
        # Redis expires window keys on its own
        return 0
