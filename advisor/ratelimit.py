"""In-memory fixed-window rate limiter keyed by route purpose + client IP.

Single-process only: counts live in an injected store and are lost on
restart. Unidentifiable clients share the "unknown" bucket.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

from fastapi import Request

from advisor.config import RateLimitPolicy
from advisor.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
DEFAULT_SWEEP_INTERVAL_MS = 60_000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitRecord:
    key: str
    count: int
    reset_at: int  # epoch ms


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    remaining: int
    reset_at: int  # epoch ms


class RateLimitStore(Protocol):
    def get(self, key: str) -> RateLimitRecord | None: ...

    def set(self, record: RateLimitRecord) -> None: ...

    def sweep(self, now: int) -> int: ...

    def __len__(self) -> int: ...


class InMemoryRateLimitStore:
    """Dict-backed store. Not shared across processes."""

    def __init__(self) -> None:
        self._records: dict[str, RateLimitRecord] = {}

    def get(self, key: str) -> RateLimitRecord | None:
        return self._records.get(key)

    def set(self, record: RateLimitRecord) -> None:
        self._records[record.key] = record

    def sweep(self, now: int) -> int:
        """Drop every record whose window has ended. Returns the number removed."""
        expired = [k for k, r in self._records.items() if now > r.reset_at]
        for key in expired:
            del self._records[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class RateLimiter:
    """Check-and-increment over a RateLimitStore.

    `check` never raises. The lock makes check-and-increment atomic for
    callers on the event loop and in the threadpool alike.
    """

    def __init__(
        self,
        store: RateLimitStore | None = None,
        *,
        clock: Callable[[], int] = now_ms,
        sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.clock = clock
        self.sweep_interval_ms = sweep_interval_ms
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitResult:
        with self._lock:
            now = self.clock()
            self._maybe_sweep(now)

            record = self.store.get(key)
            if record is None or now > record.reset_at:
                reset_at = now + policy.window_ms
                self.store.set(RateLimitRecord(key=key, count=1, reset_at=reset_at))
                return RateLimitResult(
                    success=True,
                    remaining=policy.max_requests - 1,
                    reset_at=reset_at,
                )

            if record.count >= policy.max_requests:
                return RateLimitResult(success=False, remaining=0, reset_at=record.reset_at)

            record.count += 1
            self.store.set(record)
            return RateLimitResult(
                success=True,
                remaining=policy.max_requests - record.count,
                reset_at=record.reset_at,
            )

    def sweep(self) -> int:
        """Force a sweep regardless of the amortization interval."""
        with self._lock:
            now = self.clock()
            self._last_sweep = now
            removed = self.store.sweep(now)
        if removed:
            logger.debug(f"Rate limiter swept {removed} expired records")
        return removed

    def _maybe_sweep(self, now: int) -> None:
        if now - self._last_sweep < self.sweep_interval_ms:
            return
        self._last_sweep = now
        self.store.sweep(now)

    def __len__(self) -> int:
        return len(self.store)


def get_client_ip(headers: Mapping[str, str]) -> str:
    """First X-Forwarded-For hop, else X-Real-IP, else the shared "unknown" bucket."""
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return UNKNOWN_CLIENT


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


def enforce(purpose: str) -> Callable[[Request], RateLimitResult]:
    """FastAPI dependency factory: raise RateLimitExceeded when the caller is over budget.

    Usage::

        @app.post("/api/scan", dependencies=[Depends(enforce("scan"))])
    """

    def dependency(request: Request) -> RateLimitResult:
        limiter: RateLimiter = request.app.state.limiter
        policy = request.app.state.config.get_policy(purpose)
        client_ip = get_client_ip(request.headers)

        result = limiter.check(f"{purpose}:{client_ip}", policy)
        if not result.success:
            logger.warning(
                f"Rate limit exceeded for {client_ip} on '{purpose}' "
                f"(limit: {policy.max_requests}/{policy.window_ms}ms)"
            )
            raise RateLimitExceeded(result, policy.message)
        return result

    return dependency
