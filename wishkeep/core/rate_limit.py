"""Fixed-window rate limiting keyed by (action, identifier).

Every action has an explicit policy, including what happens when the counter
backend is unreachable: security-sensitive actions fail closed (deny), the
rest fail open (allow).
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Protocol

import redis.asyncio as redis

from wishkeep.core.config import Settings


logger = logging.getLogger("wishkeep.rate_limit")

MAX_ENTRIES = 10000
CLEANUP_INTERVAL = 100


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int
    fail_closed: bool


RATE_LIMIT_POLICIES: dict[str, RateLimitPolicy] = {
    # Credential minting and password guessing: deny when the backend is down.
    "token-create": RateLimitPolicy(limit=10, window_seconds=3600, fail_closed=True),
    "list-password": RateLimitPolicy(limit=5, window_seconds=300, fail_closed=True),
    "public-reservation": RateLimitPolicy(limit=10, window_seconds=60, fail_closed=True),
    "login": RateLimitPolicy(limit=5, window_seconds=60, fail_closed=True),
    "register": RateLimitPolicy(limit=5, window_seconds=300, fail_closed=True),
    "admin-bulk": RateLimitPolicy(limit=20, window_seconds=3600, fail_closed=True),
    "token-revoke": RateLimitPolicy(limit=30, window_seconds=3600, fail_closed=True),
    # Authenticated mutations and read-heavy lookups: allow when the backend is down.
    "reservation-create": RateLimitPolicy(limit=30, window_seconds=60, fail_closed=False),
    "reservation-manage": RateLimitPolicy(limit=60, window_seconds=60, fail_closed=False),
    "list-manage": RateLimitPolicy(limit=30, window_seconds=60, fail_closed=False),
    "bulk-operation": RateLimitPolicy(limit=10, window_seconds=3600, fail_closed=False),
    "public-list-access": RateLimitPolicy(limit=20, window_seconds=60, fail_closed=False),
    "reservation-status": RateLimitPolicy(limit=120, window_seconds=60, fail_closed=False),
}


@dataclass(frozen=True)
class CounterState:
    count: int
    allowed: bool
    reset_in_seconds: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None = None


class RateLimitBackend(Protocol):
    async def increment_and_check(self, key: str, window_seconds: int, limit: int) -> CounterState:
        ...


class RateLimitBackendError(Exception):
    """The counter store could not be reached or answered garbage."""


@dataclass
class _WindowEntry:
    count: int = 0
    reset_at: float = 0.0
    last_access: float = field(default_factory=time.monotonic)


class InMemoryRateLimitBackend:
    """Per-process counters with bounded memory.

    A single lock serialises check-and-increment so concurrent requests cannot
    both slip under a nearly exhausted limit.
    """

    def __init__(self, max_entries: int = MAX_ENTRIES) -> None:
        self._entries: dict[str, _WindowEntry] = {}
        self._lock = asyncio.Lock()
        self._request_count = 0
        self._max_entries = max_entries

    async def increment_and_check(self, key: str, window_seconds: int, limit: int) -> CounterState:
        async with self._lock:
            now = time.monotonic()
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = _WindowEntry(count=0, reset_at=now + window_seconds)
                self._entries[key] = entry
            entry.last_access = now

            self._request_count += 1
            if self._request_count % CLEANUP_INTERVAL == 0:
                self._cleanup(now)

            if entry.count >= limit:
                return CounterState(count=entry.count, allowed=False, reset_in_seconds=entry.reset_at - now)
            entry.count += 1
            return CounterState(count=entry.count, allowed=True, reset_in_seconds=entry.reset_at - now)

    def _cleanup(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cleaned up %d expired rate limit windows", len(expired))

        if len(self._entries) <= self._max_entries:
            return
        overflow = len(self._entries) - self._max_entries
        oldest = sorted(self._entries.items(), key=lambda item: item[1].last_access)[:overflow]
        for key, _ in oldest:
            del self._entries[key]
        logger.warning(
            "Rate limit entries exceeded %d, evicted %d oldest windows",
            self._max_entries,
            overflow,
        )

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def get_stats(self) -> dict:
        return {
            "total_entries": len(self._entries),
            "total_requests_tracked": self._request_count,
            "max_entries": self._max_entries,
        }


class RedisRateLimitBackend:
    """Shared counters: INCR and EXPIRE NX run in one MULTI block."""

    def __init__(self, redis_dsn: str | None = None, client: redis.Redis | None = None) -> None:
        self._redis_dsn = redis_dsn
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._redis_dsn,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._client

    async def increment_and_check(self, key: str, window_seconds: int, limit: int) -> CounterState:
        try:
            client = self._get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, window_seconds, nx=True)
                pipe.ttl(key)
                count, _, ttl = await pipe.execute()
        except redis.RedisError as exc:
            raise RateLimitBackendError(str(exc)) from exc
        try:
            count = int(count)
            ttl = int(ttl)
        except (TypeError, ValueError) as exc:
            raise RateLimitBackendError(f"unexpected counter reply: {count!r}/{ttl!r}") from exc
        reset_in = float(ttl) if ttl > 0 else float(window_seconds)
        return CounterState(count=count, allowed=count <= limit, reset_in_seconds=reset_in)


class RateLimiter:
    def __init__(
        self,
        backend: RateLimitBackend,
        *,
        enabled: bool = True,
        policies: dict[str, RateLimitPolicy] | None = None,
    ) -> None:
        self.backend = backend
        self.enabled = enabled
        self.policies = dict(policies or RATE_LIMIT_POLICIES)

    def policy_for(self, action: str) -> RateLimitPolicy:
        try:
            return self.policies[action]
        except KeyError:
            raise ValueError(f"No rate limit policy configured for action {action!r}") from None

    async def check(self, action: str, identifier: str) -> RateLimitResult:
        """Count one attempt and report whether it may proceed."""
        policy = self.policy_for(action)
        if not self.enabled:
            return RateLimitResult(allowed=True, limit=policy.limit, remaining=policy.limit)

        key = f"ratelimit:{action}:{identifier}"
        try:
            state = await self.backend.increment_and_check(key, policy.window_seconds, policy.limit)
        except Exception:
            if policy.fail_closed:
                logger.exception("Rate limit backend failed; denying action=%s (fail closed)", action)
                return RateLimitResult(
                    allowed=False,
                    limit=policy.limit,
                    remaining=0,
                    retry_after_seconds=policy.window_seconds,
                )
            logger.exception("Rate limit backend failed; allowing action=%s (fail open)", action)
            return RateLimitResult(allowed=True, limit=policy.limit, remaining=policy.limit)

        if not state.allowed:
            retry_after = max(1, math.ceil(state.reset_in_seconds))
            logger.warning(
                "Rate limit exceeded action=%s identifier=%s retry_after=%ds",
                action,
                identifier,
                retry_after,
            )
            return RateLimitResult(
                allowed=False,
                limit=policy.limit,
                remaining=0,
                retry_after_seconds=retry_after,
            )
        return RateLimitResult(
            allowed=True,
            limit=policy.limit,
            remaining=max(0, policy.limit - state.count),
        )


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.rate_limit_backend == "redis":
        backend: RateLimitBackend = RedisRateLimitBackend(settings.redis_dsn)
    else:
        backend = InMemoryRateLimitBackend()
    return RateLimiter(backend, enabled=settings.rate_limit_enabled)


def client_identifier(headers, peer_host: str | None) -> str:
    """Derive an anonymous client fingerprint from proxy headers.

    Uses the last X-Forwarded-For hop: the first one is client-controlled.
    """
    for header in ("CF-Connecting-IP", "X-Real-IP"):
        value = (headers.get(header) or "").strip()
        if value:
            return f"ip:{value.lower()}"
    forwarded = headers.get("X-Forwarded-For")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            return f"ip:{hops[-1].lower()}"
    if peer_host:
        return f"ip:{peer_host.lower()}"
    logger.warning("Could not determine client address for rate limiting")
    return "ip:unknown"
