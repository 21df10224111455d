"""Rate Limiter - fixed-window request counters per caller, one instance per policy.

Invariants:
    - Window state per "prefix:key": open -> counting -> expired -> reset
    - A window is expired once now >= reset_at; the next increment starts a
      fresh window at count 0 before counting itself
    - increment() is serialized per key (asyncio.Lock): N concurrent calls leave count == N
    - check() and get_status() never mutate
    - skip=True: every call allowed, no state touched
    - Violation history is bounded (1000) and swept after 24h
    - Policies never share counters: each is its own RateLimiter

Design Decisions:
    - Instances owned by RateLimiterRegistry and passed by handle, no module globals
    - Background sweep is an asyncio task started/stopped explicitly
      (start()/shutdown(), or `async with`), never at construction time
    - State is in-memory and per process; a restart forgets windows and violations
"""

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace

from boxoffice.core.errors import RateLimitedError

logger = logging.getLogger(__name__)

MAX_VIOLATIONS = 1000
VIOLATION_RETENTION_SECONDS = 24 * 3600
DEFAULT_SWEEP_INTERVAL_SECONDS = 300
_HOUR = 3600


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_ms: int
    max_requests: int
    key_prefix: str | None = None
    skip: bool = False

    @property
    def prefix(self) -> str:
        return self.key_prefix if self.key_prefix is not None else self.name


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    total: int
    reset_at: float
    retry_after: int | None = None


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float
    first_request_at: float


@dataclass(frozen=True)
class RateLimitViolation:
    key: str
    count: int
    max_requests: int
    timestamp: float
    ip: str | None = None
    user_id: str | None = None
    endpoint: str | None = None


# Caps per caller. Windows in milliseconds.
DEFAULT_POLICIES: dict[str, RateLimitPolicy] = {
    p.name: p for p in (
        RateLimitPolicy("order", 60_000, 10),
        RateLimitPolicy("api", 60_000, 100),
        RateLimitPolicy("auth", 15 * 60_000, 5),
        RateLimitPolicy("webhook", 60_000, 50),
        RateLimitPolicy("password_reset", 3_600_000, 3, key_prefix="password-reset"),
        RateLimitPolicy("email_verification", 3_600_000, 5, key_prefix="email-verification"),
        RateLimitPolicy("scan", 60_000, 100),
        RateLimitPolicy("manual_entry", 60_000, 5, key_prefix="manual-entry"),
    )
}


class RateLimiter:
    """Counts calls per key inside a fixed window and records violations."""

    def __init__(
        self,
        policy: RateLimitPolicy,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        on_limited: Callable[[str], None] | None = None,
    ):
        self.policy = policy
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._on_limited = on_limited
        self._windows: dict[str, RateLimitWindow] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._violations: deque[RateLimitViolation] = deque(maxlen=MAX_VIOLATIONS)
        self._sweeper: asyncio.Task | None = None

    # ─── Counting ────────────────────────────────────────────────

    def check(self, key: str) -> RateLimitResult:
        """Would a call be allowed right now? Does not count the call."""
        now = self._clock()
        if self.policy.skip:
            return self._skipped(now)
        window = self._windows.get(self._full_key(key))
        if window is None or now >= window.reset_at:
            return RateLimitResult(
                allowed=True,
                remaining=self.policy.max_requests,
                total=0,
                reset_at=now + self._window_seconds,
            )
        return self._result(window, now, allowed=window.count < self.policy.max_requests)

    async def increment(
        self, key: str, metadata: Mapping[str, str | None] | None = None,
    ) -> RateLimitResult:
        """Count one call; denied calls are logged as violations."""
        now = self._clock()
        if self.policy.skip:
            return self._skipped(now)

        full_key = self._full_key(key)
        async with self._lock_for(full_key):
            window = self._windows.get(full_key)
            if window is None or now >= window.reset_at:
                window = RateLimitWindow(
                    count=0,
                    reset_at=now + self._window_seconds,
                    first_request_at=now,
                )
                self._windows[full_key] = window
            window.count += 1
            allowed = window.count <= self.policy.max_requests
            result = self._result(window, now, allowed)

        if not allowed:
            self._record_violation(full_key, window.count, now, metadata)
        return result

    async def enforce(
        self, key: str, metadata: Mapping[str, str | None] | None = None,
    ) -> RateLimitResult:
        """increment(), raising RateLimitedError when the call is denied."""
        result = await self.increment(key, metadata)
        if not result.allowed:
            raise RateLimitedError(self.policy.name, result.retry_after or 1)
        return result

    # ─── State Management ────────────────────────────────────────

    def reset(self, key: str) -> None:
        full_key = self._full_key(key)
        self._windows.pop(full_key, None)
        self._drop_lock(full_key)
        logger.debug(f"Rate limit reset for {full_key}", extra={"key": full_key})

    def clear(self) -> None:
        self._windows.clear()
        self._violations.clear()
        for full_key in list(self._locks):
            self._drop_lock(full_key)
        logger.info(
            f"Rate limiter '{self.policy.name}' cleared",
            extra={"policy": self.policy.name},
        )

    def get_status(self, key: str) -> RateLimitResult | None:
        """Current window for a key, or None when absent or expired."""
        window = self._windows.get(self._full_key(key))
        now = self._clock()
        if window is None or now >= window.reset_at:
            return None
        return self._result(window, now, allowed=window.count < self.policy.max_requests)

    def get_violations(self, limit: int = 100) -> list[RateLimitViolation]:
        """Most recent violations, newest first."""
        if limit <= 0:
            return []
        recent = list(self._violations)[-limit:]
        return sorted(recent, key=lambda v: v.timestamp, reverse=True)

    def get_violation_count(self, key: str, since: float | None = None) -> int:
        """Violations for a key since a timestamp (default: the trailing hour)."""
        full_key = self._full_key(key)
        cutoff = since if since is not None else self._clock() - _HOUR
        return sum(
            1 for v in self._violations
            if v.key == full_key and v.timestamp >= cutoff
        )

    def get_stats(self) -> dict:
        cutoff = self._clock() - _HOUR
        return {
            "total_keys": len(self._windows),
            "total_violations": len(self._violations),
            "violations_last_hour": sum(
                1 for v in self._violations if v.timestamp >= cutoff
            ),
            "policy": {
                "name": self.policy.name,
                "window_ms": self.policy.window_ms,
                "max_requests": self.policy.max_requests,
                "key_prefix": self.policy.prefix,
                "skip": self.policy.skip,
            },
        }

    # ─── Background Sweep ────────────────────────────────────────

    def sweep(self) -> tuple[int, int]:
        """Evict expired windows and stale violations. Returns (windows, violations) removed."""
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for full_key in expired:
            del self._windows[full_key]
            self._drop_lock(full_key)

        cutoff = now - VIOLATION_RETENTION_SECONDS
        before = len(self._violations)
        kept = [v for v in self._violations if v.timestamp >= cutoff]
        self._violations.clear()
        self._violations.extend(kept)
        dropped = before - len(kept)

        if expired or dropped:
            logger.debug(
                f"Rate limiter sweep removed {len(expired)} windows, {dropped} violations",
                extra={"policy": self.policy.name},
            )
        return len(expired), dropped

    def start(self) -> None:
        """Launch the periodic sweep. No-op when already running."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_loop(), name=f"rate-limiter-sweep:{self.policy.name}",
        )

    async def shutdown(self) -> None:
        """Cancel and await the sweep task. No-op when not running."""
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def __aenter__(self) -> "RateLimiter":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    # ─── Internals ───────────────────────────────────────────────

    @property
    def _window_seconds(self) -> float:
        return self.policy.window_ms / 1000

    def _full_key(self, key: str) -> str:
        return f"{self.policy.prefix}:{key}" if self.policy.prefix else key

    def _lock_for(self, full_key: str) -> asyncio.Lock:
        lock = self._locks.get(full_key)
        if lock is None:
            lock = self._locks[full_key] = asyncio.Lock()
        return lock

    def _drop_lock(self, full_key: str) -> None:
        # A held lock stays; its owner still needs it.
        lock = self._locks.get(full_key)
        if lock is not None and not lock.locked():
            del self._locks[full_key]

    def _result(self, window: RateLimitWindow, now: float, allowed: bool) -> RateLimitResult:
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.policy.max_requests - window.count),
            total=window.count,
            reset_at=window.reset_at,
            retry_after=None if allowed else max(1, math.ceil(window.reset_at - now)),
        )

    def _skipped(self, now: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=self.policy.max_requests,
            total=0,
            reset_at=now + self._window_seconds,
        )

    def _record_violation(
        self,
        full_key: str,
        count: int,
        now: float,
        metadata: Mapping[str, str | None] | None,
    ) -> None:
        metadata = metadata or {}
        self._violations.append(RateLimitViolation(
            key=full_key,
            count=count,
            max_requests=self.policy.max_requests,
            timestamp=now,
            ip=metadata.get("ip"),
            user_id=metadata.get("user_id"),
            endpoint=metadata.get("endpoint"),
        ))
        logger.warning(
            f"Rate limit exceeded: {full_key} ({count}/{self.policy.max_requests})",
            extra={"policy": self.policy.name, "key": full_key},
        )
        if self._on_limited is not None:
            self._on_limited(self.policy.name)


class RateLimiterRegistry:
    """Independent limiters for every configured policy."""

    def __init__(
        self,
        policies: Mapping[str, RateLimitPolicy] | None = None,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        on_limited: Callable[[str], None] | None = None,
    ):
        policies = policies if policies is not None else DEFAULT_POLICIES
        self._limiters = {
            name: RateLimiter(policy, clock, sweep_interval_seconds, on_limited)
            for name, policy in policies.items()
        }

    def __getitem__(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def __contains__(self, name: str) -> bool:
        return name in self._limiters

    @property
    def names(self) -> list[str]:
        return list(self._limiters)

    def start_all(self) -> None:
        for limiter in self._limiters.values():
            limiter.start()

    async def shutdown_all(self) -> None:
        for limiter in self._limiters.values():
            await limiter.shutdown()

    def clear_all(self) -> None:
        for limiter in self._limiters.values():
            limiter.clear()


def build_policies(
    overrides: Mapping[str, object] | None = None, skip: bool = False,
) -> dict[str, RateLimitPolicy]:
    """Default policies with per-policy window/cap overrides applied.

    Override values may be mappings or objects with window_ms / max_requests
    attributes (config.RateLimitOverride). Unknown policy names are ignored.
    """
    policies = dict(DEFAULT_POLICIES)
    for name, override in (overrides or {}).items():
        if name not in policies:
            logger.warning(f"Ignoring rate limit override for unknown policy '{name}'")
            continue
        if isinstance(override, Mapping):
            values = {k: override.get(k) for k in ("window_ms", "max_requests")}
        else:
            values = {k: getattr(override, k, None) for k in ("window_ms", "max_requests")}
        changes = {k: v for k, v in values.items() if v is not None}
        policies[name] = replace(policies[name], **changes)
    if skip:
        policies = {n: replace(p, skip=True) for n, p in policies.items()}
    return policies


# ─── Caller Identity ─────────────────────────────────────────────

def get_client_identifier(
    ip: str | None = None, user_id: str | None = None, fallback: str = "anonymous",
) -> str:
    """Rate-limit key for a caller: user beats IP beats fallback."""
    if user_id:
        return f"user:{user_id}"
    if ip:
        return f"ip:{ip}"
    return fallback


def extract_ip(headers: Mapping[str, str]) -> str | None:
    """Client IP from proxy headers: x-forwarded-for (first hop), x-real-ip, cf-connecting-ip."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header)
        if value:
            return value.strip()
    return None
