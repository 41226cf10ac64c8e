"""
Per-identity rate limiting.

Two kinds of policy run side by side and must both pass:

- a coarse fixed window applied to every endpoint class ("general"),
- a tighter sliding window per generation content type ("ai").

Device identities additionally get their own fixed window ("device").
User and device identities are separate namespaces, so a spoofed device
header never touches a user's counters and vice versa.

Counters live behind a store (in-memory for a single process, Redis for
several). Every store performs check-then-increment atomically per key.
"""

import logging
import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple

from config import Settings

logger = logging.getLogger(__name__)

GENERATION_CLASSES = frozenset({"quests", "scripts", "reset", "safety"})


@dataclass(frozen=True)
class Identity:
    namespace: str  # "user" | "device"
    value: str

    def key(self) -> str:
        return f"{self.namespace}:{self.value}"


class WindowKind(str, Enum):
    fixed = "fixed"
    sliding = "sliding"


@dataclass(frozen=True)
class RatePolicy:
    name: str
    limit: int
    window_seconds: int
    kind: WindowKind = WindowKind.fixed
    namespaces: FrozenSet[str] = frozenset({"user", "device"})
    endpoint_classes: Optional[FrozenSet[str]] = None  # None = every class
    per_endpoint: bool = False

    def applies(self, identity: Identity, endpoint_class: str) -> bool:
        if identity.namespace not in self.namespaces:
            return False
        return self.endpoint_classes is None or endpoint_class in self.endpoint_classes

    def key_for(self, identity: Identity, endpoint_class: str) -> str:
        if self.per_endpoint:
            return f"{identity.key()}:{self.name}:{endpoint_class}"
        return f"{identity.key()}:{self.name}"


@dataclass
class RateDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None
    remaining: Optional[int] = None
    policy: Optional[str] = None
    token: Optional[str] = None


@dataclass
class RateWindow:
    identity: str
    window_start: float
    count: int
    limit: int
    window_seconds: int = 0


def _retry_after(seconds: float) -> int:
    return max(1, int(math.ceil(seconds)))


def _window_start(now: float, window_seconds: int) -> float:
    return math.floor(now / window_seconds) * window_seconds


# --------------------------------------------------------------------
# Stores
# --------------------------------------------------------------------


class InMemoryRateLimitStore:
    """
    Process-local counters guarded by a single lock.

    Expired records are swept at most once per ``sweep_interval`` seconds,
    so identities that stop calling (or were made up by the client) do not
    stay in memory.
    """

    def __init__(self, sweep_interval: float = 60.0):
        self._lock = threading.Lock()
        self._windows: Dict[str, RateWindow] = {}
        self._logs: Dict[str, Deque[Tuple[float, str]]] = {}
        self._log_windows: Dict[str, int] = {}
        self.sweep_interval = sweep_interval
        self._last_sweep: Optional[float] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows) + len(self._logs)

    def acquire(self, key: str, policy: RatePolicy, now: float) -> RateDecision:
        with self._lock:
            self._maybe_sweep(now)
            if policy.kind is WindowKind.sliding:
                return self._acquire_sliding(key, policy, now)
            return self._acquire_fixed(key, policy, now)

    def release(self, key: str, policy: RatePolicy, decision: RateDecision) -> None:
        with self._lock:
            if policy.kind is WindowKind.sliding:
                log = self._logs.get(key)
                if log:
                    for entry in list(log):
                        if entry[1] == decision.token:
                            log.remove(entry)
                            break
                    if not log:
                        self._drop_log(key)
                return

            window = self._windows.get(key)
            if window and decision.token == str(window.window_start) and window.count > 0:
                window.count -= 1

    def window(self, key: str) -> Optional[RateWindow]:
        return self._windows.get(key)

    def sweep(self, now: float) -> int:
        """Drop every record whose window has fully passed; returns how many."""
        with self._lock:
            return self._sweep(now)

    def _maybe_sweep(self, now: float) -> None:
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        dropped = self._sweep(now)
        if dropped:
            logger.debug("rate_limit_sweep | dropped=%d | tracked=%d", dropped, len(self._windows) + len(self._logs))

    def _sweep(self, now: float) -> int:
        expired = [
            key for key, window in self._windows.items()
            if window.window_start + window.window_seconds <= now
        ]
        for key in expired:
            del self._windows[key]

        idle = [
            key for key, log in self._logs.items()
            if not log or log[-1][0] <= now - self._log_windows.get(key, 0)
        ]
        for key in idle:
            self._drop_log(key)
        return len(expired) + len(idle)

    def _drop_log(self, key: str) -> None:
        self._logs.pop(key, None)
        self._log_windows.pop(key, None)

    def _acquire_fixed(self, key: str, policy: RatePolicy, now: float) -> RateDecision:
        start = _window_start(now, policy.window_seconds)
        window = self._windows.get(key)
        if window is None or window.window_start != start:
            # rollover: replace the record in one step
            window = RateWindow(
                identity=key,
                window_start=start,
                count=0,
                limit=policy.limit,
                window_seconds=policy.window_seconds,
            )
            self._windows[key] = window

        if window.count >= policy.limit:
            return RateDecision(
                allowed=False,
                retry_after_seconds=_retry_after(start + policy.window_seconds - now),
                remaining=0,
                policy=policy.name,
            )

        window.count += 1
        return RateDecision(
            allowed=True,
            remaining=policy.limit - window.count,
            policy=policy.name,
            token=str(start),
        )

    def _acquire_sliding(self, key: str, policy: RatePolicy, now: float) -> RateDecision:
        log = self._logs.setdefault(key, deque())
        self._log_windows[key] = policy.window_seconds
        horizon = now - policy.window_seconds
        while log and log[0][0] <= horizon:
            log.popleft()

        if len(log) >= policy.limit:
            oldest = log[0][0]
            return RateDecision(
                allowed=False,
                retry_after_seconds=_retry_after(oldest + policy.window_seconds - now),
                remaining=0,
                policy=policy.name,
            )

        token = uuid.uuid4().hex
        log.append((now, token))
        return RateDecision(
            allowed=True,
            remaining=policy.limit - len(log),
            policy=policy.name,
            token=token,
        )


_SLIDING_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  return {0, tostring(oldest[2])}
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window) + 1)
return {1, tostring(limit - count - 1)}
"""


class RedisRateLimitStore:
    """
    Shared counters for multi-process deployments.

    Fixed windows use INCR + EXPIRE on a per-window key; sliding windows run
    a Lua script over a sorted set so the check and the insert are one step.
    """

    def __init__(self, client, prefix: str = "groundwork:rl:"):
        self.client = client
        self.prefix = prefix
        self._sliding = client.register_script(_SLIDING_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimitStore":
        from redis import Redis

        return cls(Redis.from_url(url))

    def acquire(self, key: str, policy: RatePolicy, now: float) -> RateDecision:
        if policy.kind is WindowKind.sliding:
            return self._acquire_sliding(key, policy, now)
        return self._acquire_fixed(key, policy, now)

    def release(self, key: str, policy: RatePolicy, decision: RateDecision) -> None:
        if not decision.token:
            return
        if policy.kind is WindowKind.sliding:
            self.client.zrem(self.prefix + key, decision.token)
        else:
            self.client.decr(decision.token)

    def _acquire_fixed(self, key: str, policy: RatePolicy, now: float) -> RateDecision:
        start = _window_start(now, policy.window_seconds)
        rkey = f"{self.prefix}{key}:{int(start)}"

        pipe = self.client.pipeline()
        pipe.incr(rkey)
        pipe.expire(rkey, policy.window_seconds + 1)
        count, _ = pipe.execute()
        count = int(count)

        if count > policy.limit:
            # the rejected call must not hold a slot
            self.client.decr(rkey)
            return RateDecision(
                allowed=False,
                retry_after_seconds=_retry_after(start + policy.window_seconds - now),
                remaining=0,
                policy=policy.name,
            )
        return RateDecision(
            allowed=True,
            remaining=policy.limit - count,
            policy=policy.name,
            token=rkey,
        )

    def _acquire_sliding(self, key: str, policy: RatePolicy, now: float) -> RateDecision:
        member = uuid.uuid4().hex
        ok, value = self._sliding(
            keys=[self.prefix + key],
            args=[now, policy.window_seconds, policy.limit, member],
        )
        if int(ok) != 1:
            oldest = float(value)
            return RateDecision(
                allowed=False,
                retry_after_seconds=_retry_after(oldest + policy.window_seconds - now),
                remaining=0,
                policy=policy.name,
            )
        return RateDecision(
            allowed=True,
            remaining=int(float(value)),
            policy=policy.name,
            token=member,
        )


# --------------------------------------------------------------------
# Limiter
# --------------------------------------------------------------------


@dataclass
class RateLimiter:
    policies: List[RatePolicy]
    store: object = field(default_factory=InMemoryRateLimitStore)
    clock: Callable[[], float] = time.time

    def try_acquire(self, identity: Identity, endpoint_class: str) -> RateDecision:
        return self.try_acquire_all([identity], endpoint_class)

    def try_acquire_all(self, identities: Iterable[Identity], endpoint_class: str) -> RateDecision:
        """
        Every applicable (identity, policy) pair must pass. Slots taken
        before a denial are given back so a rejected call costs nothing.
        """
        now = self.clock()
        taken: List[Tuple[str, RatePolicy, RateDecision]] = []
        remaining: Optional[int] = None

        for identity in identities:
            for policy in self.policies:
                if not policy.applies(identity, endpoint_class):
                    continue

                key = policy.key_for(identity, endpoint_class)
                decision = self.store.acquire(key, policy, now)

                if not decision.allowed:
                    for t_key, t_policy, t_decision in reversed(taken):
                        self.store.release(t_key, t_policy, t_decision)
                    logger.info(
                        "rate_limited | identity=%s | endpoint=%s | policy=%s | retry_after=%s",
                        identity.key(), endpoint_class, policy.name, decision.retry_after_seconds,
                    )
                    return decision

                taken.append((key, policy, decision))
                if decision.remaining is not None:
                    remaining = decision.remaining if remaining is None else min(remaining, decision.remaining)

        return RateDecision(allowed=True, remaining=remaining)


def default_policies(settings: Settings) -> List[RatePolicy]:
    return [
        RatePolicy(
            name="general",
            limit=settings.rate_limit_general_max,
            window_seconds=settings.rate_limit_general_window_seconds,
            kind=WindowKind.fixed,
        ),
        RatePolicy(
            name="device",
            limit=settings.rate_limit_device_max,
            window_seconds=settings.rate_limit_device_window_seconds,
            kind=WindowKind.fixed,
            namespaces=frozenset({"device"}),
            endpoint_classes=GENERATION_CLASSES,
        ),
        RatePolicy(
            name="ai",
            limit=settings.rate_limit_ai_max,
            window_seconds=settings.rate_limit_ai_window_seconds,
            kind=WindowKind.sliding,
            endpoint_classes=GENERATION_CLASSES,
            per_endpoint=True,
        ),
    ]


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.rate_limit_redis_url:
        store = RedisRateLimitStore.from_url(settings.rate_limit_redis_url)
    else:
        store = InMemoryRateLimitStore()
    return RateLimiter(policies=default_policies(settings), store=store)
