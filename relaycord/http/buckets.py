"""Rate limit bucket registry shared by every REST route worker and identify pacing."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Iterator, Mapping, Optional

from relaycord.network.heartbeat import Clock

LOGGER = logging.getLogger(__name__)

GLOBAL_KEY = "global"
# Minimum spacing between eviction sweeps, as a fraction of the grace window.
SWEEP_RATIO = 0.1


@dataclass
class Bucket:
    """Rate limit state for one route key or the global scope.

    ``limit``/``remaining`` stay ``None`` until the server reports them (or a
    local window is configured); an unknown bucket never blocks. ``window`` is
    the period used to predict the next reset after a refill: configured for
    local buckets, learned from ``X-RateLimit-Reset-After`` for server ones.
    """

    key: str
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    retry_until: Optional[float] = None
    window: Optional[float] = None
    configured: bool = False
    bucket_hash: Optional[str] = None
    last_used: float = 0.0

    def refresh(self, now: float) -> None:
        if self.reset_at is not None and now >= self.reset_at:
            self.remaining = self.limit
            self.reset_at = None
        if self.retry_until is not None and now >= self.retry_until:
            self.retry_until = None

    def is_exhausted(self, now: float) -> bool:
        self.refresh(now)
        if self.retry_until is not None:
            return True
        return self.remaining is not None and self.remaining <= 0 and self.reset_at is not None

    def available_at(self, now: float) -> float:
        """Earliest time the bucket can grant again."""

        self.refresh(now)
        ready = now
        if self.retry_until is not None:
            ready = max(ready, self.retry_until)
        if self.remaining is not None and self.remaining <= 0 and self.reset_at is not None:
            ready = max(ready, self.reset_at)
        return ready

    def consume(self, now: float) -> None:
        self.last_used = now
        if self.remaining is None:
            return
        self.remaining = max(0, self.remaining - 1)
        if self.window is not None and self.reset_at is None:
            self.reset_at = now + self.window


@dataclass(frozen=True)
class Admission:
    granted: bool
    wait_until: float = 0.0


@dataclass(frozen=True)
class RateLimitHit:
    """Outcome of recording a 429: the request must be retried after ``retry_after`` seconds."""

    retry_after: float
    is_global: bool = False


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in headers.items()}


def _float_header(headers: Mapping[str, str], name: str) -> Optional[float]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        LOGGER.debug("Ignoring non-numeric %s header: %r", name, value)
        return None


def _date_header(headers: Mapping[str, str]) -> Optional[float]:
    """Server clock from the HTTP ``Date`` header, as epoch seconds."""

    value = headers.get("date")
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError):
        LOGGER.debug("Ignoring unparseable Date header: %r", value)
        return None


class BucketRegistry:
    """Tracks remaining requests and reset deadlines per route key plus one global bucket.

    ``admit`` and ``record`` run under a single lock that is never held across
    network I/O. Header-reported values always replace local predictions.
    """

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        grace_seconds: float = 300.0,
        global_limit: int = 0,
    ) -> None:
        self._clock = clock or Clock()
        self._grace = float(grace_seconds)
        self._buckets: dict[str, Bucket] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = 0.0
        self._priority_waiting = 0
        self._global = Bucket(GLOBAL_KEY)
        if global_limit > 0:
            self._configure(self._global, global_limit, 1.0)

    @property
    def clock(self) -> Clock:
        return self._clock

    def configure(self, route_key: str, limit: int, per: float) -> Bucket:
        """Declare a locally enforced window of ``limit`` grants every ``per`` seconds."""

        bucket = self._global if route_key == GLOBAL_KEY else self._bucket(route_key)
        self._configure(bucket, limit, per)
        return bucket

    @staticmethod
    def _configure(bucket: Bucket, limit: int, per: float) -> None:
        if limit < 1 or per <= 0:
            raise ValueError("Bucket window needs a positive limit and period")
        bucket.limit = limit
        bucket.window = float(per)
        bucket.configured = True
        if bucket.remaining is None or bucket.remaining > limit:
            bucket.remaining = limit

    def get(self, route_key: str) -> Optional[Bucket]:
        if route_key == GLOBAL_KEY:
            return self._global
        return self._buckets.get(route_key)

    def __len__(self) -> int:
        return len(self._buckets)

    @contextlib.contextmanager
    def priority_waiter(self) -> Iterator[None]:
        """Mark a global-scope request as waiting; remaining global units are held for it."""

        self._priority_waiting += 1
        try:
            yield
        finally:
            self._priority_waiting -= 1

    async def admit(
        self,
        route_key: Optional[str],
        *,
        priority: bool = False,
        include_global: bool = True,
    ) -> Admission:
        """Grant one request for ``route_key`` or report when to ask again.

        A grant consumes a unit from both the route bucket and the global
        bucket; nothing is consumed unless both are available. Pass
        ``include_global=False`` for local windows (identify pacing) that do
        not count against the REST budget.
        """

        async with self._lock:
            now = self._clock.now()
            self._maybe_sweep(now)
            bucket = self._bucket(route_key) if route_key else None
            wait_until = self._global.available_at(now) if include_global else now
            if bucket is not None:
                wait_until = max(wait_until, bucket.available_at(now))
            if wait_until > now:
                return Admission(False, wait_until)
            if include_global:
                if not priority and self._priority_waiting and self._global.remaining is not None:
                    if self._global.remaining <= self._priority_waiting:
                        retry_at = self._global.reset_at if self._global.reset_at is not None else now
                        return Admission(False, max(retry_at, now))
                self._global.consume(now)
            if bucket is not None:
                bucket.consume(now)
            return Admission(True, now)

    async def record(
        self,
        route_key: Optional[str],
        status: int,
        headers: Mapping[str, str],
        body: Any = None,
    ) -> Optional[RateLimitHit]:
        """Apply the server's rate limit headers; returns a :class:`RateLimitHit` on 429."""

        lowered = _lower_headers(headers)
        async with self._lock:
            now = self._clock.now()
            bucket = self._bucket(route_key) if route_key else None
            if bucket is not None:
                self._apply_headers(bucket, lowered, now)
            if status != 429:
                return None
            retry_after = self._retry_after(lowered, body)
            is_global = self._is_global(lowered, body)
            target = self._global if is_global or bucket is None else bucket
            target.retry_until = max(target.retry_until or now, now + retry_after)
            if target.remaining is not None:
                target.remaining = 0
            LOGGER.warning(
                "Rate limited on %s bucket %s; retrying in %.2fs",
                "global" if target is self._global else "route",
                target.key,
                retry_after,
            )
            return RateLimitHit(retry_after=retry_after, is_global=target is self._global)

    def _apply_headers(self, bucket: Bucket, headers: Mapping[str, str], now: float) -> None:
        limit = _float_header(headers, "x-ratelimit-limit")
        remaining = _float_header(headers, "x-ratelimit-remaining")
        reset_after = _float_header(headers, "x-ratelimit-reset-after")
        if reset_after is None:
            reset_epoch = _float_header(headers, "x-ratelimit-reset")
            if reset_epoch is not None:
                date = _date_header(headers)
                reset_after = max(0.0, reset_epoch - date) if date is not None else None
        bucket_hash = headers.get("x-ratelimit-bucket")
        if bucket_hash and bucket.bucket_hash != bucket_hash:
            LOGGER.debug("Route %s maps to bucket %s", bucket.key, bucket_hash)
            bucket.bucket_hash = bucket_hash
        if limit is not None:
            bucket.limit = int(limit)
        if remaining is not None:
            bucket.remaining = max(0, int(remaining))
        if reset_after is not None:
            bucket.reset_at = now + reset_after
            if not bucket.configured:
                bucket.window = max(bucket.window or 0.0, reset_after) or None
        bucket.last_used = now

    @staticmethod
    def _retry_after(headers: Mapping[str, str], body: Any) -> float:
        if isinstance(body, dict) and body.get("retry_after") is not None:
            try:
                return max(0.0, float(body["retry_after"]))
            except (TypeError, ValueError):
                pass
        value = _float_header(headers, "retry-after")
        if value is None:
            value = _float_header(headers, "x-ratelimit-reset-after")
        return max(0.0, value if value is not None else 1.0)

    @staticmethod
    def _is_global(headers: Mapping[str, str], body: Any) -> bool:
        if headers.get("x-ratelimit-global", "").lower() == "true":
            return True
        if headers.get("x-ratelimit-scope", "").lower() == "global":
            return True
        return isinstance(body, dict) and bool(body.get("global"))

    def _bucket(self, route_key: str) -> Bucket:
        bucket = self._buckets.get(route_key)
        if bucket is None:
            bucket = Bucket(route_key, last_used=self._clock.now())
            self._buckets[route_key] = bucket
        return bucket

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._grace * SWEEP_RATIO:
            return
        self._last_sweep = now
        stale = [
            key
            for key, bucket in self._buckets.items()
            if not bucket.configured
            and not bucket.is_exhausted(now)
            and now - max(bucket.last_used, bucket.reset_at or 0.0) > self._grace
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            LOGGER.debug("Evicted %s stale rate limit buckets", len(stale))
