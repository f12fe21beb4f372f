import threading
from typing import Dict, Optional, Tuple


class _Bucket:
    __slots__ = ('tokens', 'updated_at', 'last_notice_at')

    def __init__(self, tokens: float, now: float):
        self.tokens = tokens
        self.updated_at = now
        self.last_notice_at: Optional[float] = None


class RateLimitDecision:
    __slots__ = ('allowed', 'notify')

    def __init__(self, allowed: bool, notify: bool = False):
        self.allowed = allowed
        self.notify = notify


class RateLimiter:
    """Token bucket per (connection, event).

    Capacity equals the event's per-second rate and the bucket refills at that
    rate. A rejected event reports ``notify=True`` at most once per second per
    key so callers can send a single rate-limit error.
    """

    NOTICE_INTERVAL_SEC = 1.0

    def __init__(self, clock, rates: Dict[str, float], default_rate: float = 10, logger=None):
        self.clock = clock
        self.rates = dict(rates)
        self.default_rate = default_rate
        self.logger = logger
        self._buckets: Dict[Tuple[str, str], _Bucket] = {}
        self._lock = threading.Lock()

    def rate_for(self, event: str) -> float:
        return float(self.rates.get(event, self.default_rate))

    def check(self, conn_id: str, event: str) -> RateLimitDecision:
        rate = self.rate_for(event)
        now = self.clock.now()
        key = (conn_id, event)
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(rate, now)
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated_at)
                bucket.tokens = min(rate, bucket.tokens + elapsed * rate)
                bucket.updated_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return RateLimitDecision(True)
            notify = (
                bucket.last_notice_at is None
                or now - bucket.last_notice_at >= self.NOTICE_INTERVAL_SEC
            )
            if notify:
                bucket.last_notice_at = now
        if self.logger is not None and notify:
            self.logger.warning(f"[rate-limit] conn={conn_id} event={event}")
        return RateLimitDecision(False, notify)

    def release(self, conn_id: str) -> int:
        """Drop every bucket owned by a closed connection."""
        with self._lock:
            keys = [k for k in self._buckets if k[0] == conn_id]
            for k in keys:
                del self._buckets[k]
        return len(keys)

    def sweep(self, idle_sec: float = 5.0) -> int:
        """Drop buckets that have been full and untouched for ``idle_sec``."""
        now = self.clock.now()
        with self._lock:
            stale = [k for k, b in self._buckets.items() if now - b.updated_at > idle_sec]
            for k in stale:
                del self._buckets[k]
        return len(stale)

    def stats(self) -> dict:
        with self._lock:
            return {'activeEntries': len(self._buckets)}
