import heapq
import itertools
import threading
import time
from typing import Callable, Dict, Hashable, List, Optional


class MonotonicClock:
    """Production time source."""

    def now(self) -> float:
        return time.monotonic()

    def wall_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only moves when told to; used to drive timers in tests."""

    def __init__(self, start: float = 1000.0, wall_start_ms: int = 1_700_000_000_000):
        self._now = start
        self._start = start
        self._wall_start_ms = wall_start_ms

    def now(self) -> float:
        return self._now

    def wall_ms(self) -> int:
        return self._wall_start_ms + int(round((self._now - self._start) * 1000))

    def advance(self, seconds: float) -> None:
        self._now += seconds


class _Entry:
    __slots__ = ('due', 'seq', 'key', 'callback', 'cancelled')

    def __init__(self, due, seq, key, callback):
        self.due = due
        self.seq = seq
        self.key = key
        self.callback = callback
        self.cancelled = False

    def __lt__(self, other):
        return (self.due, self.seq) < (other.due, other.seq)


class TimerService:
    """Single deadline heap keyed by hashable keys.

    Re-arming a key or cancelling it only marks the old entry; stale entries
    are skipped when they reach the top of the heap. ``run_due`` pops and runs
    every callback whose deadline has passed. In production a background task
    calls it every tick; tests call it after advancing a ``ManualClock``.
    """

    def __init__(self, clock, logger, tick_sec: float = 0.05):
        self.clock = clock
        self.logger = logger
        self.tick_sec = tick_sec
        self._heap: List[_Entry] = []
        self._live: Dict[Hashable, _Entry] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._running = False

    def schedule(self, key: Hashable, delay_sec: float, callback: Callable[[], None]) -> float:
        due = self.clock.now() + max(0.0, delay_sec)
        with self._lock:
            old = self._live.get(key)
            if old is not None:
                old.cancelled = True
            entry = _Entry(due, next(self._seq), key, callback)
            self._live[key] = entry
            heapq.heappush(self._heap, entry)
        return due

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._live.pop(key, None)
            if entry is None:
                return False
            entry.cancelled = True
            return True

    def cancel_matching(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            keys = [k for k in self._live if predicate(k)]
            for k in keys:
                self._live.pop(k).cancelled = True
        return len(keys)

    def cancel_all(self) -> None:
        with self._lock:
            for entry in self._live.values():
                entry.cancelled = True
            self._live.clear()
            self._heap.clear()

    def due_at(self, key: Hashable) -> Optional[float]:
        with self._lock:
            entry = self._live.get(key)
            return entry.due if entry else None

    def pending(self) -> int:
        with self._lock:
            return len(self._live)

    def run_due(self) -> int:
        fired = 0
        while True:
            with self._lock:
                if not self._heap:
                    break
                top = self._heap[0]
                if top.cancelled:
                    heapq.heappop(self._heap)
                    continue
                if top.due > self.clock.now():
                    break
                heapq.heappop(self._heap)
                if self._live.get(top.key) is top:
                    del self._live[top.key]
            # Callbacks take their own game locks; never hold ours while running them.
            try:
                top.callback()
            except Exception:
                self.logger.exception(f"[timer-error] key={top.key!r}")
            fired += 1
        return fired

    def run_forever(self, sleep: Callable[[float], None]) -> None:
        self._running = True
        self.logger.info(f"[timer-worker] started tick={self.tick_sec}s")
        while self._running:
            self.run_due()
            sleep(self.tick_sec)
        self.logger.info("[timer-worker] stopped")

    def stop(self) -> None:
        self._running = False
