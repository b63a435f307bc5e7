from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from vsrouter.src.metrics import METRICS


class RateLimiter:
    """Decides how long a key must wait before it is retried."""

    def when(self, item: str) -> float:
        raise NotImplementedError

    def forget(self, item: str) -> None:
        raise NotImplementedError

    def num_requeues(self, item: str) -> int:
        raise NotImplementedError


class ItemExponentialFailureRateLimiter(RateLimiter):
    """Per-key exponential backoff: ``base_delay * 2**failures`` capped at ``max_delay``.

    The failure counter only resets through :meth:`forget`, which the worker
    calls once a reconciliation for the key succeeds (or is abandoned).
    """

    def __init__(self, base_delay: float, max_delay: float) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # Past 2**62 the product is far beyond any sane cap anyway.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiter):
    """Overall token bucket shared by every key, bounding the aggregate retry rate."""

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            # Tokens may go negative: each caller reserves its slot in line.
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: str) -> None:
        return None

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter(RateLimiter):
    """Combine limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: str) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> RateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class RateLimitingQueue:
    """Deduplicating, rate-limited work queue of object keys.

    Guarantees, in the order the controller relies on them:

    * A key added while already pending is coalesced into the pending entry.
    * A key added while a worker holds it (between :meth:`get` and
      :meth:`done`) is parked in the dirty set and only redelivered after
      :meth:`done`, so one key is never reconciled by two workers at once.
    * :meth:`add_after` and :meth:`add_rate_limited` park keys in a delay
      heap served by a background thread; a key waiting twice keeps the
      earlier ready time.
    * After :meth:`shut_down` new adds are ignored and delayed keys are
      dropped, but keys already queued are still handed out; :meth:`get`
      returns ``(None, True)`` once the queue is empty.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "routes",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock

        self._lock = threading.Lock()
        self._items_cond = threading.Condition(self._lock)
        self._delay_cond = threading.Condition(self._lock)

        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False

        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()

        self._delay_thread = threading.Thread(
            target=self._delay_loop, name=f"{name}-delay", daemon=True
        )
        self._delay_thread.start()

    def _add_locked(self, item: str) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        METRICS.queue_adds_total.inc()
        if item in self._processing:
            return
        self._queue.append(item)
        METRICS.queue_depth.set(len(self._queue))
        self._items_cond.notify_all()

    def add(self, item: str) -> None:
        with self._lock:
            self._add_locked(item)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; returns ``(key, shutdown)``."""
        with self._lock:
            while not self._queue and not self._shutting_down:
                self._items_cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            METRICS.queue_depth.set(len(self._queue))
            return item, False

    def done(self, item: str) -> None:
        with self._lock:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
            self._items_cond.notify_all()

    def add_after(self, item: str, delay: float) -> None:
        with self._lock:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return
            ready_at = self._clock() + delay
            existing = self._waiting_ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._delay_cond.notify()

    def add_rate_limited(self, item: str) -> None:
        METRICS.queue_retries_total.inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: str) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self.rate_limiter.num_requeues(item)

    def _delay_loop(self) -> None:
        with self._lock:
            while not self._shutting_down:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # Superseded by an earlier add_after for the same key.
                    if self._waiting_ready_at.get(item) != ready_at:
                        continue
                    del self._waiting_ready_at[item]
                    self._add_locked(item)
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._delay_cond.wait(timeout=timeout)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def waiting(self) -> int:
        """Number of keys parked in the delay heap."""
        with self._lock:
            return len(self._waiting_ready_at)

    def shut_down(self) -> None:
        with self._lock:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._items_cond.notify_all()
            self._delay_cond.notify_all()

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down, then wait for queued and in-flight keys to finish.

        Returns ``False`` when *timeout* elapsed with work still outstanding.
        """
        self.shut_down()
        deadline = None if timeout is None else self._clock() + timeout
        with self._lock:
            while self._queue or self._processing:
                if deadline is None:
                    self._items_cond.wait()
                    continue
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                self._items_cond.wait(timeout=remaining)
            return True

    def shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down
