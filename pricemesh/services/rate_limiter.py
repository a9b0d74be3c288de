"""
SlidingWindowRateLimiter - Per-service admission control over three horizons.

Each service owns a per-second, per-minute and per-hour window. A request
is admitted only when all three windows have room; excess requests wait
in a bounded priority queue that is drained by a periodic pump.

Usage:
    limiter = SlidingWindowRateLimiter({"acme": RateLimitConfig(2, 30, 500)})

    await limiter.acquire("acme")           # waits in queue if needed
    admission = await limiter.try_admit("acme", RequestPriority.HIGH)
    if not admission.admitted:
        await admission.wait()
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from loguru import logger

from pricemesh.services.errors import QueueFullError, QueueTimeoutError


class RequestPriority(str, Enum):
    """Queue tiers, served in declaration order."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass
class RateLimitConfig:
    """Limits for one service."""

    requests_per_second: int = 1
    requests_per_minute: int = 10
    requests_per_hour: int = 100
    burst_limit: int = 2  # Reported only, the three windows bound bursts
    queue_size: int = 50


class RateWindow:
    """Timestamps of admitted events inside a sliding window."""

    def __init__(self, duration: float, max_count: int):
        self.duration = duration
        self.max_count = max_count
        self._events: deque[float] = deque()

    def purge(self, now: float) -> None:
        cutoff = now - self.duration
        while self._events and self._events[0] <= cutoff:
            self._events.popleft()

    def has_capacity(self, now: float) -> bool:
        self.purge(now)
        return len(self._events) < self.max_count

    def record(self, now: float) -> None:
        self._events.append(now)

    @property
    def count(self) -> int:
        return len(self._events)

    def remaining(self, now: float) -> int:
        self.purge(now)
        return max(0, self.max_count - len(self._events))

    def reset_in(self, now: float) -> float:
        """Seconds until the oldest retained event leaves the window."""
        self.purge(now)
        if not self._events:
            return 0.0
        return max(0.0, self._events[0] + self.duration - now)


@dataclass
class _Waiter:
    future: asyncio.Future[None]
    enqueued_at: float
    priority: RequestPriority


@dataclass
class Admission:
    """Outcome of ``try_admit``: admitted now, or queued with a handle."""

    admitted: bool
    priority: RequestPriority
    _future: asyncio.Future[None] | None = field(default=None, repr=False)

    @property
    def released(self) -> bool:
        """True once the request may proceed."""
        if self._future is None:
            return True
        return (
            self._future.done()
            and not self._future.cancelled()
            and self._future.exception() is None
        )

    async def wait(self) -> None:
        """Suspend until the pump admits the request or the reaper fails it."""
        if self._future is None:
            return
        await self._future

    def cancel(self) -> None:
        if self._future is not None:
            self._future.cancel()


class ServiceRateState:
    """Windows and wait queues for one service."""

    def __init__(self, service_id: str, config: RateLimitConfig):
        self.service_id = service_id
        self.lock = asyncio.Lock()
        self.queues: dict[RequestPriority, deque[_Waiter]] = {
            p: deque() for p in RequestPriority
        }
        self.config = config
        self.windows = {
            "second": RateWindow(1.0, config.requests_per_second),
            "minute": RateWindow(60.0, config.requests_per_minute),
            "hour": RateWindow(3600.0, config.requests_per_hour),
        }

    def apply(self, config: RateLimitConfig) -> None:
        """Swap in new caps. Admissions already recorded still count."""
        self.config = config
        self.windows["second"].max_count = config.requests_per_second
        self.windows["minute"].max_count = config.requests_per_minute
        self.windows["hour"].max_count = config.requests_per_hour

    def can_admit(self, now: float) -> bool:
        return all(w.has_capacity(now) for w in self.windows.values())

    def record(self, now: float) -> None:
        for window in self.windows.values():
            window.record(now)

    def drop_done(self) -> None:
        for queue in self.queues.values():
            live = [w for w in queue if not w.future.done()]
            if len(live) != len(queue):
                queue.clear()
                queue.extend(live)

    @property
    def queued(self) -> int:
        return sum(len(q) for q in self.queues.values())

    def next_waiter(self) -> _Waiter | None:
        for priority in RequestPriority:
            queue = self.queues[priority]
            while queue:
                waiter = queue.popleft()
                if not waiter.future.done():
                    return waiter
        return None


class SlidingWindowRateLimiter:
    """
    Rate limiter with per-service state and priority wait queues.

    State for a service is serialized by that service's lock; services
    never block each other. Unknown services get ``default_config``.
    """

    def __init__(
        self,
        configs: dict[str, RateLimitConfig] | None = None,
        default_config: RateLimitConfig | None = None,
        queue_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self._configs = dict(configs or {})
        self._default_config = default_config or RateLimitConfig()
        self._queue_timeout = queue_timeout
        self._clock = clock
        self._debug = debug
        self._states: dict[str, ServiceRateState] = {}

    def _state(self, service_id: str) -> ServiceRateState:
        state = self._states.get(service_id)
        if state is None:
            config = self._configs.get(service_id, self._default_config)
            state = ServiceRateState(service_id, config)
            self._states[service_id] = state
        return state

    async def try_admit(
        self,
        service_id: str,
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> Admission:
        """
        Admit a request now, or queue it.

        A request is only admitted directly when nobody is waiting, so queued
        requests keep their place.

        Raises:
            QueueFullError: The service's wait queue is at capacity
        """
        state = self._state(service_id)
        async with state.lock:
            now = self._clock()
            state.drop_done()

            if state.queued == 0 and state.can_admit(now):
                state.record(now)
                self._log(f"ADMIT: {service_id}")
                return Admission(admitted=True, priority=priority)

            if state.queued >= state.config.queue_size:
                logger.warning(
                    f"Rate limiter queue full for '{service_id}' "
                    f"({state.config.queue_size} waiting)"
                )
                raise QueueFullError(service_id, state.config.queue_size)

            future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            state.queues[priority].append(_Waiter(future, now, priority))
            self._log(f"QUEUE: {service_id} ({priority.value}, {state.queued} waiting)")
            return Admission(admitted=False, priority=priority, _future=future)

    async def acquire(
        self,
        service_id: str,
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> None:
        """Wait until a request to ``service_id`` may proceed."""
        admission = await self.try_admit(service_id, priority)
        if not admission.admitted:
            await admission.wait()

    async def pump(self) -> int:
        """Release queued waiters while capacity allows. Returns count released."""
        released = 0
        for state in list(self._states.values()):
            async with state.lock:
                now = self._clock()
                while state.queued and state.can_admit(now):
                    waiter = state.next_waiter()
                    if waiter is None:
                        break
                    state.record(now)
                    waiter.future.set_result(None)
                    released += 1
                    self._log(f"RELEASE: {state.service_id} ({waiter.priority.value})")
        return released

    async def reap_expired(self) -> int:
        """Fail waiters that sat in the queue longer than the queue timeout."""
        reaped = 0
        for state in list(self._states.values()):
            async with state.lock:
                now = self._clock()
                timed_out = 0
                for queue in state.queues.values():
                    kept: deque[_Waiter] = deque()
                    for waiter in queue:
                        if waiter.future.done():
                            continue
                        if now - waiter.enqueued_at >= self._queue_timeout:
                            waiter.future.set_exception(
                                QueueTimeoutError(state.service_id, self._queue_timeout)
                            )
                            timed_out += 1
                        else:
                            kept.append(waiter)
                    queue.clear()
                    queue.extend(kept)
                if timed_out:
                    logger.info(
                        f"Rate limiter timed out {timed_out} queued requests "
                        f"for '{state.service_id}'"
                    )
                reaped += timed_out
        return reaped

    def update_limits(self, service_id: str, config: RateLimitConfig) -> None:
        """Replace limits for a service, keeping its admission history and queue."""
        self._configs[service_id] = config
        if service_id in self._states:
            self._states[service_id].apply(config)
        logger.info(
            f"Rate limits for '{service_id}' set to "
            f"{config.requests_per_second}/s, {config.requests_per_minute}/min, "
            f"{config.requests_per_hour}/h"
        )

    def get_remaining(self, service_id: str) -> dict[str, dict[str, float]]:
        """Remaining admissions and seconds until reset for each window."""
        state = self._state(service_id)
        now = self._clock()
        return {
            name: {
                "remaining": window.remaining(now),
                "limit": window.max_count,
                "reset_in": window.reset_in(now),
            }
            for name, window in state.windows.items()
        }

    def get_queue_status(self, service_id: str) -> dict[str, int]:
        state = self._state(service_id)
        state.drop_done()
        status = {p.value: len(state.queues[p]) for p in RequestPriority}
        status["total"] = state.queued
        status["max_size"] = state.config.queue_size
        return status

    def get_status(self) -> dict[str, dict[str, Any]]:
        """Status of every known service."""
        return {
            service_id: {
                "limits": {
                    "requests_per_second": state.config.requests_per_second,
                    "requests_per_minute": state.config.requests_per_minute,
                    "requests_per_hour": state.config.requests_per_hour,
                    "burst_limit": state.config.burst_limit,
                },
                "remaining": self.get_remaining(service_id),
                "queue": self.get_queue_status(service_id),
            }
            for service_id, state in self._states.items()
        }

    def cancel_all(self) -> int:
        """Cancel every queued waiter."""
        count = 0
        for state in self._states.values():
            for queue in state.queues.values():
                for waiter in queue:
                    if not waiter.future.done():
                        waiter.future.cancel()
                        count += 1
                queue.clear()
        if count:
            self._log(f"CANCEL_ALL: {count} queued requests cancelled")
        return count

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RateLimiter] {message}")
