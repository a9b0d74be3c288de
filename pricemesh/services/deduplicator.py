"""
RequestDeduplicator - Collapses concurrent identical requests (singleflight).

When multiple callers request the same logical key inside the join
window, only one computation runs and every caller receives its result
or its exception.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from loguru import logger

from pricemesh.services.types import DetailOptions, SearchOptions

T = TypeVar("T")


@dataclass
class PendingRequest:
    """An in-flight computation and the callers waiting on it."""

    task: asyncio.Task[Any]
    created_at: float
    waiters: int = field(default=0)


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    A caller that is cancelled stops waiting without disturbing the others;
    the shared computation is cancelled once no caller is left waiting.

    Usage:
        dedup = RequestDeduplicator()

        key = generate_search_key(query, backends, options)
        result = await dedup.join_or_start(key, lambda: perform_search(query))
    """

    def __init__(
        self,
        max_join_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self._pending: dict[str, PendingRequest] = {}
        self._max_join_window = max_join_window
        self._clock = clock
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def join_or_start(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Return the result of the in-flight computation for ``key``,
        starting one with ``factory`` if none is fresh enough to join.
        """
        async with self._lock:
            now = self._clock()
            entry = self._pending.get(key)

            if entry is not None and now - entry.created_at >= self._max_join_window:
                self._pending.pop(key, None)
                self._log(f"STALE: Dropping expired request: {key[:16]}...")
                entry = None

            if entry is not None:
                self._stats.joined += 1
                self._log(f"JOIN: Waiting for in-flight request: {key[:16]}...")
            else:
                self._stats.unique += 1
                self._log(f"NEW: Starting request: {key[:16]}...")
                task = asyncio.ensure_future(factory())
                entry = PendingRequest(task=task, created_at=now)
                self._pending[key] = entry
                task.add_done_callback(lambda t, k=key, e=entry: self._on_done(k, e, t))

            entry.waiters += 1

        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if entry.waiters == 1 and not entry.task.done():
                entry.task.cancel()
                self._log(f"ABANDONED: Last waiter cancelled: {key[:16]}...")
            raise
        finally:
            entry.waiters -= 1

    def _on_done(self, key: str, entry: PendingRequest, task: asyncio.Task[Any]) -> None:
        if self._pending.get(key) is entry:
            del self._pending[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters re-raise it themselves.
            task.exception()
        self._log(f"DONE: Request completed: {key[:16]}...")

    async def reap_expired(self) -> int:
        """Cancel and drop computations older than the join window."""
        async with self._lock:
            now = self._clock()
            expired = [
                key
                for key, entry in self._pending.items()
                if now - entry.created_at >= self._max_join_window
            ]
            for key in expired:
                self._pending.pop(key).task.cancel()

        if expired:
            logger.info(f"Deduplicator cancelled {len(expired)} expired requests")
        return len(expired)

    async def cancel(self, key: str) -> bool:
        """Cancel an in-flight request."""
        async with self._lock:
            if key in self._pending:
                entry = self._pending.pop(key)
                entry.task.cancel()
                self._log(f"CANCEL: Request cancelled: {key[:16]}...")
                return True
            return False

    async def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        async with self._lock:
            count = len(self._pending)
            for entry in self._pending.values():
                entry.task.cancel()
            self._pending.clear()
            if count:
                self._log(f"CANCEL_ALL: {count} requests cancelled")
            return count

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._pending)

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._pending)
        now = self._clock()
        ages = [now - e.created_at for e in self._pending.values()]
        self._stats.oldest_age = max(ages) if ages else None
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.unique: int = 0  # Computations started
        self.joined: int = 0  # Callers that joined an existing computation
        self.in_flight: int = 0
        self.oldest_age: float | None = None

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.unique + self.joined
        if total == 0:
            return 0.0
        return self.joined / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "unique_requests": self.unique,
            "joined": self.joined,
            "in_flight": self.in_flight,
            "oldest_age": self.oldest_age,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }


def normalize_query(query: str) -> str:
    return " ".join(query.lower().split())


def _digest(signature: dict[str, Any]) -> str:
    canonical = json.dumps(signature, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def options_signature(options: SearchOptions) -> dict[str, Any]:
    """Order-independent view of search options."""
    data = options.model_dump(mode="json")
    data["filters"] = sorted(data["filters"], key=lambda f: (f["type"], f["value"]))
    return data


def generate_search_key(
    query: str,
    backends: Iterable[str],
    options: SearchOptions,
) -> str:
    """Hash of the normalized query, the sorted backend set and the options."""
    return _digest(
        {
            "kind": "search",
            "query": normalize_query(query),
            "backends": sorted(set(backends)),
            "options": options_signature(options),
        }
    )


def generate_details_key(product_id: str, backend: str, options: DetailOptions) -> str:
    return _digest(
        {
            "kind": "details",
            "id": product_id,
            "backend": backend,
            "options": options.model_dump(mode="json"),
        }
    )
