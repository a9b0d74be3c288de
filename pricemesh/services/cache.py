"""
TieredCache - Memory tier backed by a durable on-disk tier.

Features:
- Memory tier bounded by bytes and entry count, expired-first then LRU eviction
- Disk tier with one JSON envelope per key, named by SHA-256 of the key
- Absolute expiration on every entry; expired hits are evicted and missed
- Disk hits are promoted into the memory tier
- Storage and serialization failures are logged and treated as misses
"""

import asyncio
import base64
import hashlib
import json
import os
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

import pydantic_core
from loguru import logger
from pydantic import TypeAdapter, ValidationError

from pricemesh.services.errors import CacheError

T = TypeVar("T")

MB = 1024 * 1024
ENVELOPE_SUFFIX = ".json"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """Encoded value with its absolute expiration."""

    payload: bytes
    expires_at: datetime
    size_bytes: int

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_envelope(self) -> dict[str, Any]:
        return {
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "expires_at": self.expires_at.isoformat(),
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_envelope(cls, data: dict[str, Any]) -> "CacheEntry":
        payload = base64.b64decode(data["payload"], validate=True)
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(payload=payload, expires_at=expires_at, size_bytes=int(data["size_bytes"]))


class TieredCache:
    """
    Two-tier cache keyed by arbitrary strings.

    Values are encoded with pydantic, so models, lists of models and plain
    JSON values all round-trip. Pass ``type_`` to ``get`` to rebuild models.

    Usage:
        cache = TieredCache(cache_dir=Path(".cache/search"))

        result = await cache.get(key, AggregatedResult)
        if result is None:
            result = await compute()
            await cache.set(key, result, ttl=timedelta(minutes=5))
    """

    def __init__(
        self,
        cache_dir: Path | str | None = None,
        memory_limit_bytes: int = 50 * MB,
        memory_max_entries: int = 1000,
        disk_limit_bytes: int = 200 * MB,
        default_ttl: timedelta = timedelta(hours=1),
        now: Callable[[], datetime] = utcnow,
        debug: bool = False,
    ):
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._memory_bytes = 0
        self._memory_limit_bytes = memory_limit_bytes
        self._memory_max_entries = memory_max_entries
        self._disk_limit_bytes = disk_limit_bytes
        self._cache_dir = Path(cache_dir) if cache_dir is not None else None
        self._default_ttl = default_ttl
        self._now = now
        self._debug = debug
        self._lock = asyncio.Lock()
        self._adapters: dict[Any, TypeAdapter[Any]] = {}
        self._stats = CacheStats()

        if self._cache_dir is not None:
            self._cache_dir.mkdir(parents=True, exist_ok=True)

    @property
    def cache_dir(self) -> Path | None:
        return self._cache_dir

    async def get(self, key: str, type_: Any = None) -> Any | None:
        """
        Look up ``key`` in memory, then on disk.

        Returns the decoded value, or None on miss, expiry or any error.
        """
        now = self._now()
        entry: CacheEntry | None = None

        async with self._lock:
            mem_entry = self._memory.get(key)
            if mem_entry is not None:
                if mem_entry.is_expired(now):
                    self._drop_memory(key)
                    self._log(f"EXPIRED (memory): {key[:50]}...")
                else:
                    self._memory.move_to_end(key)
                    self._stats.memory_hits += 1
                    self._log(f"HIT (memory): {key[:50]}...")
                    entry = mem_entry

        if entry is None and self._cache_dir is not None:
            entry = await self._get_from_disk(key, now)

        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}...")
            return None

        try:
            return self._decode(entry.payload, type_)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Cache entry for {key[:50]}... could not be decoded: {e}")
            self._stats.errors += 1
            await self.remove(key)
            return None

    async def _get_from_disk(self, key: str, now: datetime) -> CacheEntry | None:
        try:
            entry = await asyncio.to_thread(self._read_disk, key)
        except CacheError as e:
            logger.warning(f"Disk cache read failed: {e}")
            self._stats.errors += 1
            await asyncio.to_thread(self._unlink_quietly, self._disk_path(key))
            return None

        if entry is None:
            return None

        if entry.is_expired(now):
            self._log(f"EXPIRED (disk): {key[:50]}...")
            await asyncio.to_thread(self._unlink_quietly, self._disk_path(key))
            return None

        async with self._lock:
            self._store_memory(key, entry, now)
        self._stats.disk_hits += 1
        self._log(f"HIT (disk, promoted): {key[:50]}...")
        return entry

    async def set(self, key: str, value: Any, ttl: timedelta | None = None) -> None:
        """
        Store ``value`` in both tiers.

        Returns once the disk write has completed. Errors are logged.
        """
        ttl = self._default_ttl if ttl is None else ttl
        try:
            payload = self._encode(value)
        except (pydantic_core.PydanticSerializationError, TypeError, ValueError) as e:
            logger.warning(f"Cache value for {key[:50]}... is not serializable: {e}")
            self._stats.errors += 1
            return

        now = self._now()
        entry = CacheEntry(payload=payload, expires_at=now + ttl, size_bytes=len(payload))

        async with self._lock:
            self._store_memory(key, entry, now)
        self._log(f"SET: {key[:50]}... (TTL: {ttl.total_seconds()}s)")

        if self._cache_dir is None:
            return

        try:
            await asyncio.to_thread(self._write_disk, key, entry)
            await asyncio.to_thread(self._enforce_disk_limit)
        except CacheError as e:
            logger.warning(f"Disk cache write failed: {e}")
            self._stats.errors += 1

    async def remove(self, key: str) -> bool:
        """Delete a key from both tiers."""
        async with self._lock:
            removed = self._drop_memory(key)
        if self._cache_dir is not None:
            removed = await asyncio.to_thread(self._unlink_quietly, self._disk_path(key)) or removed
        if removed:
            self._log(f"DELETE: {key[:50]}...")
        return removed

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._memory_bytes = 0
        if self._cache_dir is not None:
            count += await asyncio.to_thread(self._clear_disk)
        self._log(f"CLEAR: {count} entries removed")

    async def clear_memory(self) -> None:
        """Drop the memory tier only."""
        async with self._lock:
            self._memory.clear()
            self._memory_bytes = 0

    async def remove_expired(self) -> int:
        """Remove expired entries from both tiers. Returns count removed."""
        now = self._now()
        async with self._lock:
            expired = [k for k, e in self._memory.items() if e.is_expired(now)]
            for key in expired:
                self._drop_memory(key)
        removed = len(expired)

        if self._cache_dir is not None:
            removed += await asyncio.to_thread(self._remove_expired_disk, now)

        if removed:
            logger.info(f"Cache maintenance removed {removed} expired entries")
        return removed

    def _store_memory(self, key: str, entry: CacheEntry, now: datetime) -> None:
        self._drop_memory(key)
        if entry.size_bytes > self._memory_limit_bytes:
            return
        self._memory[key] = entry
        self._memory_bytes += entry.size_bytes
        self._evict_memory(now)

    def _drop_memory(self, key: str) -> bool:
        entry = self._memory.pop(key, None)
        if entry is None:
            return False
        self._memory_bytes -= entry.size_bytes
        return True

    def _evict_memory(self, now: datetime) -> None:
        """Evict expired entries first, then least recently used."""
        if not self._over_memory_limit():
            return

        for key in [k for k, e in self._memory.items() if e.is_expired(now)]:
            self._drop_memory(key)
            self._stats.evictions += 1

        while self._over_memory_limit() and self._memory:
            key, entry = self._memory.popitem(last=False)
            self._memory_bytes -= entry.size_bytes
            self._stats.evictions += 1
            self._log(f"EVICT: {key[:50]}...")

    def _over_memory_limit(self) -> bool:
        return (
            len(self._memory) > self._memory_max_entries
            or self._memory_bytes > self._memory_limit_bytes
        )

    def _disk_path(self, key: str) -> Path:
        assert self._cache_dir is not None
        name = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._cache_dir / f"{name}{ENVELOPE_SUFFIX}"

    def _read_disk(self, key: str) -> CacheEntry | None:
        return self._read_envelope(self._disk_path(key))

    def _read_envelope(self, path: Path) -> CacheEntry | None:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"cannot read {path.name}: {e}") from e

        try:
            return CacheEntry.from_envelope(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise CacheError(f"corrupt cache file {path.name}: {e}") from e

    def _write_disk(self, key: str, entry: CacheEntry) -> None:
        path = self._disk_path(key)
        tmp = path.with_name(f"{path.name}.tmp-{os.getpid()}-{uuid.uuid4().hex}")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(entry.to_envelope(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise CacheError(f"cannot write {path.name}: {e}") from e

    def _disk_files(self) -> list[Path]:
        assert self._cache_dir is not None
        return [p for p in self._cache_dir.iterdir() if p.suffix == ENVELOPE_SUFFIX]

    def _enforce_disk_limit(self) -> None:
        """Evict earliest-expiring files until the disk tier fits its limit."""
        try:
            files = [(p, p.stat().st_size) for p in self._disk_files()]
        except OSError as e:
            raise CacheError(f"cannot scan cache directory: {e}") from e

        total = sum(size for _, size in files)
        if total <= self._disk_limit_bytes:
            return

        by_expiry: list[tuple[datetime, Path, int]] = []
        for path, size in files:
            try:
                entry = self._read_envelope(path)
            except CacheError:
                entry = None
            if entry is None:
                self._unlink_quietly(path)
                total -= size
                continue
            by_expiry.append((entry.expires_at, path, size))

        by_expiry.sort(key=lambda item: item[0])
        for _, path, size in by_expiry:
            if total <= self._disk_limit_bytes:
                break
            self._unlink_quietly(path)
            total -= size
            self._stats.disk_evictions += 1

    def _remove_expired_disk(self, now: datetime) -> int:
        removed = 0
        try:
            files = self._disk_files()
        except OSError as e:
            logger.warning(f"Cache maintenance could not scan directory: {e}")
            return 0

        for path in files:
            try:
                entry = self._read_envelope(path)
            except CacheError as e:
                logger.warning(f"Removing unreadable cache file: {e}")
                entry = None
            if entry is None or entry.is_expired(now):
                if self._unlink_quietly(path):
                    removed += 1
        return removed

    def _clear_disk(self) -> int:
        removed = 0
        try:
            files = self._disk_files()
        except OSError as e:
            logger.warning(f"Cache clear could not scan directory: {e}")
            return 0

        for path in files:
            if self._unlink_quietly(path):
                removed += 1
        return removed

    @staticmethod
    def _unlink_quietly(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Cannot delete cache file {path.name}: {e}")
            return False

    def _adapter(self, type_: Any) -> TypeAdapter[Any]:
        adapter = self._adapters.get(type_)
        if adapter is None:
            adapter = TypeAdapter(type_)
            self._adapters[type_] = adapter
        return adapter

    def _encode(self, value: Any) -> bytes:
        return pydantic_core.to_json(value)

    def _decode(self, payload: bytes, type_: Any) -> Any:
        if type_ is None:
            return pydantic_core.from_json(payload)
        return self._adapter(type_).validate_json(payload)

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.memory_entries = len(self._memory)
        self._stats.memory_bytes = self._memory_bytes
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[TieredCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    memory_hits: int = 0
    disk_hits: int = 0
    misses: int = 0
    evictions: int = 0
    disk_evictions: int = 0
    errors: int = 0
    memory_entries: int = 0
    memory_bytes: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        hits = self.memory_hits + self.disk_hits
        total = hits + self.misses
        if total == 0:
            return 0.0
        return hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "memory_hits": self.memory_hits,
            "disk_hits": self.disk_hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "disk_evictions": self.disk_evictions,
            "errors": self.errors,
            "memory_entries": self.memory_entries,
            "memory_bytes": self.memory_bytes,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
