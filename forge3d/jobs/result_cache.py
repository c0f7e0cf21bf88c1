"""
Result cache: fingerprint -> previously completed generation result.

Two tiers:
- In-process LRU with per-entry TTL and a bounded entry count
- Durable JSON-file mirror that survives restarts

Entries are advisory. Any tier failure is raised internally as
CacheUnavailable and swallowed at this boundary: lookups degrade to a miss
and writes are skipped with a warning.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..config import load_config
from ..exceptions import CacheUnavailable
from ..utils.logging import get_logger
from .types import CachedResult

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """Individual cache entry with metadata."""
    key: str
    value: CachedResult
    created_at: float
    accessed_at: float
    ttl_seconds: float
    hit_count: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expires_at

    @property
    def age_seconds(self) -> float:
        return time.time() - self.created_at


@dataclass
class CacheMetrics:
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    mirror_hits: int = 0
    evictions: int = 0
    failures: int = 0

    @property
    def hit_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.cache_hits / self.total_requests


class LRUCache:
    """In-memory LRU cache with TTL support."""

    def __init__(self, max_size: int = 2000):
        self.max_size = max_size
        self.cache: Dict[str, CacheEntry] = {}
        self.access_order: List[str] = []  # Most recently used at end
        self.lock = asyncio.Lock()
        self.evictions = 0

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Get entry from cache if not expired."""
        async with self.lock:
            entry = self.cache.get(key)
            if entry is None:
                return None

            if entry.is_expired:
                self._drop(key)
                return None

            if key in self.access_order:
                self.access_order.remove(key)
            self.access_order.append(key)

            entry.accessed_at = time.time()
            entry.hit_count += 1
            return entry

    async def put(self, key: str, entry: CacheEntry) -> None:
        """Put entry in cache with LRU eviction."""
        async with self.lock:
            if key in self.cache and key in self.access_order:
                self.access_order.remove(key)

            self.cache[key] = entry
            self.access_order.append(key)

            while len(self.cache) > self.max_size and self.access_order:
                oldest_key = self.access_order.pop(0)
                if self.cache.pop(oldest_key, None) is not None:
                    self.evictions += 1

    async def remove(self, key: str) -> bool:
        async with self.lock:
            return self._drop(key)

    async def remove_expired(self) -> int:
        async with self.lock:
            expired = [k for k, e in self.cache.items() if e.is_expired]
            for key in expired:
                self._drop(key)
            return len(expired)

    async def clear(self) -> None:
        async with self.lock:
            self.cache.clear()
            self.access_order.clear()

    def _drop(self, key: str) -> bool:
        # Caller holds self.lock
        if key not in self.cache:
            return False
        del self.cache[key]
        if key in self.access_order:
            self.access_order.remove(key)
        return True

    def __len__(self) -> int:
        return len(self.cache)


class FileMirror:
    """Durable tier: one JSON document per fingerprint."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    async def read(self, key: str) -> Optional[CacheEntry]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r") as f:
                data = json.loads(await f.read())
            return CacheEntry(
                key=key,
                value=CachedResult.from_dict(data["result"]),
                created_at=float(data["created_at"]),
                accessed_at=time.time(),
                ttl_seconds=float(data["ttl_seconds"]),
            )
        except Exception as e:
            raise CacheUnavailable(f"mirror read failed for {key[:12]}: {e}") from e

    async def write(self, entry: CacheEntry) -> None:
        path = self._path(entry.key)
        temp = path.with_suffix(".json.tmp")
        doc = {
            "created_at": entry.created_at,
            "ttl_seconds": entry.ttl_seconds,
            "result": entry.value.to_dict(),
        }
        try:
            async with aiofiles.open(temp, "w") as f:
                await f.write(json.dumps(doc, ensure_ascii=False))
            temp.replace(path)
        except Exception as e:
            raise CacheUnavailable(f"mirror write failed for {entry.key[:12]}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            path = self._path(key)
            if path.exists():
                path.unlink()
                return True
            return False
        except OSError as e:
            raise CacheUnavailable(f"mirror delete failed for {key[:12]}: {e}") from e

    async def remove_expired(self) -> int:
        removed = 0
        for path in list(self.cache_dir.glob("*.json")):
            try:
                entry = await self.read(path.stem)
            except CacheUnavailable:
                # Unreadable documents are dropped with the expired ones
                entry = None
            if entry is None or entry.is_expired:
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def count(self) -> int:
        return sum(1 for _ in self.cache_dir.glob("*.json"))


class ResultCache:
    """Fingerprint-keyed result cache with a fast tier and a durable mirror."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or load_config()

        max_entries = int(self.config.get("FORGE_CACHE_MAX_ENTRIES", 2000))
        self.default_ttl = float(self.config.get("FORGE_CACHE_TTL_S", 86400))
        self.memory = LRUCache(max_entries)
        self.mirror = FileMirror(Path(self.config["FORGE_CACHE_DIR"]))
        self.metrics = CacheMetrics()

        logger.info(
            f"💾 ResultCache initialized (max_entries: {max_entries}, ttl: {self.default_ttl:.0f}s)",
            extra={"subsys": "cache", "event": "init"},
        )

    async def lookup(self, fingerprint: str) -> Optional[CachedResult]:
        """Return the cached result for a fingerprint, or None on miss or tier failure."""
        self.metrics.total_requests += 1
        try:
            entry = await self.memory.get(fingerprint)
            if entry is None:
                entry = await self._lookup_mirror(fingerprint)
        except CacheUnavailable as e:
            self.metrics.failures += 1
            logger.warning(f"Cache lookup degraded to miss: {e}", extra={"subsys": "cache", "event": "lookup_failed"})
            entry = None

        if entry is None:
            self.metrics.cache_misses += 1
            return None

        self.metrics.cache_hits += 1
        logger.debug(f"🎯 Cache hit for {fingerprint[:12]}")
        return entry.value

    async def store(self, fingerprint: str, result: CachedResult, ttl: Optional[float] = None) -> None:
        """Best-effort write to both tiers."""
        now = time.time()
        entry = CacheEntry(
            key=fingerprint,
            value=result,
            created_at=now,
            accessed_at=now,
            ttl_seconds=float(ttl) if ttl is not None else self.default_ttl,
        )
        await self.memory.put(fingerprint, entry)
        try:
            await self.mirror.write(entry)
        except CacheUnavailable as e:
            self.metrics.failures += 1
            logger.warning(f"Cache write skipped: {e}", extra={"subsys": "cache", "event": "store_failed"})

    async def invalidate(self, fingerprint: str) -> bool:
        removed = await self.memory.remove(fingerprint)
        try:
            removed = self.mirror.delete(fingerprint) or removed
        except CacheUnavailable as e:
            self.metrics.failures += 1
            logger.warning(f"Cache invalidate incomplete: {e}")
        return removed

    async def cleanup_expired(self) -> int:
        """Remove expired entries from both tiers."""
        removed = await self.memory.remove_expired()
        try:
            removed += await self.mirror.remove_expired()
        except OSError as e:
            logger.warning(f"Mirror cleanup failed: {e}")

        if removed > 0:
            logger.debug(f"🧹 Cleaned up {removed} expired cache entries")
        return removed

    def stats(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "requests": m.total_requests,
            "hits": m.cache_hits,
            "misses": m.cache_misses,
            "mirror_hits": m.mirror_hits,
            "hit_rate": round(m.hit_rate, 4),
            "failures": m.failures,
            "memory_entries": len(self.memory),
            "evictions": self.memory.evictions,
        }

    async def _lookup_mirror(self, fingerprint: str) -> Optional[CacheEntry]:
        entry = await self.mirror.read(fingerprint)
        if entry is None:
            return None
        if entry.is_expired:
            self.mirror.delete(fingerprint)
            return None
        self.metrics.mirror_hits += 1
        # Re-warm the fast tier
        await self.memory.put(fingerprint, entry)
        return entry
