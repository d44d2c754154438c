"""TTL response cache with an LRU soft cap and write-through persistence."""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from modgate.cache.persistence import KeyValueStore
from modgate.models.data_models import CacheEntry

SEARCH_TTL = 5 * 60 * 60
MOD_TTL = 24 * 60 * 60


def mod_key(mod_id: int) -> str:
    return f"mod:{mod_id}"


class CacheStore:
    """
    Thread-safe cache of upstream result sets.

    Uses one lock around map mutation. Persistence calls happen outside it,
    and any failure there is logged and treated as a miss.
    """

    def __init__(
        self,
        persistence: Optional[KeyValueStore] = None,
        default_ttl: float = SEARCH_TTL,
        max_entries: int = 500,
        logger: Optional['StructuredLogger'] = None,
        now: Callable[[], float] = time.time,
    ):
        """
        Initialize cache.

        Args:
            persistence: Optional write-through key-value collaborator
            default_ttl: TTL in seconds when ``set`` gets none
            max_entries: Soft cap before least recently used entries go
            logger: Optional structured logger
            now: Clock function (epoch seconds, so persisted expiry survives restarts)
        """
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got: {default_ttl}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be at least 1, got: {max_entries}")

        self.persistence = persistence
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.logger = logger
        self._now = now

        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._warming_cycle_started_at: Optional[float] = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._persistence_errors = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Return a live entry and mark it accessed.

        Memory first, then the persistence collaborator.

        Returns:
            The entry if present and not expired, else None
        """
        with self._lock:
            entry = self._entries.get(key)

        if entry is None:
            entry = self._load(key)

        current_time = self._now()
        with self._lock:
            # a concurrent set may have replaced the entry since the first read
            current = self._entries.get(key)
            if current is not None:
                entry = current
            if entry is None or entry.is_expired(current_time):
                self._misses += 1
                return None

            if current is None:
                self._entries[key] = entry
                self._evict_locked()
            entry.hit_count += 1
            entry.last_accessed_at = current_time
            self._entries.move_to_end(key)
            self._hits += 1

        if self.logger:
            self.logger.cache_event("cache_hit", key=entry.label or key)
        return entry

    def get_stale(self, key: str) -> Optional[CacheEntry]:
        """Return the entry even if expired. Does not touch hit counters."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            entry = self._load(key)
        return entry

    def set(
        self,
        key: str,
        payload: Any,
        total_count: int,
        ttl: Optional[float] = None,
        label: Optional[str] = None,
    ) -> CacheEntry:
        """
        Store a result set.

        Args:
            key: Cache key (query digest or ``mod:<id>``)
            payload: JSON-friendly result data
            total_count: Upstream total for the query
            ttl: Seconds until expiry (default: default_ttl)
            label: Human-readable tag for logs

        Returns:
            The new entry
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got: {ttl}")

        current_time = self._now()
        entry = CacheEntry(
            key=key,
            payload=payload,
            total_count=total_count,
            created_at=current_time,
            expires_at=current_time + ttl,
            last_accessed_at=current_time,
            label=label or key,
        )

        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            evicted = self._evict_locked()

        self._persist(entry, ttl)

        if self.logger:
            self.logger.cache_event("cache_set", key=entry.label, ttl=ttl)
            for evicted_key in evicted:
                self.logger.cache_event("cache_evict", key=evicted_key)
        return entry

    def invalidate(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None

        if self.persistence is not None:
            try:
                self.persistence.delete(key)
            except Exception as e:
                self._on_persistence_error("delete", key, e)
        return removed

    def clear_expired(self) -> int:
        """Drop expired entries from memory. Returns how many went."""
        current_time = self._now()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(current_time)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def begin_warming_cycle(self) -> None:
        """Entries touched from now on are protected from eviction."""
        with self._lock:
            self._warming_cycle_started_at = self._now()

    def flush(self) -> int:
        """Write every live entry to persistence with its remaining TTL."""
        current_time = self._now()
        with self._lock:
            live = [e for e in self._entries.values() if not e.is_expired(current_time)]

        for entry in live:
            self._persist(entry, entry.expires_at - current_time)
        return len(live)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups * 100, 2) if lookups else 0.0,
                "evictions": self._evictions,
                "persistence_errors": self._persistence_errors,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def _evict_locked(self) -> List[str]:
        """Trim to max_entries, oldest access first. Caller holds ``_lock``."""
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return []

        cycle_start = self._warming_cycle_started_at
        victims = []
        for key, entry in self._entries.items():
            if len(victims) >= overflow:
                break
            # Protected entries may push the map past the cap
            if cycle_start is not None and entry.last_accessed_at >= cycle_start:
                continue
            victims.append(key)

        for key in victims:
            del self._entries[key]
        self._evictions += len(victims)
        return victims

    def _load(self, key: str) -> Optional[CacheEntry]:
        if self.persistence is None:
            return None
        try:
            record = self.persistence.get(key)
            if record is None:
                return None
            return CacheEntry.from_record(key, record, self._now())
        except Exception as e:
            self._on_persistence_error("get", key, e)
            return None

    def _persist(self, entry: CacheEntry, ttl: float) -> None:
        if self.persistence is None or ttl <= 0:
            return
        try:
            self.persistence.set(entry.key, entry.to_record(), ttl)
        except Exception as e:
            self._on_persistence_error("set", entry.key, e)

    def _on_persistence_error(self, operation: str, key: str, error: Exception) -> None:
        with self._lock:
            self._persistence_errors += 1
        if self.logger:
            self.logger.warning(
                "cache_persistence_error",
                operation=operation,
                key=key,
                error=str(error),
            )
