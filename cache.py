import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List

from errors import DataNotFound
from models import CacheEntry, ProgramRecord

log = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 300.0
DEFAULT_MAX_CAPACITY = 10
REFRESH_RATIO = 0.8


@dataclass(frozen=True)
class EntryStats:
    include_system_components: bool
    age: float
    program_count: int
    scan_duration_ms: int


@dataclass(frozen=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    updates: int = 0
    entries: int = 0
    capacity: int = DEFAULT_MAX_CAPACITY
    max_age: float = DEFAULT_MAX_AGE
    details: List[EntryStats] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class InventoryCache:
    """Scan results keyed by the include-system-components flag.

    A single lock guards both the entries and the counters, so a snapshot
    from ``stats`` is always self-consistent.
    """

    def __init__(
        self,
        max_age: float = DEFAULT_MAX_AGE,
        max_capacity: int = DEFAULT_MAX_CAPACITY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_capacity < 1:
            raise ValueError("max_capacity must be at least 1")
        self._max_age = float(max_age)
        self._max_capacity = int(max_capacity)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[bool, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._updates = 0

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at <= self._max_age

    def has_valid_cache(self, include_system_components: bool) -> bool:
        with self._lock:
            entry = self._entries.get(include_system_components)
            return entry is not None and self._is_fresh(entry, self._clock())

    def get_cached_programs(self, include_system_components: bool) -> List[ProgramRecord]:
        with self._lock:
            entry = self._entries.get(include_system_components)
            if entry is None or not self._is_fresh(entry, self._clock()):
                self._misses += 1
                raise DataNotFound(f"No fresh inventory for include_system_components={include_system_components}")
            self._hits += 1
            return list(entry.programs)

    def update_cache(
        self,
        include_system_components: bool,
        programs: Iterable[ProgramRecord],
        scan_duration_ms: int = 0,
    ) -> None:
        records = tuple(programs)
        with self._lock:
            entry = CacheEntry(include_system_components, records, self._clock(), int(scan_duration_ms))
            evicted: List[bool] = []
            if include_system_components not in self._entries:
                evicted = self._evict_to(self._max_capacity - 1)
            self._entries[include_system_components] = entry
            self._updates += 1
        if evicted:
            log.debug("Evicted cache entries: %s", evicted)
        log.debug("Cached %d programs (system components: %s)", len(records), include_system_components)

    def should_refresh_cache(self, include_system_components: bool) -> bool:
        with self._lock:
            entry = self._entries.get(include_system_components)
            if entry is None:
                return True
            return self._clock() - entry.created_at > self._max_age * REFRESH_RATIO

    def clear_cache(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def set_max_age(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("max_age must be positive")
        with self._lock:
            self._max_age = float(seconds)

    def set_max_capacity(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("max_capacity must be at least 1")
        with self._lock:
            self._max_capacity = int(capacity)
            evicted = self._evict_to(self._max_capacity)
        if evicted:
            log.debug("Evicted cache entries: %s", evicted)

    def _evict_to(self, limit: int) -> List[bool]:
        # Caller holds the lock.
        evicted: List[bool] = []
        while len(self._entries) > max(limit, 0):
            oldest = min(self._entries, key=lambda key: self._entries[key].created_at)
            del self._entries[oldest]
            evicted.append(oldest)
        return evicted

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            details = [
                EntryStats(key, now - entry.created_at, entry.program_count, entry.scan_duration_ms)
                for key, entry in sorted(self._entries.items())
            ]
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                updates=self._updates,
                entries=len(self._entries),
                capacity=self._max_capacity,
                max_age=self._max_age,
                details=details,
            )
