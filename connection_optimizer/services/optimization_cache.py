"""
Caching, indexing and bookkeeping helpers for the optimization engine.

- BoundedCache: insertion-ordered memo that evicts its oldest entries in bulk.
- OptimizationCache: the engine's memo tables (time parsing, bus times per
  location, headway deviations), keyed by schedule revision.
- ConnectionPriorityQueue: heap ordering of candidate connections.
- ScheduleIndex: lookup tables built once per run.
- PerformanceTracker / estimate_memory_mb: timing and memory accounting.
"""

import heapq
import itertools
import logging
import time
import tracemalloc
from collections import OrderedDict, defaultdict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from connection_optimizer.config import config
from connection_optimizer.models.connection import ConnectionOpportunity, ConnectionType
from connection_optimizer.models.schedule import Schedule
from connection_optimizer.time_utils import time_to_minutes
from connection_optimizer.type_defs import LocationTimes, StatsDict

logger = logging.getLogger(__name__)


# =============================================================================
# Bounded cache
# =============================================================================

class BoundedCache:
    """Memo table capped at *max_size*; drops the oldest *evict_fraction* when full."""

    def __init__(self, max_size: Optional[int] = None, evict_fraction: float = 0.2, name: str = "cache"):
        self.max_size = max(1, int(max_size or config.CACHE_MAX_SIZE))
        self.evict_fraction = evict_fraction
        self.name = name
        self._data: "OrderedDict[Hashable, Any]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    def get(self, key: Hashable, default: Any = None) -> Any:
        if key in self._data:
            self.hits += 1
            return self._data[key]
        self.misses += 1
        return default

    def set(self, key: Hashable, value: Any) -> None:
        if key not in self._data and len(self._data) >= self.max_size:
            self._evict()
        self._data[key] = value

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        if key in self._data:
            self.hits += 1
            return self._data[key]
        self.misses += 1
        value = compute()
        self.set(key, value)
        return value

    def _evict(self) -> None:
        count = min(max(1, int(self.max_size * self.evict_fraction)), len(self._data))
        for _ in range(count):
            self._data.popitem(last=False)
        self.evictions += count
        logger.debug(f"{self.name}: evicted {count} entries")

    def clear(self) -> None:
        self._data.clear()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> StatsDict:
        return {
            "size": len(self._data),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": round(self.hit_rate, 4),
        }


class OptimizationCache:
    """Memo tables used during one optimize() call."""

    def __init__(self, max_size: Optional[int] = None, evict_fraction: float = 0.2):
        self.times = BoundedCache(max_size, evict_fraction, name="time_cache")
        self.bus_times = BoundedCache(max_size, evict_fraction, name="bus_time_cache")
        self.headways = BoundedCache(max_size, evict_fraction, name="headway_cache")

    def time_to_minutes(self, value: str) -> int:
        return self.times.get_or_compute(value, lambda: time_to_minutes(value))

    def bus_times_at(self, revision: int, location_id: str, compute: Callable[[], LocationTimes]) -> LocationTimes:
        return self.bus_times.get_or_compute((revision, location_id), compute)

    def headway_deviations(self, revision: int, compute: Callable[[], Any]) -> Any:
        return self.headways.get_or_compute(revision, compute)

    def clear_all(self) -> None:
        self.times.clear()
        self.bus_times.clear()
        self.headways.clear()

    @property
    def hit_rate(self) -> float:
        hits = self.times.hits + self.bus_times.hits + self.headways.hits
        total = hits + self.times.misses + self.bus_times.misses + self.headways.misses
        return hits / total if total else 0.0

    def stats(self) -> StatsDict:
        return {
            "time_cache": self.times.stats(),
            "bus_time_cache": self.bus_times.stats(),
            "headway_cache": self.headways.stats(),
            "hit_rate": round(self.hit_rate, 4),
        }


# =============================================================================
# Priority queue
# =============================================================================

class ConnectionPriorityQueue:
    """Binary heap of opportunities.

    Order: priority desc, connection-type weight desc, fewer affected trips,
    then insertion order.
    """

    def __init__(self, type_weights: Optional[Dict[ConnectionType, float]] = None):
        self.type_weights = type_weights or {}
        self._heap: List[Tuple[Tuple[float, float, int, int], ConnectionOpportunity]] = []
        self._counter = itertools.count()

    def sort_key(self, opportunity: ConnectionOpportunity, sequence: int) -> Tuple[float, float, int, int]:
        weight = self.type_weights.get(opportunity.type, 0)
        return (-opportunity.priority, -weight, len(opportunity.affected_trips), sequence)

    def push(self, opportunity: ConnectionOpportunity) -> None:
        heapq.heappush(self._heap, (self.sort_key(opportunity, next(self._counter)), opportunity))

    def extend(self, opportunities: Iterable[ConnectionOpportunity]) -> None:
        for opportunity in opportunities:
            self.push(opportunity)

    def pop(self) -> ConnectionOpportunity:
        return heapq.heappop(self._heap)[1]

    def pop_batch(self, size: int) -> List[ConnectionOpportunity]:
        batch = []
        while self._heap and len(batch) < size:
            batch.append(self.pop())
        return batch

    def drain(self) -> List[ConnectionOpportunity]:
        return self.pop_batch(len(self._heap))

    def __len__(self) -> int:
        return len(self._heap)


# =============================================================================
# Schedule index
# =============================================================================

class ScheduleIndex:
    """Lookup tables over a schedule's structure.

    Trip positions stay valid for every revision of the schedule because moves
    replace trips in place rather than reordering the list.
    """

    def __init__(self, schedule: Schedule, connections: Iterable[ConnectionOpportunity] = ()):
        self.trip_position: Dict[int, int] = {}
        for position, trip in enumerate(schedule.trips):
            self.trip_position[trip.trip_number] = position

        ordered = schedule.ordered_time_points
        self.stop_ids = [tp.id for tp in ordered]
        self.stop_order: Dict[str, int] = {stop_id: i for i, stop_id in enumerate(self.stop_ids)}

        self.connections_by_location: Dict[str, List[ConnectionOpportunity]] = defaultdict(list)
        for opportunity in connections:
            self.connections_by_location[opportunity.location_id].append(opportunity)

        self.trips_by_block: Dict[int, List[int]] = defaultdict(list)
        for trip in schedule.sorted_trips():
            self.trips_by_block[trip.block_number].append(trip.trip_number)

        self.sorted_trip_numbers = [trip.trip_number for trip in schedule.sorted_trips()]

    def position_of(self, trip_number: int) -> Optional[int]:
        return self.trip_position.get(trip_number)

    def previous_stop(self, stop_id: str) -> Optional[str]:
        order = self.stop_order.get(stop_id)
        if not order:
            return None
        return self.stop_ids[order - 1]

    def stops_from(self, stop_id: str) -> List[str]:
        """Stop ids at and after *stop_id* in route order."""
        order = self.stop_order.get(stop_id)
        if order is None:
            return [stop_id]
        return self.stop_ids[order:]


# =============================================================================
# Performance accounting
# =============================================================================

class PerformanceTracker:
    """Wall-clock phases, counters and memory samples for one run."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._started: Optional[float] = None
        self.phase_durations_ms: Dict[str, float] = {}
        self.counters: Dict[str, int] = defaultdict(int)
        self.peak_memory_mb = 0.0
        self.last_memory_mb = 0.0

    def start(self) -> None:
        self.reset()
        self._started = time.monotonic()

    @contextmanager
    def phase(self, name: str):
        started = time.monotonic()
        try:
            yield
        finally:
            elapsed = (time.monotonic() - started) * 1000
            self.phase_durations_ms[name] = self.phase_durations_ms.get(name, 0.0) + elapsed

    def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] += amount

    def record_memory(self, memory_mb: float) -> None:
        self.last_memory_mb = memory_mb
        self.peak_memory_mb = max(self.peak_memory_mb, memory_mb)

    def elapsed_ms(self) -> float:
        if self._started is None:
            return 0.0
        return (time.monotonic() - self._started) * 1000

    def get_metrics(self) -> StatsDict:
        return {
            "elapsed_ms": round(self.elapsed_ms(), 3),
            "phases_ms": {k: round(v, 3) for k, v in self.phase_durations_ms.items()},
            "counters": dict(self.counters),
            "peak_memory_mb": round(self.peak_memory_mb, 3),
            "last_memory_mb": round(self.last_memory_mb, 3),
        }


# Rough per-object sizes for the structural estimate (bytes)
_BYTES_PER_STOP_TIME = 160
_BYTES_PER_TRIP = 900
_BYTES_PER_CONNECTION = 1200
_BYTES_PER_CACHE_ENTRY = 120


def estimate_memory_mb(
    schedule: Schedule,
    connection_count: int = 0,
    cache: Optional[OptimizationCache] = None,
) -> float:
    """Working-set size in MB.

    Uses tracemalloc when tracing is active, otherwise a structural estimate
    of the schedule, connections and cache entries.
    """
    if tracemalloc.is_tracing():
        current, _peak = tracemalloc.get_traced_memory()
        return current / (1024 * 1024)

    stop_times = sum(
        len(trip.arrival_times) + len(trip.departure_times) + len(trip.recovery_times)
        for trip in schedule.trips
    )
    cache_entries = 0
    if cache is not None:
        cache_entries = len(cache.times) + len(cache.bus_times) + len(cache.headways)
    total = (
        stop_times * _BYTES_PER_STOP_TIME
        + len(schedule.trips) * _BYTES_PER_TRIP
        + connection_count * _BYTES_PER_CONNECTION
        + cache_entries * _BYTES_PER_CACHE_ENTRY
    )
    return total / (1024 * 1024)


__all__ = [
    "BoundedCache",
    "OptimizationCache",
    "ConnectionPriorityQueue",
    "ScheduleIndex",
    "PerformanceTracker",
    "estimate_memory_mb",
]
