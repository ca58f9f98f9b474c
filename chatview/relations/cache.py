"""Versioned cache for relation-derived views.

Each key maps to the last computed value plus the version stamp that was
current when it was computed. The stamp of a key is made of three counters:

- the cache epoch, bumped by clear()
- the room epoch, bumped by invalidate_room()
- the key generation, the cache-wide invalidation tick of the key's last
  invalidate()

A lookup is a hit only while the stored stamp equals the current one. A store
is accepted only if its stamp (captured before computing) is still current,
so a value computed before the most recent invalidation is never resurrected.

Generations of keys without an entry are pruned once the map outgrows twice
the LRU bound. A pruned key falls back to the highest pruned tick, which is at
least the key's own, so stamps captured before the invalidation stay stale.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import (
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    Optional,
    Tuple,
    TypeVar,
)

from chatview.relations.metrics import (
    relation_cache_evictions_total,
    relation_cache_invalidations_total,
    relation_cache_lookups_total,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Version = Tuple[int, int, int]


class ViewKind(str, Enum):
    THREAD_METADATA = "thread_metadata"
    THREAD_REPLIES = "thread_replies"
    ROOM_THREADS = "room_threads"
    REACTIONS = "reactions"
    REACTIONS_WITH_REDACTED = "reactions_with_redacted"


THREAD_VIEWS = (ViewKind.THREAD_METADATA, ViewKind.THREAD_REPLIES)
REACTION_VIEWS = (ViewKind.REACTIONS, ViewKind.REACTIONS_WITH_REDACTED)


class CacheState(str, Enum):
    """Observable state of one cache key."""

    ABSENT = "absent"
    CACHED = "cached"
    STALE = "stale"


@dataclass(frozen=True)
class CacheKey:
    room_id: str
    anchor_event_id: Optional[str]
    view: ViewKind


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    key: CacheKey
    value: T
    version: Version


class RelationCache:
    """LRU-bounded versioned cache shared by thread and reaction views.

    Scoped to one client session; only the view engine and the views it owns
    mutate it. Not thread-safe: all access happens on the client's event loop.
    """

    def __init__(self, max_entries: int = 5000):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._generations: Dict[CacheKey, int] = {}
        self._tick = 0
        self._pruned_floor = 0
        self._room_epochs: Dict[str, int] = {}
        self._epoch = 0

        # Statistics
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def version(self, key: CacheKey) -> Version:
        """Current version stamp of a key."""
        return (
            self._epoch,
            self._room_epochs.get(key.room_id, 0),
            self._generations.get(key, self._pruned_floor),
        )

    def lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return the entry for key if it is current, else None.

        The stored value itself may be None (a cached "no thread" answer),
        so callers distinguish hit from miss by the entry, not the value.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.version == self.version(key):
            self._entries.move_to_end(key)
            self._hits += 1
            relation_cache_lookups_total.labels(view=key.view.value, result="hit").inc()
            return entry

        self._misses += 1
        relation_cache_lookups_total.labels(view=key.view.value, result="miss").inc()
        return None

    def peek(self, key: CacheKey) -> Optional[CacheEntry]:
        """Like lookup() but without touching LRU order or statistics."""
        entry = self._entries.get(key)
        if entry is not None and entry.version == self.version(key):
            return entry
        return None

    def current_entries(
        self, room_id: str, view: ViewKind
    ) -> Iterator[CacheEntry]:
        """Yield current (non-stale) entries of one view kind in a room."""
        for key, entry in list(self._entries.items()):
            if key.room_id == room_id and key.view is view:
                if entry.version == self.version(key):
                    yield entry

    def store(self, key: CacheKey, value: T, version: Version) -> bool:
        """Store value computed under version.

        Returns:
            False if key was invalidated after version was captured; the
            entry then stays stale until the next read recomputes it.
        """
        if version != self.version(key):
            logger.debug("Discarding stale computation for %s", key)
            return False

        self._entries[key] = CacheEntry(key=key, value=value, version=version)
        self._entries.move_to_end(key)
        # Pin the generation so pruning cannot stale a live entry
        self._generations[key] = version[2]
        while len(self._entries) > self._max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            relation_cache_evictions_total.inc()
            logger.debug("Evicted relation cache entry %s", evicted_key)
        if len(self._generations) > 2 * self._max_entries:
            self._prune_generations()
        return True

    def get_or_compute(self, key: CacheKey, compute: Callable[[], T]) -> T:
        """Return the cached value for key, computing and storing it on miss."""
        entry = self.lookup(key)
        if entry is not None:
            return entry.value

        version = self.version(key)
        value = compute()
        self.store(key, value, version)
        return value

    def state(self, key: CacheKey) -> CacheState:
        entry = self._entries.get(key)
        if entry is None:
            return CacheState.ABSENT
        if entry.version != self.version(key):
            return CacheState.STALE
        return CacheState.CACHED

    def invalidate(self, key: CacheKey) -> None:
        """Mark key stale. Safe when nothing is cached for key."""
        self._tick += 1
        self._generations[key] = self._tick
        relation_cache_invalidations_total.labels(scope="key").inc()
        if len(self._generations) > 2 * self._max_entries:
            self._prune_generations()

    def invalidate_anchor(
        self, room_id: str, anchor_event_id: Optional[str], views: Iterable[ViewKind]
    ) -> None:
        for view in views:
            self.invalidate(CacheKey(room_id, anchor_event_id, view))

    def invalidate_room(self, room_id: str) -> None:
        """Mark every key of a room stale, including keys being computed."""
        self._room_epochs[room_id] = self._room_epochs.get(room_id, 0) + 1
        relation_cache_invalidations_total.labels(scope="room").inc()

    def clear(self) -> None:
        """Drop all entries. Stamps captured before clear() become stale."""
        self._entries.clear()
        self._generations.clear()
        self._pruned_floor = self._tick
        self._room_epochs.clear()
        self._epoch += 1
        relation_cache_invalidations_total.labels(scope="all").inc()

    def _prune_generations(self) -> None:
        """Forget generations of keys that have no entry."""
        for key in [k for k in self._generations if k not in self._entries]:
            self._pruned_floor = max(self._pruned_floor, self._generations.pop(key))
        logger.debug(
            "Pruned relation cache generations; %d tracked", len(self._generations)
        )

    def get_stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "max_entries": self._max_entries,
            "tracked_generations": len(self._generations),
            "hits": self._hits,
            "misses": self._misses,
        }
