"""
memcache.py - Bounded in-memory object caches

MemoryCache is a size-accounted LRU map from key to decoded object.  Each
entry declares its size in bytes at insertion; the cache never holds more
than its capacity.  When an insert does not fit, least-recently-used
entries are evicted until the cache is down to its low-water mark with
room for the new entry.

MemoryCacheSet is a registry of named caches (textures, elevations, ...)
used for statistics and for clearing everything on memory pressure.

SessionCache is a small FIFO map for per-session documents.

MemoryPressureMonitor watches process RSS and clears caches when it goes
over a limit.
"""

import threading
import time
from collections import OrderedDict

import psutil

from globecache.gcconfig import CFG
from globecache.gcstats import inc_stat, get_process_rss
from globecache.utils.constants import MB

import logging
log = logging.getLogger(__name__)


class _CacheEntry(object):
    __slots__ = ('key', 'obj', 'size', 'last_used')

    def __init__(self, key, obj, size):
        self.key = key
        self.obj = obj
        self.size = size
        self.last_used = time.monotonic()

    def __repr__(self):
        return f"_CacheEntry({self.key!r}, size={self.size})"


class MemoryCache(object):
    """Thread-safe LRU cache with byte-size capacity accounting."""

    def __init__(self, capacity=None, low_water=None, name=""):
        if capacity is None:
            capacity = int(float(CFG.memcache.default_capacity_mb) * MB)
        if capacity is None or capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")

        self.name = name
        self._lock = threading.RLock()
        self._entries = OrderedDict()
        self._capacity = int(capacity)
        self._used = 0
        self._listeners = []

        if low_water is None:
            frac = float(CFG.memcache.low_water_frac)
            low_water = int(self._capacity * frac)
        self.set_low_water(low_water)

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __repr__(self):
        return (f"MemoryCache({self.name!r}, used={self._used}/{self._capacity}, "
                f"objects={len(self._entries)})")

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        return self.contains(key)

    # -----------------------------
    # Capacity
    # -----------------------------
    def get_capacity(self):
        return self._capacity

    def set_capacity(self, capacity):
        if capacity is None or capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        with self._lock:
            self._capacity = int(capacity)
            self._low_water = min(self._low_water, self._capacity)
            removed = self._evict_until(self._capacity)
        self._notify(removed)

    def get_low_water(self):
        return self._low_water

    def set_low_water(self, low_water):
        if low_water is None or low_water < 0:
            raise ValueError(f"Low water mark must not be negative, got {low_water}")
        self._low_water = min(int(low_water), self._capacity)

    def get_used_capacity(self):
        with self._lock:
            return self._used

    def get_free_capacity(self):
        with self._lock:
            return self._capacity - self._used

    def get_num_objects(self):
        return len(self)

    # -----------------------------
    # Listeners
    # -----------------------------
    def add_listener(self, listener):
        """Register `listener(key, obj)`, called after an entry leaves the cache."""
        if listener is None:
            raise ValueError("Listener is None")
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener):
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def _notify(self, removed):
        if not removed:
            return
        with self._lock:
            listeners = list(self._listeners)
        for entry in removed:
            for listener in listeners:
                try:
                    listener(entry.key, entry.obj)
                except Exception as err:
                    log.warning(f"Cache {self.name} listener failed for {entry.key}: {err}")

    # -----------------------------
    # LRU helpers
    # -----------------------------
    def _evict_until(self, target_bytes):
        """Pop LRU entries until used <= target_bytes.  Caller holds the lock."""
        removed = []
        while self._entries and self._used > target_bytes:
            _, entry = self._entries.popitem(last=False)
            self._used -= entry.size
            removed.append(entry)
        if removed:
            self.evictions += len(removed)
            inc_stat('memcache_evictions', len(removed))
            log.debug(f"Cache {self.name} evicted {len(removed)} entries, used {self._used}/{self._capacity}")
        return removed

    # -----------------------------
    # Entries
    # -----------------------------
    def put(self, key, obj, size_in_bytes):
        if key is None:
            raise ValueError("Cache key is None")
        if obj is None:
            raise ValueError("Cache object is None")
        if size_in_bytes is None or size_in_bytes < 0:
            raise ValueError(f"Entry size must not be negative, got {size_in_bytes}")

        size_in_bytes = int(size_in_bytes)
        removed = []
        with self._lock:
            if size_in_bytes > self._capacity:
                log.warning(f"Cache {self.name} rejected {key}: {size_in_bytes} bytes exceeds capacity {self._capacity}")
                inc_stat('memcache_rejected')
                return False

            old = self._entries.pop(key, None)
            if old is not None:
                self._used -= old.size
                removed.append(old)

            if self._used + size_in_bytes > self._capacity:
                target = max(0, min(self._low_water, self._capacity - size_in_bytes))
                removed.extend(self._evict_until(target))

            self._entries[key] = _CacheEntry(key, obj, size_in_bytes)
            self._used += size_in_bytes

        self._notify(removed)
        return True

    def get(self, key):
        if key is None:
            raise ValueError("Cache key is None")

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                inc_stat('memcache_miss')
                return None
            # Move to MRU position
            self._entries.move_to_end(key, last=True)
            entry.last_used = time.monotonic()
            self.hits += 1
            inc_stat('memcache_hit')
            return entry.obj

    def contains(self, key):
        if key is None:
            raise ValueError("Cache key is None")
        with self._lock:
            return key in self._entries

    def remove(self, key):
        if key is None:
            raise ValueError("Cache key is None")

        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._used -= entry.size
        if entry is None:
            return False
        self._notify([entry])
        return True

    def clear(self):
        with self._lock:
            removed = list(self._entries.values())
            self._entries.clear()
            self._used = 0
        if removed:
            log.debug(f"Cleared cache {self.name} ({len(removed)} entries)")
        self._notify(removed)

    def get_statistics(self):
        with self._lock:
            return {
                'name': self.name,
                'hits': self.hits,
                'misses': self.misses,
                'evictions': self.evictions,
                'capacity': self._capacity,
                'used': self._used,
                'num_objects': len(self._entries),
            }


class MemoryCacheSet(object):
    """Registry of named MemoryCache instances."""

    def __init__(self):
        self._lock = threading.Lock()
        self._caches = OrderedDict()

    def __repr__(self):
        return f"MemoryCacheSet({list(self._caches.keys())})"

    def add_cache(self, key, cache):
        if key is None:
            raise ValueError("Cache key is None")
        if cache is None:
            raise ValueError("Cache is None")
        with self._lock:
            if key in self._caches:
                raise ValueError(f"Cache {key!r} already registered")
            self._caches[key] = cache
        log.debug(f"Registered cache {key}: {cache}")
        return cache

    def get_cache(self, key):
        if key is None:
            raise ValueError("Cache key is None")
        with self._lock:
            return self._caches.get(key)

    def contains_cache(self, key):
        if key is None:
            raise ValueError("Cache key is None")
        with self._lock:
            return key in self._caches

    def get_all_caches(self):
        with self._lock:
            return dict(self._caches)

    def clear(self):
        for cache in self.get_all_caches().values():
            cache.clear()

    def get_performance_statistics(self):
        return [cache.get_statistics() for cache in self.get_all_caches().values()]


class SessionCache(object):
    """Bounded FIFO map for documents that live for one session.

    Unlike MemoryCache there is no size accounting; the capacity is a
    count of entries and the oldest inserted entry is dropped first.
    """

    def __init__(self, capacity=None):
        if capacity is None:
            capacity = int(CFG.session.capacity)
        self._lock = threading.Lock()
        self._entries = OrderedDict()
        self.set_capacity(capacity)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        return self.contains(key)

    def get_capacity(self):
        return self._capacity

    def set_capacity(self, capacity):
        if capacity is None or capacity < 1:
            raise ValueError(f"Session cache capacity must be positive, got {capacity}")
        with self._lock:
            self._capacity = int(capacity)
            self._trim()

    def _trim(self):
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def put(self, key, obj):
        if key is None:
            raise ValueError("Cache key is None")
        with self._lock:
            # Re-putting a key refreshes its position
            self._entries.pop(key, None)
            self._entries[key] = obj
            self._trim()

    def get(self, key):
        if key is None:
            raise ValueError("Cache key is None")
        with self._lock:
            return self._entries.get(key)

    def contains(self, key):
        if key is None:
            raise ValueError("Cache key is None")
        with self._lock:
            return key in self._entries

    def remove(self, key):
        if key is None:
            raise ValueError("Cache key is None")
        with self._lock:
            return self._entries.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._entries.keys())

    def clear(self):
        with self._lock:
            self._entries.clear()


class MemoryPressureMonitor(object):
    """Clear registered caches while the process RSS is above a limit."""

    def __init__(self, cache_set, mem_limit_bytes=None, poll_interval=None, rss_func=None):
        if cache_set is None:
            raise ValueError("Cache set is None")
        if mem_limit_bytes is None:
            mem_limit_bytes = int(float(CFG.memcache.mem_limit_mb) * MB)
        if poll_interval is None:
            poll_interval = float(CFG.memcache.poll_interval)
        if mem_limit_bytes < 0:
            raise ValueError(f"Memory limit must not be negative, got {mem_limit_bytes}")
        if poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {poll_interval}")

        self.cache_set = cache_set
        self.mem_limit = mem_limit_bytes
        self.poll_interval = poll_interval
        self._rss = rss_func or get_process_rss
        self._stop = threading.Event()
        self._t = None

    def start(self):
        if self._t is not None:
            return
        log.info(f"Started memory monitor.  Mem limit {self.mem_limit // MB} MB")
        self._stop.clear()
        self._t = threading.Thread(target=self._loop, daemon=True, name="memcache-monitor")
        self._t.start()

    def stop(self):
        self._stop.set()
        if self._t is not None:
            self._t.join()
            self._t = None

    def _loop(self):
        while not self._stop.wait(self.poll_interval):
            try:
                self.check_once()
            except psutil.Error as err:
                log.warning(f"Memory monitor could not sample RSS: {err}")

    def check_once(self):
        """Clear caches, biggest first, until RSS drops under the limit.

        Returns the number of caches cleared.
        """
        if not self.mem_limit:
            return 0

        cur_mem = self._rss()
        if cur_mem <= self.mem_limit:
            return 0

        caches = sorted(
            self.cache_set.get_all_caches().items(),
            key=lambda kv: kv[1].get_used_capacity(),
            reverse=True,
        )
        cleared = 0
        for name, cache in caches:
            if cur_mem <= self.mem_limit:
                break
            if cache.get_used_capacity() == 0:
                continue
            log.info(f"Memory {cur_mem // MB} MB over limit {self.mem_limit // MB} MB, clearing cache {name}")
            cache.clear()
            cleared += 1
            inc_stat('memcache_pressure_clears')
            cur_mem = self._rss()
        return cleared
