"""
absent.py - Bookkeeping for resources that recently failed to retrieve

Callers consult the list before submitting a retrieval and mark a key
absent whenever a fetch fails.  A key that has failed fewer than
`max_tries` times is suppressed only for the short `min_check_interval`,
so flaky resources get re-probed quickly.  Once `max_tries` is reached the
key is suppressed for the full `try_again_interval`.  After that the entry
ages out and the key may be tried again.

The list is bounded.  Marking a new key while full forgets the oldest
tracked key, regardless of how recently it failed.
"""

import threading
import time
from collections import OrderedDict

from globecache.gcconfig import CFG

import logging
log = logging.getLogger(__name__)


class _AbsentEntry(object):
    __slots__ = ('num_tries', 'last_mark')

    def __init__(self):
        self.num_tries = 0
        self.last_mark = 0.0

    def __repr__(self):
        return f"_AbsentEntry(num_tries={self.num_tries}, last_mark={self.last_mark:.3f})"


class AbsentResourceList(object):

    def __init__(self, max_list_size=None, max_tries=None,
                 min_check_interval=None, try_again_interval=None):
        if max_list_size is None:
            max_list_size = int(CFG.absent.max_list_size)
        if max_tries is None:
            max_tries = int(CFG.absent.max_tries)
        if min_check_interval is None:
            min_check_interval = float(CFG.absent.min_check_interval)
        if try_again_interval is None:
            try_again_interval = float(CFG.absent.try_again_interval)

        if max_list_size < 1:
            raise ValueError(f"max_list_size must be at least 1, got {max_list_size}")

        self._lock = threading.Lock()
        self._entries = OrderedDict()
        self._max_list_size = int(max_list_size)
        self.set_max_tries(max_tries)
        self.set_min_check_interval(min_check_interval)
        self.set_try_again_interval(try_again_interval)

    def __repr__(self):
        return (f"AbsentResourceList(size={len(self)}/{self._max_list_size}, "
                f"max_tries={self._max_tries}, "
                f"check={self._min_check_interval}s, "
                f"try_again={self._try_again_interval}s)")

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        with self._lock:
            return key in self._entries

    def get_max_list_size(self):
        return self._max_list_size

    def get_max_tries(self):
        return self._max_tries

    def set_max_tries(self, max_tries):
        if max_tries is None or int(max_tries) < 1:
            raise ValueError(f"max_tries must be at least 1, got {max_tries}")
        self._max_tries = int(max_tries)

    def get_min_check_interval(self):
        return self._min_check_interval

    def set_min_check_interval(self, seconds):
        if seconds is None or seconds < 0:
            raise ValueError(f"min_check_interval must not be negative, got {seconds}")
        self._min_check_interval = float(seconds)

    def get_try_again_interval(self):
        return self._try_again_interval

    def set_try_again_interval(self, seconds):
        if seconds is None or seconds < 0:
            raise ValueError(f"try_again_interval must not be negative, got {seconds}")
        self._try_again_interval = float(seconds)

    def mark_resource_absent(self, key):
        if key is None:
            raise ValueError("Resource key is None")

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                # Make room by forgetting the oldest tracked resource
                while len(self._entries) >= self._max_list_size:
                    old_key, _ = self._entries.popitem(last=False)
                    log.debug(f"Absent list full, forgetting {old_key}")
                entry = _AbsentEntry()
                self._entries[key] = entry

            entry.num_tries += 1
            entry.last_mark = time.monotonic()
            num_tries = entry.num_tries

        log.debug(f"Marked {key} absent ({num_tries}/{self._max_tries} tries)")

    def unmark_resource_absent(self, key):
        if key is None:
            raise ValueError("Resource key is None")

        with self._lock:
            self._entries.pop(key, None)

    def is_resource_absent(self, key):
        if key is None:
            raise ValueError("Resource key is None")

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False

            since_mark = time.monotonic() - entry.last_mark
            if since_mark >= self._try_again_interval:
                # Backoff served; forget the failures and allow a retry
                del self._entries[key]
                return False

            if entry.num_tries >= self._max_tries:
                return True

            return since_mark < self._min_check_interval
