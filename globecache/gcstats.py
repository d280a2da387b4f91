import os
import time
import threading
import collections

import psutil

import logging
log = logging.getLogger(__name__)


class StatsStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._data = {}  # dict[str, any]

    # Atomic increment
    def inc(self, key, amount=1):
        with self._lock:
            self._data[key] = self._data.get(key, 0) + amount
            return self._data[key]

    def inc_many(self, items):
        # items: dict[str, int]
        with self._lock:
            for k, a in items.items():
                self._data[k] = self._data.get(k, 0) + a

    def set(self, key, value):
        with self._lock:
            self._data[key] = value

    def get(self, key, default=0):
        with self._lock:
            return self._data.get(key, default)

    def snapshot(self):
        with self._lock:
            return dict(self._data)

    def clear(self):
        with self._lock:
            self._data.clear()


_store = StatsStore()


def set_stat(stat, value):
    _store.set(stat, value)


def get_stat(stat):
    return _store.get(stat, 0)


def inc_stat(stat, amount=1):
    return _store.inc(stat, amount)


def inc_many(items: dict):
    _store.inc_many(items)


def snapshot() -> dict:
    return _store.snapshot()


def reset_stats():
    """Drop every counter.  Used between test cases."""
    _store.clear()


def get_process_rss() -> int:
    return psutil.Process(os.getpid()).memory_info().rss


def update_process_memory_stat():
    """Record this process's RSS and a heartbeat timestamp.

    Writes two keys:
      - proc_mem_rss_bytes = RSS in bytes
      - proc_alive_ts = unix timestamp of last sample
    """
    try:
        set_stat("proc_mem_rss_bytes", int(get_process_rss()))
        set_stat("proc_alive_ts", int(time.time()))
    except psutil.Error as _err:
        log.debug(f"update_process_memory_stat: {_err}")


class StatTracker(object):
    """Rolling averages of recent samples, per key."""

    def __init__(self, maxlen=None):
        self.fetch_times = {}
        self.averages = {}
        self.counts = {}
        self.maxlen = 25
        self._lock = threading.Lock()

        if maxlen:
            self.maxlen = maxlen

    def set(self, key, value):
        with self._lock:
            self.counts[key] = self.counts.get(key, 0) + 1
            samples = self.fetch_times.setdefault(key, collections.deque(maxlen=self.maxlen))
            samples.append(value)
            self.averages[key] = round(sum(samples) / len(samples), 3)


class GCStats(object):
    """Background thread that logs the stats snapshot every `interval` seconds."""

    def __init__(self, interval=10):
        self.interval = interval
        self.running = False
        self._stop = threading.Event()
        self._t = threading.Thread(daemon=True, target=self.show, name="gcstats")

    def start(self):
        self.running = True
        self._t.start()

    def stop(self):
        """Stop the thread and log one last snapshot."""
        self.running = False
        self._stop.set()
        if self._t.is_alive():
            self._t.join()
        self.log_snapshot()

    def log_snapshot(self):
        update_process_memory_stat()
        snap = snapshot()
        ok = snap.get('retrieval_ok', 0)
        err = snap.get('retrieval_err', 0)
        if ok + err > 0:
            snap['retrieval_err_rate'] = round(err / (ok + err), 3)
        log.info(f"STATS: {snap}")
        return snap

    def show(self):
        while not self._stop.wait(self.interval):
            self.log_snapshot()
