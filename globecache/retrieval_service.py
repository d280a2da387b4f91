"""
retrieval_service.py - Priority scheduling of retrievals over a worker pool

Retrievers are queued by (priority desc, submission order asc) and run on a
bounded pool of worker threads.  Equivalent retrievers (same name and
target) are coalesced while one is queued or running: the second caller
gets the first caller's future.

Usage:
    service = RetrievalService(pool_size=8, absent_list=absent)
    future = service.run_retriever(HTTPRetriever(url, post_processor=pp), priority=5)
    data = future.result(timeout=30)
    ...
    service.shutdown()
"""

import heapq
import itertools
import numbers
import threading
import time

from globecache.gcconfig import CFG
from globecache.gcstats import StatTracker, inc_stat
from globecache.retrieve import (
    RetrievalError,
    RetrievalFuture,
    ResourceAbsentError,
)

import logging
log = logging.getLogger(__name__)


class RetrievalService(object):

    def __init__(self, pool_size=None, absent_list=None, stale_request_limit=None, name="retrieval"):
        if pool_size is None:
            pool_size = int(CFG.retrieval.pool_size)
        if stale_request_limit is None:
            stale_request_limit = float(CFG.retrieval.stale_request_limit)
        self._check_pool_size(pool_size)
        if stale_request_limit < 0:
            raise ValueError(f"stale_request_limit must not be negative, got {stale_request_limit}")

        self.name = name
        self.absent_list = absent_list
        # 0 disables the stale check
        self.stale_request_limit = stale_request_limit

        self._cond = threading.Condition()
        self._queue = []
        self._seq = itertools.count()
        self._in_flight = {}
        self._num_pending = 0
        self._num_active = 0

        self._pool_size = int(pool_size)
        self._workers = set()
        self._worker_ids = itertools.count()
        self._available = True

        self.fetch_stats = StatTracker()

        with self._cond:
            self._grow_pool()
        log.info(f"{self.name}: started with {self._pool_size} workers")

    def __repr__(self):
        return (f"RetrievalService({self.name!r}, workers={self._pool_size}, "
                f"pending={self._num_pending}, active={self._num_active})")

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.shutdown(wait=True)

    @staticmethod
    def _check_pool_size(size):
        if isinstance(size, bool) or not isinstance(size, numbers.Integral) or size < 1:
            raise ValueError(f"Pool size must be a positive integer, got {size!r}")

    # -----------------------------
    # Pool management
    # -----------------------------
    def _grow_pool(self):
        # Caller holds self._cond
        while self._available and len(self._workers) < self._pool_size:
            idx = next(self._worker_ids)
            t = threading.Thread(target=self._worker, args=(idx,), daemon=True,
                                 name=f"{self.name}-{idx}")
            self._workers.add(t)
            t.start()

    def get_retriever_pool_size(self):
        return self._pool_size

    def set_retriever_pool_size(self, size):
        self._check_pool_size(size)
        with self._cond:
            if not self._available:
                raise RuntimeError(f"{self.name}: cannot resize after shutdown")
            old = self._pool_size
            self._pool_size = int(size)
            self._grow_pool()
            # Wake idle workers so surplus ones can retire
            self._cond.notify_all()
        log.info(f"{self.name}: pool size {old} -> {size}")

    def is_available(self):
        return self._available

    # -----------------------------
    # Introspection
    # -----------------------------
    def contains(self, retriever):
        if retriever is None:
            raise ValueError("Retriever is None")
        with self._cond:
            future = self._in_flight.get(retriever.dedup_key)
            return future is not None and not future.done()

    def has_active_tasks(self):
        with self._cond:
            return (self._num_pending + self._num_active) > 0

    def get_num_retrievers_pending(self):
        with self._cond:
            return self._num_pending

    def get_num_retrievers_active(self):
        with self._cond:
            return self._num_active

    # -----------------------------
    # Submission
    # -----------------------------
    def _push(self, future):
        # Caller holds self._cond.  Any previous heap entry for this future
        # goes stale and is skipped when popped.
        entry = [-future.priority, next(self._seq), future]
        future._entry = entry
        heapq.heappush(self._queue, entry)

    def _drop_in_flight(self, future):
        # Caller holds self._cond
        key = future.retriever.dedup_key
        if self._in_flight.get(key) is future:
            del self._in_flight[key]

    def run_retriever(self, retriever, priority=0.0):
        if retriever is None:
            raise ValueError("Retriever is None")
        if isinstance(priority, bool) or not isinstance(priority, numbers.Real):
            raise ValueError(f"Priority must be a number, got {priority!r}")
        if not self._available:
            raise RuntimeError(f"{self.name}: cannot schedule retrievals after shutdown")

        if self.absent_list is not None and self.absent_list.is_resource_absent(retriever.name):
            log.debug(f"{self.name}: {retriever.name} is marked absent, not retrieving")
            inc_stat('retrieval_absent_skip')
            future = RetrievalFuture(retriever, priority)
            future._set_exception(ResourceAbsentError(
                f"{retriever.name} is marked absent", retriever=retriever))
            return future

        key = retriever.dedup_key
        with self._cond:
            if not self._available:
                raise RuntimeError(f"{self.name}: cannot schedule retrievals after shutdown")

            existing = self._in_flight.get(key)
            if existing is not None and not existing.done():
                inc_stat('retrieval_deduped')
                if existing.state == RetrievalFuture.PENDING and priority > existing.priority:
                    log.debug(f"{self.name}: raising priority of {retriever.name} "
                              f"{existing.priority} -> {priority}")
                    existing.priority = priority
                    self._push(existing)
                    self._cond.notify()
                return existing

            future = RetrievalFuture(retriever, priority, canceller=self._on_cancel)
            retriever.submit_time = time.monotonic()
            self._in_flight[key] = future
            self._num_pending += 1
            self._push(future)
            self._cond.notify()

        inc_stat('retrieval_submitted')
        return future

    def _on_cancel(self, future):
        """Remove a cancelled, still-queued future from the bookkeeping."""
        with self._cond:
            if future._entry is None:
                # A worker already took it off the queue
                return
            future._entry = None
            self._num_pending -= 1
            self._drop_in_flight(future)
            self._cond.notify_all()
        inc_stat('retrieval_cancelled')
        log.debug(f"{self.name}: cancelled queued {future.retriever.name}")

    # -----------------------------
    # Workers
    # -----------------------------
    def _should_exit(self):
        return not self._available or len(self._workers) > self._pool_size

    def _pop(self, stale):
        """Take the next runnable future off the queue.  Caller holds self._cond.

        Requests that waited past the stale limit are appended to `stale`
        and None is returned so the caller can finish them outside the lock.
        """
        while self._queue:
            entry = heapq.heappop(self._queue)
            future = entry[2]
            if future._entry is not entry:
                continue
            future._entry = None
            self._num_pending -= 1

            waited = time.monotonic() - future.retriever.submit_time
            if self.stale_request_limit and waited > self.stale_request_limit:
                self._drop_in_flight(future)
                stale.append(future)
                return None

            if not future._set_running():
                # Cancelled between queueing and now
                self._drop_in_flight(future)
                continue

            self._num_active += 1
            return future
        return None

    def _worker(self, idx):
        log.debug(f"{self.name}: worker {idx} started")
        me = threading.current_thread()
        while True:
            stale = []
            future = None
            with self._cond:
                while future is None and not stale:
                    if self._should_exit():
                        break
                    if not self._queue:
                        self._cond.wait()
                        continue
                    future = self._pop(stale)
                exiting = future is None and not stale
                if exiting:
                    self._workers.discard(me)
                    self._cond.notify_all()

            for old in stale:
                if old._set_cancelled():
                    inc_stat('retrieval_stale')
                    log.debug(f"{self.name}: dropped stale request {old.retriever.name}")

            if exiting:
                log.debug(f"{self.name}: worker {idx} exiting")
                return

            if future is not None:
                try:
                    self._execute(future)
                except Exception as err:
                    log.error(f"{self.name}: unexpected error running {future.retriever}: {err}")
                    future._set_exception(RetrievalError(str(err), retriever=future.retriever))

    def _execute(self, future):
        retriever = future.retriever
        try:
            error = None
            try:
                retriever.run()
            except Exception as err:
                error = err

            if not future._set_completing():
                # Cancelled while running: no post-processing, no result
                inc_stat('retrieval_cancelled')
                log.debug(f"{self.name}: {retriever.name} cancelled while running")
                return

            result = retriever.buffer
            if retriever.post_processor is not None:
                try:
                    result = retriever.post_processor(retriever)
                except Exception as err:
                    log.error(f"{self.name}: post-processor failed for {retriever.name}: {err}")
                    if error is None:
                        error = err

            self.fetch_stats.set(type(retriever).__name__, retriever.fetch_time)

            if error is None:
                if future._set_result(result):
                    inc_stat('retrieval_ok')
                return

            if not isinstance(error, RetrievalError):
                wrapped = RetrievalError(f"{retriever.name} failed: {error}", retriever=retriever)
                wrapped.__cause__ = error
                error = wrapped
            log.warning(f"{self.name}: failed retrieving {retriever.name}: {error}")
            if future._set_exception(error):
                inc_stat('retrieval_err')
        finally:
            with self._cond:
                self._num_active -= 1
                self._drop_in_flight(future)
                self._cond.notify_all()

    # -----------------------------
    # Shutdown
    # -----------------------------
    def shutdown(self, immediately=False, wait=False):
        """Stop accepting work and discard queued retrievals.

        With `immediately`, running retrievals are cancelled and interrupted
        too; those already post-processing still finish.  Otherwise running
        retrievals are allowed to finish.  With `wait`, block until every
        worker has exited.
        """
        drained = []
        with self._cond:
            self._available = False
            while self._queue:
                entry = heapq.heappop(self._queue)
                future = entry[2]
                if future._entry is not entry:
                    continue
                future._entry = None
                self._num_pending -= 1
                self._drop_in_flight(future)
                drained.append(future)
            running = [f for f in self._in_flight.values()
                       if f.running() and not f.completing()]
            workers = list(self._workers)
            self._cond.notify_all()

        for future in drained:
            future._set_cancelled()
        if drained:
            inc_stat('retrieval_cancelled', len(drained))

        if immediately:
            for future in running:
                future.cancel()

        log.info(f"{self.name}: shutdown (immediately={immediately}), "
                 f"discarded {len(drained)} queued, {len(running)} running")

        if wait:
            me = threading.current_thread()
            for t in workers:
                if t is not me:
                    t.join()
