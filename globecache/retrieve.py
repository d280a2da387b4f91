"""
retrieve.py - Retrieval task contracts

A Retriever is one unit of fetch work: it is named by its resource key,
points at a target (URL, path, ...) and produces a byte buffer or raises.
The fetch itself is supplied either as a callable or by a subclass
overriding _fetch().

A post-processor is any callable taking the finished Retriever and
returning the bytes the caller should see (or None).  It runs once per
completed task, on success and on failure, so it can also record the
failure (e.g. in an AbsentResourceList).

A RetrievalFuture is the caller's handle on a submitted Retriever.
"""

import threading
import time
from enum import Enum
from typing import Callable, Optional

import logging
log = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================

class RetrievalError(Exception):
    """A retrieval failed: I/O error, timeout, bad status or bad content."""

    def __init__(self, message, retriever=None, response_code=None):
        super().__init__(message)
        self.retriever = retriever
        self.response_code = response_code


class ResourceAbsentError(RetrievalError):
    """The resource failed recently and is suppressed by the absent list."""


class RetrievalCancelledError(RetrievalError):
    """The retrieval was cancelled before it delivered a result."""


class RetrievalInterruptedError(RetrievalError):
    """Blocking I/O was aborted by Retriever.interrupt()."""


# ============================================================================
# Retriever
# ============================================================================

class RetrieverState(Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    CONNECTING = "connecting"
    READING = "reading"
    SUCCESSFUL = "successful"
    ERROR = "error"
    INTERRUPTED = "interrupted"


class Retriever(object):

    def __init__(self, name, target=None, fetch: Optional[Callable] = None,
                 post_processor: Optional[Callable] = None,
                 connect_timeout=None, read_timeout=None):
        if not name:
            raise ValueError("Retriever name is required")
        self.name = str(name)
        self.target = target if target is not None else self.name
        self._fetch_func = fetch
        self.post_processor = post_processor
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

        self.state = RetrieverState.NOT_STARTED
        self.buffer = None
        self.content_type = None
        self.response_code = None
        self.error = None

        self.submit_time = 0.0
        self.begin_time = 0.0
        self.end_time = 0.0

        self._interrupt = threading.Event()

    @property
    def dedup_key(self):
        return (self.name, str(self.target))

    def __eq__(self, other):
        if not isinstance(other, Retriever):
            return NotImplemented
        return self.dedup_key == other.dedup_key

    def __hash__(self):
        return hash(self.dedup_key)

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r}, state={self.state.value})"

    @property
    def fetch_time(self):
        if not self.begin_time or not self.end_time:
            return 0.0
        return self.end_time - self.begin_time

    def interrupt(self):
        """Ask blocking I/O to stop.  Subclasses also close open handles."""
        self._interrupt.set()

    def is_interrupted(self):
        return self._interrupt.is_set()

    def check_interrupted(self):
        if self._interrupt.is_set():
            raise RetrievalInterruptedError(f"{self.name} interrupted", retriever=self)

    def _fetch(self):
        if self._fetch_func is None:
            raise NotImplementedError(f"{type(self).__name__} has no fetch")
        return self._fetch_func(self)

    def run(self):
        """Perform the fetch.  Errors propagate after the state is recorded."""
        self.begin_time = time.monotonic()
        self.state = RetrieverState.STARTED
        try:
            self.check_interrupted()
            data = self._fetch()
            self.check_interrupted()
        except RetrievalInterruptedError as err:
            self.state = RetrieverState.INTERRUPTED
            self.error = err
            raise
        except Exception as err:
            self.state = RetrieverState.INTERRUPTED if self.is_interrupted() else RetrieverState.ERROR
            self.error = err
            raise
        finally:
            self.end_time = time.monotonic()

        if data is not None and not isinstance(data, (bytes, bytearray, memoryview)):
            self.state = RetrieverState.ERROR
            self.error = RetrievalError(f"{self.name} produced {type(data).__name__}, not bytes", retriever=self)
            raise self.error

        self.buffer = bytes(data) if data is not None else None
        self.state = RetrieverState.SUCCESSFUL
        return self.buffer


class RetrievalPostProcessor(object):
    """Base for completion callbacks.  Subclasses override run()."""

    def __call__(self, retriever):
        if retriever is None:
            raise ValueError("Retriever is None")
        return self.run(retriever)

    def run(self, retriever):
        return retriever.buffer


# ============================================================================
# RetrievalFuture
# ============================================================================

class RetrievalFuture(object):
    PENDING = "pending"
    RUNNING = "running"
    # Post-processing underway; no longer cancellable
    COMPLETING = "completing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    _TERMINAL = (DONE, FAILED, CANCELLED)

    def __init__(self, retriever, priority=0.0, canceller=None):
        self._retriever = retriever
        self.priority = priority
        self._state = self.PENDING
        self._result = None
        self._exception = None
        self._cond = threading.Condition()
        self._callbacks = []
        # Called with this future when a pending task is cancelled
        self._canceller = canceller
        # Current heap entry while queued; owned by RetrievalService
        self._entry = None

    def __repr__(self):
        return f"RetrievalFuture({self._retriever!r}, priority={self.priority}, state={self._state})"

    @property
    def retriever(self):
        return self._retriever

    @property
    def state(self):
        return self._state

    def done(self):
        """True once the future has reached any terminal state."""
        return self._state in self._TERMINAL

    def running(self):
        return self._state in (self.RUNNING, self.COMPLETING)

    def completing(self):
        return self._state == self.COMPLETING

    def cancelled(self):
        return self._state == self.CANCELLED

    def failed(self):
        return self._state == self.FAILED

    # -----------------------------
    # Transitions
    # -----------------------------
    def _set_running(self):
        with self._cond:
            if self._state != self.PENDING:
                return False
            self._state = self.RUNNING
            return True

    def _set_completing(self):
        """Claim the running task for post-processing.  False if it was cancelled."""
        with self._cond:
            if self._state != self.RUNNING:
                return False
            self._state = self.COMPLETING
            return True

    def _transition(self, state, result=None, exception=None, allowed=None):
        """Move to a terminal state and run the done callbacks.

        With `allowed`, only move from one of those states.  Returns the
        state observed before the move, or None if it was refused.
        """
        with self._cond:
            prev = self._state
            if prev in self._TERMINAL:
                return None
            if allowed is not None and prev not in allowed:
                return None
            self._state = state
            self._result = result
            self._exception = exception
            self._cond.notify_all()
            callbacks, self._callbacks = self._callbacks, []

        for fn in callbacks:
            self._invoke_callback(fn)
        return prev

    def _finish(self, state, result=None, exception=None):
        return self._transition(state, result, exception) is not None

    def _set_result(self, result):
        return self._finish(self.DONE, result=result)

    def _set_exception(self, exception):
        return self._finish(self.FAILED, exception=exception)

    def _set_cancelled(self):
        return self._finish(self.CANCELLED)

    def _invoke_callback(self, fn):
        try:
            fn(self)
        except Exception as err:
            log.warning(f"Done callback for {self._retriever} failed: {err}")

    def cancel(self):
        """Cancel the task.

        Returns False if it had already finished or is being post-processed.
        """
        state = self._transition(self.CANCELLED, allowed=(self.PENDING, self.RUNNING))
        if state is None:
            return False

        if state == self.PENDING:
            if self._canceller is not None:
                self._canceller(self)
        else:
            # Best effort: break the worker out of blocking I/O
            try:
                self._retriever.interrupt()
            except Exception as err:
                log.debug(f"Interrupt of {self._retriever} failed: {err}")
        return True

    # -----------------------------
    # Waiting
    # -----------------------------
    def wait(self, timeout=None):
        with self._cond:
            return self._cond.wait_for(self.done, timeout=timeout)

    def result(self, timeout=None):
        if not self.wait(timeout):
            raise TimeoutError(f"{self._retriever.name} not done after {timeout}s")
        if self._state == self.CANCELLED:
            raise RetrievalCancelledError(f"{self._retriever.name} was cancelled", retriever=self._retriever)
        if self._state == self.FAILED:
            raise self._exception
        return self._result

    def exception(self, timeout=None):
        if not self.wait(timeout):
            raise TimeoutError(f"{self._retriever.name} not done after {timeout}s")
        if self._state == self.CANCELLED:
            raise RetrievalCancelledError(f"{self._retriever.name} was cancelled", retriever=self._retriever)
        return self._exception

    def add_done_callback(self, fn):
        with self._cond:
            if self._state not in self._TERMINAL:
                self._callbacks.append(fn)
                return
        self._invoke_callback(fn)
