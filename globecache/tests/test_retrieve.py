"""
test_retrieve.py - Unit tests for Retriever and RetrievalFuture

Tests:
- Retriever state transitions, buffer handling and interruption
- Dedup identity (name + target)
- Future completion, cancellation, callbacks and timeouts
"""

import os
import sys
import threading
import pytest

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from globecache.retrieve import (
    Retriever,
    RetrieverState,
    RetrievalPostProcessor,
    RetrievalFuture,
    RetrievalError,
    RetrievalCancelledError,
    RetrievalInterruptedError,
)


# ============================================================================
# Retriever Tests
# ============================================================================

class TestRetriever:

    def test_successful_run(self):
        r = Retriever("key", fetch=lambda r: b"data")
        assert r.state == RetrieverState.NOT_STARTED
        assert r.run() == b"data"
        assert r.state == RetrieverState.SUCCESSFUL
        assert r.buffer == b"data"
        assert r.fetch_time >= 0

    def test_failed_run(self):
        def fetch(r):
            raise RetrievalError("nope", retriever=r)

        r = Retriever("key", fetch=fetch)
        with pytest.raises(RetrievalError):
            r.run()
        assert r.state == RetrieverState.ERROR
        assert isinstance(r.error, RetrievalError)
        assert r.buffer is None

    def test_non_bytes_result_rejected(self):
        r = Retriever("key", fetch=lambda r: "text")
        with pytest.raises(RetrievalError):
            r.run()
        assert r.state == RetrieverState.ERROR

    def test_bytearray_normalized(self):
        r = Retriever("key", fetch=lambda r: bytearray(b"ab"))
        assert r.run() == b"ab"
        assert isinstance(r.buffer, bytes)

    def test_interrupt_before_run(self):
        r = Retriever("key", fetch=lambda r: b"data")
        r.interrupt()
        with pytest.raises(RetrievalInterruptedError):
            r.run()
        assert r.state == RetrieverState.INTERRUPTED

    def test_interrupt_during_fetch(self):
        started = threading.Event()

        def fetch(r):
            started.set()
            while True:
                r.check_interrupted()
                r._interrupt.wait(0.01)

        r = Retriever("key", fetch=fetch)
        errors = []

        def run():
            try:
                r.run()
            except RetrievalInterruptedError as err:
                errors.append(err)

        t = threading.Thread(target=run)
        t.start()
        assert started.wait(2)
        r.interrupt()
        t.join(2)
        assert not t.is_alive()
        assert len(errors) == 1
        assert r.state == RetrieverState.INTERRUPTED

    def test_no_fetch(self):
        r = Retriever("key")
        with pytest.raises(NotImplementedError):
            r.run()

    def test_name_required(self):
        with pytest.raises(ValueError):
            Retriever("")

    def test_dedup_identity(self):
        a = Retriever("k", target="http://x/1")
        b = Retriever("k", target="http://x/1")
        c = Retriever("k", target="http://x/2")
        assert a == b
        assert hash(a) == hash(b)
        assert a != c
        assert Retriever("k").target == "k"


class TestPostProcessor:

    def test_default_returns_buffer(self):
        r = Retriever("key", fetch=lambda r: b"data")
        r.run()
        assert RetrievalPostProcessor()(r) == b"data"

    def test_none_rejected(self):
        with pytest.raises(ValueError):
            RetrievalPostProcessor()(None)


# ============================================================================
# RetrievalFuture Tests
# ============================================================================

@pytest.fixture
def future():
    return RetrievalFuture(Retriever("key", fetch=lambda r: b"x"), priority=1)


class TestRetrievalFuture:

    def test_result(self, future):
        assert future._set_running()
        assert future.running()
        future._set_result(b"x")
        assert future.done()
        assert future.result(0) == b"x"
        assert future.exception(0) is None

    def test_exception(self, future):
        err = RetrievalError("bad")
        future._set_exception(err)
        assert future.failed()
        assert future.exception(0) is err
        with pytest.raises(RetrievalError):
            future.result(0)

    def test_timeout(self, future):
        with pytest.raises(TimeoutError):
            future.result(timeout=0.05)

    def test_terminal_is_final(self, future):
        assert future._set_result(b"x") is True
        assert future._set_exception(RetrievalError("late")) is False
        assert future.cancel() is False
        assert future.result(0) == b"x"

    def test_cancel_pending_calls_canceller(self):
        calls = []
        f = RetrievalFuture(Retriever("key"), canceller=calls.append)
        assert f.cancel() is True
        assert f.cancelled()
        assert calls == [f]
        with pytest.raises(RetrievalCancelledError):
            f.result(0)

    def test_cancel_running_interrupts(self, future):
        future._set_running()
        assert future.cancel() is True
        assert future.retriever.is_interrupted()

    def test_cancel_running_skips_canceller(self):
        calls = []
        f = RetrievalFuture(Retriever("key"), canceller=calls.append)
        f._set_running()
        assert f.cancel() is True
        assert calls == []
        assert f.retriever.is_interrupted()

    def test_completing_refuses_cancel(self, future):
        future._set_running()
        assert future._set_completing() is True
        assert future.completing()
        assert future.cancel() is False
        assert not future.retriever.is_interrupted()
        assert future._set_result(b"x") is True
        assert future.result(0) == b"x"

    def test_set_completing_after_cancel(self, future):
        future._set_running()
        future.cancel()
        assert future._set_completing() is False
        assert future.cancelled()

    def test_concurrent_cancel_and_result(self):
        # Exactly one of cancel and completion wins each race
        for _ in range(50):
            f = RetrievalFuture(Retriever("key"))
            f._set_running()
            won = []
            t = threading.Thread(target=lambda: won.append(f._set_result(b"x")))
            t.start()
            cancelled = f.cancel()
            t.join()
            assert cancelled != won[0]
            assert f.cancelled() is cancelled

    def test_set_running_after_cancel(self, future):
        future.cancel()
        assert future._set_running() is False

    def test_done_callbacks(self, future):
        seen = []
        future.add_done_callback(lambda f: seen.append(f.state))
        future._set_result(b"x")
        # Registering after completion calls back immediately
        future.add_done_callback(lambda f: seen.append("late"))
        assert seen == [RetrievalFuture.DONE, "late"]

    def test_callback_failure_is_contained(self, future):
        def bad(f):
            raise RuntimeError("boom")
        future.add_done_callback(bad)
        assert future._set_result(b"x") is True
        assert future.done()

    def test_wait_from_other_thread(self, future):
        t = threading.Timer(0.05, future._set_result, args=(b"x",))
        t.start()
        assert future.wait(2) is True
        t.join()
