"""
test_postprocess.py - Unit tests for the caching post-processors

Tests:
- CachingPostProcessor persisting to FileStore and MemoryCache
- Absent-list marking on failure and clearing on success
- SessionCachePostProcessor and the session data helpers
"""

import os
import sys
import time
import pytest
from unittest import mock

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from globecache.absent import AbsentResourceList
from globecache.filestore import FileStore
from globecache.memcache import MemoryCache, SessionCache
from globecache.postprocess import (
    CachingPostProcessor,
    SessionCachePostProcessor,
    retrieve_session_data,
    get_or_retrieve_session_data,
)
from globecache.retrieve import Retriever, RetrievalError, ResourceAbsentError
from globecache.retrieval_service import RetrievalService


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def absent():
    return AbsentResourceList(max_list_size=10, max_tries=1,
                              min_check_interval=10, try_again_interval=60)


@pytest.fixture
def store(tmp_path):
    return FileStore(tmp_path / "cache")


@pytest.fixture
def service(absent):
    svc = RetrievalService(pool_size=2, absent_list=absent, stale_request_limit=0)
    yield svc
    svc.shutdown(immediately=True, wait=True)


def finished(name, data=None, error=None):
    """Run a retriever synchronously and return it in its final state."""
    def fetch(r):
        if error is not None:
            raise error
        return data
    r = Retriever(name, fetch=fetch)
    try:
        r.run()
    except RetrievalError:
        pass
    return r


# ============================================================================
# CachingPostProcessor Tests
# ============================================================================

class TestCachingPostProcessor:

    def test_success_persists(self, store, absent):
        cache = MemoryCache(capacity=1000)
        pp = CachingPostProcessor(store=store, path="imagery/1/2/3.jpg",
                                  memory_cache=cache, cache_key="tile-3",
                                  decoder=lambda b: b.upper(), absent_list=absent)
        absent.mark_resource_absent("tile")

        assert pp(finished("tile", b"jpeg")) == b"jpeg"
        assert store.read_bytes("imagery/1/2/3.jpg") == b"jpeg"
        assert cache.get("tile-3") == b"JPEG"
        assert cache.get_used_capacity() == 4
        assert not absent.is_resource_absent("tile")

    def test_failure_marks_absent(self, store, absent):
        pp = CachingPostProcessor(store=store, path="a.jpg", absent_list=absent)
        assert pp(finished("tile", error=RetrievalError("404"))) is None
        assert absent.is_resource_absent("tile")
        assert not store.exists("a.jpg")

    def test_empty_buffer_is_failure(self, store, absent):
        pp = CachingPostProcessor(store=store, path="a.jpg", absent_list=absent)
        assert pp(finished("tile", b"")) is None
        assert absent.is_resource_absent("tile")

    def test_validator_rejects(self, store, absent):
        pp = CachingPostProcessor(store=store, path="a.xml", absent_list=absent,
                                  validator=lambda b: b.startswith(b"<"))
        assert pp(finished("doc", b"<html>error page")) == b"<html>error page"
        assert pp(finished("doc2", b"not xml")) is None
        assert absent.is_resource_absent("doc2")

    def test_memory_only(self):
        cache = MemoryCache(capacity=1000)
        pp = CachingPostProcessor(memory_cache=cache, cache_key="k")
        pp(finished("tile", b"abc"))
        assert cache.get("k") == b"abc"

    def test_argument_validation(self, store):
        with pytest.raises(ValueError):
            CachingPostProcessor(store=store)
        with pytest.raises(ValueError):
            CachingPostProcessor(memory_cache=MemoryCache(capacity=10))

    def test_end_to_end(self, service, store, absent):
        """Failed retrieval marks absent; the next submit is suppressed."""
        def fetch(r):
            raise RetrievalError("HTTP 404", retriever=r, response_code=404)

        pp = CachingPostProcessor(store=store, path="missing.jpg", absent_list=absent)
        future = service.run_retriever(Retriever("missing", fetch=fetch, post_processor=pp))
        with pytest.raises(RetrievalError):
            future.result(2)
        assert absent.is_resource_absent("missing")

        again = service.run_retriever(Retriever("missing", fetch=fetch, post_processor=pp))
        with pytest.raises(ResourceAbsentError):
            again.result(0)

        ok = CachingPostProcessor(store=store, path="found.jpg", absent_list=absent)
        future = service.run_retriever(Retriever("found", fetch=lambda r: b"img", post_processor=ok))
        assert future.result(2) == b"img"
        assert store.read_bytes("found.jpg") == b"img"


# ============================================================================
# SessionCachePostProcessor Tests
# ============================================================================

class TestSessionCachePostProcessor:

    def test_success(self, absent):
        cache = SessionCache(capacity=4)
        calls = []
        pp = SessionCachePostProcessor(cache, "caps", absent, "caps-url", callback=calls.append)
        absent.mark_resource_absent("caps-url")

        pp(finished("http://x/caps", b"<caps/>"))
        assert cache.get("caps") == b"<caps/>"
        assert not absent.is_resource_absent("caps-url")
        assert calls == [pp]

    def test_failure(self, absent):
        cache = SessionCache(capacity=4)
        calls = []
        pp = SessionCachePostProcessor(cache, "caps", absent, "caps-url", callback=calls.append)

        pp(finished("http://x/caps", error=RetrievalError("timeout")))
        assert cache.get("caps") is None
        assert absent.is_resource_absent("caps-url")
        assert calls == [pp]

    def test_callback_failure_contained(self, absent):
        def bad(pp):
            raise RuntimeError("listener broke")
        pp = SessionCachePostProcessor(SessionCache(capacity=4), "caps", absent, "id", callback=bad)
        assert pp(finished("http://x/caps", b"doc")) == b"doc"

    def test_arguments(self, absent):
        with pytest.raises(ValueError):
            SessionCachePostProcessor(None, "k", absent, "id")
        with pytest.raises(ValueError):
            SessionCachePostProcessor(SessionCache(capacity=1), None, absent, "id")


class TestSessionHelpers:

    def _session(self, body=b"<caps/>"):
        resp = mock.Mock()
        resp.status_code = 200
        resp.headers = {}
        resp.iter_content.return_value = iter([body])
        session = mock.Mock()
        session.get.return_value = resp
        return session

    def test_retrieve_session_data(self, service, absent):
        cache = SessionCache(capacity=4)
        future = retrieve_session_data(service, "http://x/caps", cache, "caps", absent, "caps-id",
                                       session=self._session())
        assert future.result(2) == b"<caps/>"
        assert cache.get("caps") == b"<caps/>"

    def test_absent_not_submitted(self, service, absent):
        absent.mark_resource_absent("caps-id")
        session = self._session()
        cache = SessionCache(capacity=4)
        assert retrieve_session_data(service, "http://x/caps", cache, "caps", absent, "caps-id",
                                     session=session) is None
        session.get.assert_not_called()

    def test_get_or_retrieve_cached(self, service, absent):
        cache = SessionCache(capacity=4)
        cache.put("caps", b"cached")
        session = self._session()
        assert get_or_retrieve_session_data(service, "http://x/caps", cache, "caps", absent,
                                            "caps-id", session=session) == b"cached"
        session.get.assert_not_called()

    def test_get_or_retrieve_starts_fetch(self, service, absent):
        cache = SessionCache(capacity=4)
        calls = []
        data = get_or_retrieve_session_data(service, "http://x/caps", cache, "caps", absent,
                                            "caps-id", callback=calls.append,
                                            session=self._session())
        assert data is None
        deadline = time.monotonic() + 2
        while not calls and time.monotonic() < deadline:
            time.sleep(0.01)
        assert cache.get("caps") == b"<caps/>"
        assert len(calls) == 1

    def test_url_required(self, service, absent):
        with pytest.raises(ValueError):
            retrieve_session_data(service, "", SessionCache(capacity=1), "k", absent, "id")
