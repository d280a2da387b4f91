"""
postprocess.py - Completion callbacks that persist retrieved data

CachingPostProcessor is the usual end of a retrieval: on success the bytes
are written to the FileStore and/or decoded into a MemoryCache, and the key
is cleared from the AbsentResourceList; on failure the key is marked absent
so callers back off.

SessionCachePostProcessor and the retrieve_session_data helpers cover
per-session documents (capabilities and similar metadata) kept in a
SessionCache.
"""

from globecache.gcstats import inc_stat
from globecache.retrieve import RetrievalPostProcessor, RetrieverState
from globecache.retrievers import HTTPRetriever

import logging
log = logging.getLogger(__name__)


def _succeeded(retriever, validator=None):
    """Return None if the retrieval produced usable content, else a reason."""
    if retriever.state != RetrieverState.SUCCESSFUL:
        return f"retrieval of {retriever.name} failed ({retriever.state.value}): {retriever.error}"
    if not retriever.buffer:
        return f"retrieval of {retriever.name} returned no content"
    if validator is not None and not validator(retriever.buffer):
        return f"retrieval of {retriever.name} returned invalid content"
    return None


class CachingPostProcessor(RetrievalPostProcessor):

    def __init__(self, store=None, path=None, memory_cache=None, cache_key=None,
                 decoder=None, absent_list=None, validator=None):
        if store is not None and not path:
            raise ValueError("A store path is required when a store is given")
        if memory_cache is not None and cache_key is None:
            raise ValueError("A cache key is required when a memory cache is given")
        self.store = store
        self.path = path
        self.memory_cache = memory_cache
        self.cache_key = cache_key
        self.decoder = decoder
        self.absent_list = absent_list
        self.validator = validator

    def __repr__(self):
        return f"CachingPostProcessor(path={self.path!r}, cache_key={self.cache_key!r})"

    def run(self, retriever):
        reason = _succeeded(retriever, self.validator)
        if reason is not None:
            log.debug(reason)
            self.on_retrieval_failed(retriever)
            return None
        return self.on_retrieval_succeeded(retriever)

    def on_retrieval_succeeded(self, retriever):
        data = retriever.buffer

        if self.store is not None:
            self.store.write_bytes(self.path, data)
            log.debug(f"Saved {retriever.name} to store as {self.path}")

        if self.memory_cache is not None:
            obj = self.decoder(data) if self.decoder is not None else data
            if obj is not None:
                self.memory_cache.put(self.cache_key, obj, len(data))

        if self.absent_list is not None:
            self.absent_list.unmark_resource_absent(retriever.name)
        return data

    def on_retrieval_failed(self, retriever):
        inc_stat('postprocess_failed')
        if self.absent_list is not None:
            self.absent_list.mark_resource_absent(retriever.name)


class SessionCachePostProcessor(RetrievalPostProcessor):
    """Put a successful retrieval into a SessionCache.

    `callback(self)` is invoked after every completion so listeners can
    refresh whatever depends on the cached document.
    """

    def __init__(self, cache, cache_key, absent_list, resource_id, callback=None, name=None):
        if cache is None:
            raise ValueError("Cache is None")
        if cache_key is None:
            raise ValueError("Cache key is None")
        self.cache = cache
        self.cache_key = cache_key
        self.absent_list = absent_list
        self.resource_id = resource_id
        self.callback = callback
        self.name = name

    def __repr__(self):
        return self.name or f"SessionCachePostProcessor({self.cache_key!r})"

    def run(self, retriever):
        reason = _succeeded(retriever)
        if reason is None:
            if self.absent_list is not None:
                self.absent_list.unmark_resource_absent(self.resource_id)
            self.cache.put(self.cache_key, retriever.buffer)
        else:
            if self.absent_list is not None:
                self.absent_list.mark_resource_absent(self.resource_id)
            log.error(reason)

        self._signal_complete()
        return retriever.buffer

    def _signal_complete(self):
        if self.callback is None:
            return
        try:
            self.callback(self)
        except Exception as err:
            log.warning(f"{self}: completion callback failed: {err}")


def retrieve_session_data(service, url, cache, cache_key, absent_list, resource_id,
                          callback=None, session=None, priority=0.0):
    """Submit a retrieval of `url` whose result lands in `cache` under `cache_key`.

    Returns the RetrievalFuture, or None when the resource is marked absent.
    """
    if not url:
        raise ValueError("URL is required")
    if cache is None:
        raise ValueError("Cache is None")
    if cache_key is None:
        raise ValueError("Cache key is None")

    if absent_list is not None and absent_list.is_resource_absent(resource_id):
        log.debug(f"{url} is marked absent, not retrieving")
        return None

    post_processor = SessionCachePostProcessor(cache, cache_key, absent_list, resource_id,
                                               callback=callback, name=url)
    retriever = HTTPRetriever(url, post_processor=post_processor, session=session)
    return service.run_retriever(retriever, priority)


def get_or_retrieve_session_data(service, url, cache, cache_key, absent_list, resource_id,
                                 callback=None, session=None, priority=0.0):
    """Return the cached document if present, otherwise start retrieving it and return None."""
    if cache is None:
        raise ValueError("Cache is None")
    if cache_key is None:
        raise ValueError("Cache key is None")

    data = cache.get(cache_key)
    if data is not None:
        return data

    retrieve_session_data(service, url, cache, cache_key, absent_list, resource_id,
                          callback=callback, session=session, priority=priority)
    return None
