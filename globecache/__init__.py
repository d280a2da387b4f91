from globecache.version import __version__
from globecache.absent import AbsentResourceList
from globecache.memcache import MemoryCache, MemoryCacheSet, SessionCache, MemoryPressureMonitor
from globecache.filestore import FileStore, FileStoreFilter, AllFilesFilter, SuffixFilter
from globecache.retrieve import (
    Retriever,
    RetrieverState,
    RetrievalPostProcessor,
    RetrievalFuture,
    RetrievalError,
    ResourceAbsentError,
    RetrievalCancelledError,
    RetrievalInterruptedError,
)
from globecache.retrievers import HTTPRetriever, FileRetriever, create_http_session
from globecache.postprocess import (
    CachingPostProcessor,
    SessionCachePostProcessor,
    retrieve_session_data,
    get_or_retrieve_session_data,
)
from globecache.retrieval_service import RetrievalService
