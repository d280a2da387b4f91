"""
retrievers.py - Concrete retrievers for HTTP and local files
"""

import os
import threading

import requests

from globecache.gcconfig import CFG
from globecache.gcstats import inc_stat, inc_many
from globecache.retrieve import (
    Retriever,
    RetrieverState,
    RetrievalError,
    RetrievalInterruptedError,
)
from globecache.utils.constants import READ_CHUNK_SIZE

import logging
log = logging.getLogger(__name__)


def create_http_session(pool_size=10):
    """Create a requests session whose connection pool never blocks."""
    session = requests.Session()
    # IMPORTANT: pool_block=False prevents indefinite blocking when the
    # connection pool is exhausted.  A ConnectionError is raised instead and
    # surfaces as an ordinary retrieval failure.
    adapter = requests.adapters.HTTPAdapter(
        pool_connections=pool_size,
        pool_maxsize=pool_size,
        max_retries=0,
        pool_block=False,
    )
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    session.headers.update({"user-agent": str(CFG.retrieval.user_agent)})
    log.debug(f"Created requests session (pool_size={pool_size}, pool_block=False)")
    return session


_thread_sessions = threading.local()


def _thread_session():
    # One session per worker thread avoids shared-state contention
    session = getattr(_thread_sessions, 'session', None)
    if session is None:
        pool_size = max(4, int(CFG.retrieval.pool_size))
        session = create_http_session(pool_size=pool_size)
        _thread_sessions.session = session
    return session


class HTTPRetriever(Retriever):
    """Fetch a URL with requests, streaming the body so it can be interrupted."""

    def __init__(self, url, post_processor=None, session=None, headers=None,
                 connect_timeout=None, read_timeout=None, name=None):
        if not url:
            raise ValueError("URL is required")
        if connect_timeout is None:
            connect_timeout = float(CFG.retrieval.connect_timeout)
        if read_timeout is None:
            read_timeout = float(CFG.retrieval.read_timeout)
        super().__init__(
            name or url,
            target=url,
            post_processor=post_processor,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )
        self.url = url
        self.session = session
        self.headers = dict(headers or {})
        self._resp = None
        self._resp_lock = threading.Lock()

    def interrupt(self):
        super().interrupt()
        # Closing the response unblocks a read in progress
        with self._resp_lock:
            resp = self._resp
        if resp is not None:
            try:
                resp.close()
            except Exception as err:
                log.debug(f"Closing response for {self.url} failed: {err}")

    def _fetch(self):
        session = self.session or _thread_session()
        log.debug(f"Requesting {self.url} ..")

        self.state = RetrieverState.CONNECTING
        try:
            resp = session.get(
                self.url,
                headers=self.headers,
                timeout=(self.connect_timeout, self.read_timeout),
                stream=True,
            )
        except requests.exceptions.Timeout as err:
            inc_stat('http_timeout')
            raise RetrievalError(f"Timed out connecting to {self.url}: {err}", retriever=self) from err
        except requests.exceptions.RequestException as err:
            inc_stat('http_conn_err')
            raise RetrievalError(f"Failed to connect to {self.url}: {err}", retriever=self) from err

        with self._resp_lock:
            self._resp = resp
        try:
            self.response_code = resp.status_code
            self.content_type = resp.headers.get('content-type')

            if not 200 <= resp.status_code < 300:
                inc_many({f"http_{resp.status_code}": 1, "http_err": 1})
                raise RetrievalError(
                    f"Failed with status {resp.status_code} to get {self.url}",
                    retriever=self,
                    response_code=resp.status_code,
                )

            self.state = RetrieverState.READING
            data = self._read_body(resp)

            # Content-Length counts encoded bytes; only compare plain bodies
            expected = resp.headers.get('content-length')
            encoded = resp.headers.get('content-encoding')
            if (expected is not None and not encoded
                    and expected.isdigit() and int(expected) != len(data)):
                raise RetrievalError(
                    f"Truncated response from {self.url}: {len(data)} of {expected} bytes",
                    retriever=self,
                    response_code=resp.status_code,
                )
            inc_many({"http_ok": 1, "bytes_dl": len(data)})
            return data
        finally:
            with self._resp_lock:
                self._resp = None
            resp.close()

    def _read_body(self, resp):
        parts = []
        try:
            for part in resp.iter_content(chunk_size=READ_CHUNK_SIZE):
                self.check_interrupted()
                if part:
                    parts.append(part)
        except RetrievalInterruptedError:
            raise
        except requests.exceptions.RequestException as err:
            if self.is_interrupted():
                raise RetrievalInterruptedError(f"{self.url} interrupted", retriever=self) from err
            inc_stat('http_read_err')
            raise RetrievalError(f"Failed reading {self.url}: {err}", retriever=self) from err
        except (OSError, AttributeError, ValueError) as err:
            # A response closed underneath iter_content surfaces as one of these
            if self.is_interrupted():
                raise RetrievalInterruptedError(f"{self.url} interrupted", retriever=self) from err
            raise RetrievalError(f"Failed reading {self.url}: {err}", retriever=self) from err
        self.check_interrupted()
        return b''.join(parts)


class FileRetriever(Retriever):
    """Read a local file in chunks."""

    def __init__(self, path, post_processor=None, chunk_size=READ_CHUNK_SIZE, name=None):
        if not path:
            raise ValueError("Path is required")
        path = os.fspath(path)
        super().__init__(name or path, target=path, post_processor=post_processor)
        self.path = path
        self.chunk_size = chunk_size

    def _fetch(self):
        self.state = RetrieverState.READING
        parts = []
        try:
            with open(self.path, 'rb') as h:
                while True:
                    self.check_interrupted()
                    part = h.read(self.chunk_size)
                    if not part:
                        break
                    parts.append(part)
        except FileNotFoundError as err:
            raise RetrievalError(f"No such file {self.path}", retriever=self) from err
        except (PermissionError, IsADirectoryError) as err:
            raise RetrievalError(f"Cannot read {self.path}: {err}", retriever=self) from err
        return b''.join(parts)
