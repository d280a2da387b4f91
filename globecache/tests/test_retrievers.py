"""
test_retrievers.py - Unit tests for HTTPRetriever and FileRetriever

HTTP responses are mocked; no network access is needed.

Tests:
- Status and Content-Length checks
- Mapping of requests exceptions to RetrievalError
- Interruption while reading
- Session construction
- Chunked local file reads
"""

import os
import sys
import pytest
from unittest import mock

import requests
from requests.structures import CaseInsensitiveDict

# Add repo root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from globecache.retrieve import RetrieverState, RetrievalError, RetrievalInterruptedError
from globecache.retrievers import HTTPRetriever, FileRetriever, create_http_session
from globecache.retrieval_service import RetrievalService


URL = "https://tiles.example.com/imagery/12/655/1583.jpg"


# ============================================================================
# Test Fixtures
# ============================================================================

def make_response(status=200, chunks=(b"ab", b"cd"), headers=None):
    resp = mock.Mock()
    resp.status_code = status
    resp.headers = CaseInsensitiveDict(headers if headers is not None else {
        'Content-Type': 'image/jpeg',
        'Content-Length': str(sum(len(c) for c in chunks)),
    })
    resp.iter_content.return_value = iter(chunks)
    return resp


@pytest.fixture
def session():
    s = mock.Mock()
    s.get.return_value = make_response()
    return s


# ============================================================================
# HTTPRetriever Tests
# ============================================================================

class TestHTTPRetriever:

    def test_success(self, session):
        r = HTTPRetriever(URL, session=session, connect_timeout=1, read_timeout=2)
        assert r.run() == b"abcd"
        assert r.state == RetrieverState.SUCCESSFUL
        assert r.response_code == 200
        assert r.content_type == 'image/jpeg'

        args, kwargs = session.get.call_args
        assert args == (URL,)
        assert kwargs['timeout'] == (1, 2)
        assert kwargs['stream'] is True
        session.get.return_value.close.assert_called_once()

    def test_name_defaults_to_url(self, session):
        assert HTTPRetriever(URL, session=session).name == URL
        assert HTTPRetriever(URL, session=session, name="tile-1").name == "tile-1"

    def test_extra_headers(self, session):
        r = HTTPRetriever(URL, session=session, headers={'Range': 'bytes=0-3'})
        r.run()
        assert session.get.call_args[1]['headers'] == {'Range': 'bytes=0-3'}

    @pytest.mark.parametrize("status,chunks,expected", [
        (206, (b"ab",), b"ab"),
        (204, (), b""),
    ])
    def test_other_success_status(self, session, status, chunks, expected):
        session.get.return_value = make_response(status=status, chunks=chunks)
        r = HTTPRetriever(URL, session=session)
        assert r.run() == expected
        assert r.response_code == status
        assert r.state == RetrieverState.SUCCESSFUL

    @pytest.mark.parametrize("status", [304, 403, 404, 500, 503])
    def test_bad_status(self, session, status):
        session.get.return_value = make_response(status=status)
        r = HTTPRetriever(URL, session=session)
        with pytest.raises(RetrievalError) as exc:
            r.run()
        assert exc.value.response_code == status
        assert r.state == RetrieverState.ERROR
        session.get.return_value.close.assert_called_once()

    def test_truncated_body(self, session):
        session.get.return_value = make_response(headers={'Content-Length': '10'})
        r = HTTPRetriever(URL, session=session)
        with pytest.raises(RetrievalError):
            r.run()

    def test_encoded_body_length_not_checked(self, session):
        session.get.return_value = make_response(
            headers={'Content-Length': '3', 'Content-Encoding': 'gzip'})
        r = HTTPRetriever(URL, session=session)
        assert r.run() == b"abcd"

    @pytest.mark.parametrize("exc", [
        requests.exceptions.ConnectTimeout("slow"),
        requests.exceptions.ConnectionError("refused"),
        requests.exceptions.TooManyRedirects("loop"),
    ])
    def test_connect_errors(self, session, exc):
        session.get.side_effect = exc
        r = HTTPRetriever(URL, session=session)
        with pytest.raises(RetrievalError) as err:
            r.run()
        assert err.value.__cause__ is exc
        assert r.state == RetrieverState.ERROR

    def test_read_error(self, session):
        def broken():
            yield b"ab"
            raise requests.exceptions.ChunkedEncodingError("reset")

        resp = make_response(headers={})
        resp.iter_content.return_value = broken()
        session.get.return_value = resp
        r = HTTPRetriever(URL, session=session)
        with pytest.raises(RetrievalError):
            r.run()
        resp.close.assert_called_once()

    def test_interrupt_while_reading(self, session):
        r = HTTPRetriever(URL, session=session)

        def chunks():
            yield b"ab"
            r.interrupt()
            yield b"cd"

        resp = make_response(headers={})
        resp.iter_content.return_value = chunks()
        session.get.return_value = resp

        with pytest.raises(RetrievalInterruptedError):
            r.run()
        assert r.state == RetrieverState.INTERRUPTED
        assert r.buffer is None
        # Closed by interrupt() and again on the way out
        assert resp.close.called

    def test_url_required(self):
        with pytest.raises(ValueError):
            HTTPRetriever("")

    def test_through_service(self, session):
        with RetrievalService(pool_size=1) as service:
            future = service.run_retriever(HTTPRetriever(URL, session=session))
            assert future.result(2) == b"abcd"


class TestSession:

    def test_non_blocking_pool(self):
        s = create_http_session(pool_size=7)
        adapter = s.get_adapter("https://tiles.example.com/")
        assert adapter._pool_block is False
        assert adapter._pool_maxsize == 7
        assert adapter.max_retries.total == 0

    def test_user_agent(self):
        s = create_http_session()
        assert s.headers['User-Agent'].startswith("globecache/")


# ============================================================================
# FileRetriever Tests
# ============================================================================

class TestFileRetriever:

    def test_read(self, tmp_path):
        path = tmp_path / "elev.bil"
        path.write_bytes(b"0123456789")
        r = FileRetriever(path, chunk_size=3)
        assert r.run() == b"0123456789"
        assert r.name == str(path)
        assert r.state == RetrieverState.SUCCESSFUL

    def test_missing(self, tmp_path):
        r = FileRetriever(tmp_path / "nope.bil")
        with pytest.raises(RetrievalError):
            r.run()
        assert r.state == RetrieverState.ERROR

    def test_directory(self, tmp_path):
        r = FileRetriever(tmp_path)
        with pytest.raises(RetrievalError):
            r.run()

    def test_interrupted(self, tmp_path):
        path = tmp_path / "elev.bil"
        path.write_bytes(b"x" * 100)
        r = FileRetriever(path)
        r.interrupt()
        with pytest.raises(RetrievalInterruptedError):
            r.run()

    def test_path_required(self):
        with pytest.raises(ValueError):
            FileRetriever("")
