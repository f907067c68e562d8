import http.client
import io
import sys
import threading
import urllib.error
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from channel_mirror.errors import FetchError, OperationCancelled
from channel_mirror.fetcher import AssetFetcher


class FakeResponse(io.BytesIO):
    def __init__(self, body=b"", status=200):
        super().__init__(body)
        self.status = status


def fetcher_with(response=None, error=None):
    fetcher = AssetFetcher(user_agent="test-agent")
    requests = []

    def open_(request, timeout=None):
        requests.append(request)
        if error is not None:
            raise error
        return response

    fetcher._opener = SimpleNamespace(open=open_)
    return fetcher, requests


def test_fetch_returns_body_and_sends_headers():
    fetcher, requests = fetcher_with(FakeResponse(b"\xff\xd8\xffdata"))

    assert fetcher.fetch("https://img/x.jpg") == b"\xff\xd8\xffdata"
    assert requests[0].get_method() == "GET"
    assert requests[0].get_header("User-agent") == "test-agent"


@pytest.mark.parametrize(
    "response, error",
    [
        (FakeResponse(b"", 200), None),
        (FakeResponse(b"moved", 302), None),
        (None, urllib.error.HTTPError("https://img/x.jpg", 404, "Not Found", {}, None)),
        (None, urllib.error.URLError("name resolution failed")),
        (None, http.client.BadStatusLine("garbage")),
        (None, ValueError("unknown url type: '//img/x.jpg'")),
    ],
)
def test_fetch_failures_raise(response, error):
    fetcher, _ = fetcher_with(response, error)
    with pytest.raises(FetchError):
        fetcher.fetch("https://img/x.jpg")


def test_exists_uses_head_and_tolerates_errors():
    fetcher, requests = fetcher_with(FakeResponse(status=200))
    assert fetcher.exists("https://i.ytimg.com/vi/x/maxresdefault.jpg") is True
    assert requests[0].get_method() == "HEAD"

    missing, _ = fetcher_with(error=urllib.error.HTTPError("u", 404, "Not Found", {}, None))
    assert missing.exists("https://i.ytimg.com/vi/x/maxresdefault.jpg") is False


def test_cancelled_fetcher_raises_operation_cancelled_without_request():
    event = threading.Event()
    event.set()
    fetcher, requests = fetcher_with(FakeResponse(b"data"))
    fetcher.cancel_event = event

    with pytest.raises(OperationCancelled):
        fetcher.fetch("https://img/x.jpg")
    with pytest.raises(OperationCancelled):
        fetcher.exists("https://i.ytimg.com/vi/x/maxresdefault.jpg")
    assert requests == []
