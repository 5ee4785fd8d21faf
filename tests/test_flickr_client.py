from __future__ import annotations

import pytest
import requests

from photorama_core.errors import DecodeFailure, TransportFailure
from photorama_core.flickr import FlickrClient
from photorama_core.schemas import ListingMethod


class _FakeResponse:
    def __init__(self, *, status_code: int = 200, content: bytes = b"{}") -> None:
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": "application/json"}


class _FakeSession:
    def __init__(self, responses: list[_FakeResponse | Exception]) -> None:
        self.responses = list(responses)
        self.headers: dict[str, str] = {}
        self.calls: list[tuple[str, dict[str, str] | None, float]] = []

    def get(self, url: str, *, params: dict[str, str] | None = None, timeout: float) -> _FakeResponse:
        self.calls.append((url, params, timeout))
        if not self.responses:
            raise RuntimeError("no response queued")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_fetch_metadata_builds_listing_query() -> None:
    session = _FakeSession([_FakeResponse(content=b'{"photos": {"photo": []}}')])
    client = FlickrClient(api_key="test-key", timeout_seconds=5.0, session=session)  # type: ignore[arg-type]

    data = client.fetch_metadata(ListingMethod.RECENT)

    assert data == b'{"photos": {"photo": []}}'
    url, params, timeout = session.calls[0]
    assert url == "https://api.flickr.com/services/rest"
    assert params == {
        "method": "flickr.photos.getRecent",
        "format": "json",
        "nojsoncallback": "1",
        "api_key": "test-key",
        "extras": "url_h,date_taken",
    }
    assert timeout == 5.0


def test_interesting_listing_uses_interestingness_method() -> None:
    client = FlickrClient(api_key="test-key", session=_FakeSession([]))  # type: ignore[arg-type]

    params = client.photos_params(ListingMethod.INTERESTING, {"page": "2"})

    assert params["method"] == "flickr.interestingness.getList"
    assert params["page"] == "2"


def test_single_session_is_reused_across_calls() -> None:
    session = _FakeSession([_FakeResponse(content=b"a"), _FakeResponse(content=b"b")])
    client = FlickrClient(api_key="test-key", session=session)  # type: ignore[arg-type]

    assert client.fetch_binary("https://live.staticflickr.com/a.jpg") == b"a"
    assert client.fetch_binary("https://live.staticflickr.com/b.jpg") == b"b"
    assert client.session is session
    assert [call[0] for call in session.calls] == [
        "https://live.staticflickr.com/a.jpg",
        "https://live.staticflickr.com/b.jpg",
    ]
    assert "User-Agent" not in session.headers


def test_transport_error_becomes_transport_failure() -> None:
    session = _FakeSession([requests.ConnectionError("connection refused")])
    client = FlickrClient(api_key="test-key", session=session)  # type: ignore[arg-type]

    with pytest.raises(TransportFailure) as excinfo:
        client.fetch_binary("https://live.staticflickr.com/a.jpg")

    assert isinstance(excinfo.value.__cause__, requests.ConnectionError)
    assert len(session.calls) == 1


def test_error_status_with_body_becomes_decode_failure() -> None:
    session = _FakeSession([_FakeResponse(status_code=500, content=b"oops")])
    client = FlickrClient(api_key="test-key", session=session)  # type: ignore[arg-type]

    with pytest.raises(DecodeFailure):
        client.fetch_metadata(ListingMethod.INTERESTING)
    assert len(session.calls) == 1


def test_from_env_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("FLICKR_API_KEY", raising=False)
    with pytest.raises(ValueError):
        FlickrClient.from_env()

    monkeypatch.setenv("FLICKR_API_KEY", "env-key")
    client = FlickrClient.from_env(session=_FakeSession([]))  # type: ignore[arg-type]
    assert client.api_key == "env-key"


def test_empty_api_key_is_rejected() -> None:
    with pytest.raises(ValueError):
        FlickrClient(api_key="  ")


def test_default_session_sends_photorama_user_agent() -> None:
    client = FlickrClient(api_key="test-key")

    assert isinstance(client.session, requests.Session)
    assert client.session.headers["User-Agent"] == "photorama/0.1.0"
