from __future__ import annotations

import io
import json
import threading
from datetime import datetime

import pytest
from PIL import Image

from photorama_core import PhotoRepository
from photorama_core.errors import (
    DecodeFailure,
    InvalidStructureError,
    PersistenceFailure,
    TransportFailure,
)
from photorama_core.schemas import FetchResult, ListingMethod, Photo, PhotoFilter
from photorama_core.storage import ImageCache, PhotoDatabase

_WAIT = 10.0


def _png_bytes(color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 3), color).save(buffer, format="PNG")
    return buffer.getvalue()


def _listing(*entries: dict) -> bytes:
    return json.dumps({"photos": {"photo": list(entries)}}).encode("utf-8")


def _entry(photo_id: str, title: str = "title") -> dict:
    return {
        "id": photo_id,
        "title": title,
        "datetaken": "2021-06-01 08:00:00",
        "url_h": f"https://live.staticflickr.com/{photo_id}_h.jpg",
    }


def _photo(photo_id: str) -> Photo:
    return Photo(
        id=photo_id,
        title=f"photo {photo_id}",
        date_taken=datetime(2021, 6, 1, 8, 0, 0),
        remote_url=f"https://live.staticflickr.com/{photo_id}_h.jpg",
    )


class _FakeClient:
    def __init__(
        self,
        *,
        listings: list[bytes | Exception] | None = None,
        binary: bytes | Exception | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        self.listings = list(listings or [])
        self.binary = binary if binary is not None else _png_bytes()
        self.gate = gate
        self.metadata_calls: list[ListingMethod] = []
        self.binary_calls: list[str] = []
        self._lock = threading.Lock()

    def fetch_metadata(self, method: ListingMethod, params=None) -> bytes:
        self.metadata_calls.append(method)
        response = self.listings.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def fetch_binary(self, url: str) -> bytes:
        with self._lock:
            self.binary_calls.append(url)
        if self.gate is not None:
            self.gate.wait(timeout=_WAIT)
        if isinstance(self.binary, Exception):
            raise self.binary
        return self.binary


@pytest.fixture
def make_repository(tmp_path):
    created: list[PhotoRepository] = []

    def _make(client: _FakeClient, **kwargs) -> PhotoRepository:
        repository = PhotoRepository(
            client=client,  # type: ignore[arg-type]
            database=PhotoDatabase(tmp_path / "photos.db"),
            cache=ImageCache(tmp_path / "images"),
            **kwargs,
        )
        created.append(repository)
        return repository

    yield _make
    for repository in created:
        repository.close()


def test_fetch_image_cold_cache_hits_network_once(make_repository) -> None:
    client = _FakeClient()
    repository = make_repository(client)
    photo = _photo("k1")

    first = repository.fetch_image(photo).result(timeout=_WAIT)
    assert first.ok
    assert first.unwrap() == client.binary
    assert len(client.binary_calls) == 1

    second = repository.fetch_image(photo).result(timeout=_WAIT)
    assert second.unwrap() == client.binary
    assert len(client.binary_calls) == 1
    assert repository.cache.stats().memory_hits >= 1


def test_fetch_image_populates_disk_tier(make_repository) -> None:
    client = _FakeClient()
    repository = make_repository(client)

    repository.fetch_image(_photo("k2")).result(timeout=_WAIT)
    repository.cache.clear_memory()

    assert repository.cache.get("k2") == client.binary


def test_completion_runs_once_on_interaction_context(make_repository) -> None:
    repository = make_repository(_FakeClient())
    calls: list[tuple[bool, FetchResult[bytes]]] = []

    def _completion(result: FetchResult[bytes]) -> None:
        calls.append((repository.interaction.is_current(), result))

    repository.fetch_image(_photo("k3"), _completion).result(timeout=_WAIT)
    repository.fetch_image(_photo("k3"), _completion).result(timeout=_WAIT)

    assert len(calls) == 2
    assert all(on_interaction for on_interaction, _ in calls)
    assert all(result.ok for _, result in calls)


def test_concurrent_identical_requests_are_coalesced(make_repository) -> None:
    gate = threading.Event()
    client = _FakeClient(gate=gate)
    repository = make_repository(client, coalesce_requests=True)

    futures = [repository.fetch_image(_photo("k4")) for _ in range(5)]
    gate.set()
    results = [future.result(timeout=_WAIT) for future in futures]

    assert all(result.ok for result in results)
    assert len(client.binary_calls) == 1


def test_without_coalescing_each_request_fetches(make_repository) -> None:
    gate = threading.Event()
    client = _FakeClient(gate=gate)
    repository = make_repository(client, coalesce_requests=False, max_workers=3)

    futures = [repository.fetch_image(_photo("k5")) for _ in range(3)]
    gate.set()
    for future in futures:
        assert future.result(timeout=_WAIT).ok

    assert len(client.binary_calls) == 3


def test_fetch_image_transport_failure_is_not_cached(make_repository) -> None:
    client = _FakeClient(binary=TransportFailure("offline"))
    repository = make_repository(client)

    result = repository.fetch_image(_photo("k6")).result(timeout=_WAIT)

    assert not result.ok
    assert isinstance(result.error, TransportFailure)
    assert repository.cache.get("k6") is None


def test_fetch_image_undecodable_bytes_is_decode_failure(make_repository) -> None:
    client = _FakeClient(binary=b"<html>not an image</html>")
    repository = make_repository(client)

    result = repository.fetch_image(_photo("k7")).result(timeout=_WAIT)

    assert isinstance(result.error, DecodeFailure)
    with pytest.raises(DecodeFailure):
        result.unwrap()
    assert repository.cache.get("k7") is None


def test_fetch_image_contract_violations_raise(make_repository) -> None:
    repository = make_repository(_FakeClient())

    with pytest.raises(ValueError):
        repository.fetch_image(_photo(""))
    with pytest.raises(ValueError):
        repository.fetch_image(_photo("k8").model_copy(update={"remote_url": ""}))


def test_cached_image_served_even_without_remote_url(make_repository) -> None:
    client = _FakeClient()
    repository = make_repository(client)
    repository.cache.put("k9", b"cached-bytes")

    result = repository.fetch_image(_photo("k9").model_copy(update={"remote_url": ""})).result(
        timeout=_WAIT
    )

    assert result.unwrap() == b"cached-bytes"
    assert client.binary_calls == []


def test_fetch_photos_merges_and_resolves_through_view(make_repository) -> None:
    client = _FakeClient(
        listings=[
            _listing(_entry("2", "B"), _entry("1", "A")),
            _listing(_entry("1", "changed"), _entry("3", "C")),
        ]
    )
    repository = make_repository(client)
    seen_on_interaction: list[bool] = []

    first = repository.fetch_photos(
        ListingMethod.RECENT,
        lambda result: seen_on_interaction.append(repository.interaction.is_current()),
    ).result(timeout=_WAIT)
    assert [photo.id for photo in first.unwrap()] == ["2", "1"]
    assert seen_on_interaction == [True]

    second = repository.fetch_photos(ListingMethod.INTERESTING).result(timeout=_WAIT)
    assert [(photo.id, photo.title) for photo in second.unwrap()] == [("1", "A"), ("3", "C")]

    stored = repository.fetch_stored_photos().result(timeout=_WAIT).unwrap()
    assert [photo.id for photo in stored] == ["1", "2", "3"]
    assert client.metadata_calls == [ListingMethod.RECENT, ListingMethod.INTERESTING]


def test_fetch_photos_reports_parse_and_transport_failures(make_repository) -> None:
    client = _FakeClient(
        listings=[
            _listing({"id": "1"}),
            TransportFailure("offline"),
            _listing(),
        ]
    )
    repository = make_repository(client)

    invalid = repository.fetch_photos().result(timeout=_WAIT)
    assert isinstance(invalid.error, InvalidStructureError)

    offline = repository.fetch_photos().result(timeout=_WAIT)
    assert isinstance(offline.error, TransportFailure)

    empty = repository.fetch_photos().result(timeout=_WAIT)
    assert empty.ok
    assert empty.unwrap() == []

    assert repository.fetch_stored_photos().result(timeout=_WAIT).unwrap() == []


def test_view_edits_commit_through_repository(make_repository, tmp_path) -> None:
    client = _FakeClient(listings=[_listing(_entry("1"), _entry("2"))])
    repository = make_repository(client)
    repository.fetch_photos().result(timeout=_WAIT)

    assert repository.commit_pending_changes().result(timeout=_WAIT).unwrap() is False

    repository.record_view("1").result(timeout=_WAIT)
    photo = repository.record_view("1").result(timeout=_WAIT).unwrap()
    assert photo.views == 2
    repository.set_favorite("2", True).result(timeout=_WAIT)
    tag = repository.create_tag("sunset").result(timeout=_WAIT).unwrap()
    repository.tag_photo("2", tag.id).result(timeout=_WAIT)

    favorites = repository.fetch_stored_photos(PhotoFilter.FAVORITES).result(timeout=_WAIT)
    assert [photo.id for photo in favorites.unwrap()] == ["2"]

    with PhotoDatabase(tmp_path / "photos.db").session() as outside:
        assert outside.find_photo("1").views == 0

    assert repository.commit_pending_changes().result(timeout=_WAIT).unwrap() is True

    with PhotoDatabase(tmp_path / "photos.db").session() as outside:
        assert outside.find_photo("1").views == 2
        assert outside.find_photo("2").is_favorite is True
        assert outside.find_photo("2").tag_ids == [tag.id]

    tags = repository.fetch_all_tags().result(timeout=_WAIT).unwrap()
    assert [(tag.name, tag.photo_ids) for tag in tags] == [("sunset", ["2"])]

    untagged = repository.untag_photo("2", tag.id).result(timeout=_WAIT).unwrap()
    assert untagged.tag_ids == []


def test_view_edit_on_unknown_photo_fails_loudly(make_repository) -> None:
    repository = make_repository(_FakeClient())

    with pytest.raises(KeyError):
        repository.record_view("missing").result(timeout=_WAIT)


def test_listing_merge_failure_is_persistence_failure(make_repository, monkeypatch) -> None:
    client = _FakeClient(listings=[_listing(_entry("1"))])
    repository = make_repository(client)

    def _reject_commit(self) -> bool:
        raise PersistenceFailure("disk I/O error")

    monkeypatch.setattr("photorama_core.storage.db.DatabaseSession.commit", _reject_commit)

    result = repository.fetch_photos().result(timeout=_WAIT)

    assert isinstance(result.error, PersistenceFailure)


def test_close_from_completion_shuts_down_cleanly(make_repository) -> None:
    repository = make_repository(_FakeClient())
    closed = threading.Event()

    def _close_on_delivery(result: FetchResult[list[Photo]]) -> None:
        repository.close()
        closed.set()

    result = repository.fetch_stored_photos(completion=_close_on_delivery).result(timeout=_WAIT)

    assert result.ok
    assert closed.is_set()
    with pytest.raises(RuntimeError):
        repository.interaction.submit(lambda: None)
    repository.close()
