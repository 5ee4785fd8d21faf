from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

import requests

from photorama_core.config import AppConfig
from photorama_core.dispatch import Completion, InteractionContext, complete
from photorama_core.errors import FetchFailure, PersistenceFailure
from photorama_core.flickr import FlickrClient, parse_photos
from photorama_core.images import decode_image
from photorama_core.schemas import FetchResult, ListingMethod, Photo, PhotoFilter, Tag
from photorama_core.storage import DatabaseSession, ImageCache, PhotoDatabase

T = TypeVar("T")
_Waiter = tuple[Completion | None, Future[FetchResult[bytes]]]

logger = logging.getLogger(__name__)


class PhotoRepository:
    """Entry point for fetching photos, image bytes and stored records.

    Every public operation returns a ``Future`` resolving to a ``FetchResult``
    and optionally takes a ``completion`` callable. The completion runs
    exactly once, on the interaction context, before the future resolves.
    Network I/O and background merges run on a worker pool; the foreground
    database session is only touched from the interaction context.
    """

    def __init__(
        self,
        *,
        client: FlickrClient,
        database: PhotoDatabase,
        cache: ImageCache,
        max_workers: int = 4,
        coalesce_requests: bool = True,
        interaction: InteractionContext | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")

        self.client = client
        self.database = database
        self.cache = cache
        self.coalesce_requests = coalesce_requests

        self._workers = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="photorama-worker"
        )
        self._owns_interaction = interaction is None
        self._interaction = interaction or InteractionContext()
        self._view_session: DatabaseSession | None = None
        self._inflight: dict[str, list[_Waiter]] = {}
        self._inflight_lock = threading.Lock()
        self._closed = False
        self._view_closed = False

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        client: FlickrClient | None = None,
        session: requests.Session | None = None,
    ) -> PhotoRepository:
        if client is None:
            client = FlickrClient.from_env(
                env_var=config.flickr.api_key_env,
                base_url=config.flickr.base_url,
                extras=config.flickr.extras,
                timeout_seconds=config.flickr.timeout_seconds,
                session=session,
            )
        return cls(
            client=client,
            database=PhotoDatabase(config.storage.db_path),
            cache=ImageCache(
                config.caching.directory,
                max_memory_items=config.caching.max_memory_items,
            ),
            max_workers=config.fetching.max_workers,
            coalesce_requests=config.fetching.coalesce_requests,
        )

    @property
    def interaction(self) -> InteractionContext:
        return self._interaction

    def __enter__(self) -> PhotoRepository:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._workers.shutdown(wait=True)
        self._interaction.call(self._close_view_session)
        if self._owns_interaction:
            # A completion may close the repository from the interaction thread,
            # which cannot wait for itself to finish.
            self._interaction.shutdown(wait=not self._interaction.is_current())

    def fetch_image(
        self, photo: Photo, completion: Completion | None = None
    ) -> Future[FetchResult[bytes]]:
        """Return the image bytes for ``photo``, from cache when possible.

        A photo without an id or remote URL is a caller bug and raises
        ``ValueError`` immediately.
        """
        if not photo.id:
            raise ValueError("photo expected to have an id")

        future: Future[FetchResult[bytes]] = Future()
        cached = self.cache.get(photo.id)
        if cached is not None:
            self._interaction.deliver(FetchResult.success(cached), completion, future)
            return future

        if not photo.remote_url:
            raise ValueError("photo expected to have a remote URL")

        waiter: _Waiter = (completion, future)
        if not self.coalesce_requests:
            self._workers.submit(self._download_image, photo.id, photo.remote_url, [waiter])
            return future

        with self._inflight_lock:
            waiters = self._inflight.get(photo.id)
            if waiters is not None:
                waiters.append(waiter)
                logger.debug("image fetch joined in-flight request key=%s", photo.id)
                return future
            if self.cache.contains_in_memory(photo.id):
                data = self.cache.get(photo.id)
                if data is not None:
                    self._interaction.deliver(FetchResult.success(data), completion, future)
                    return future
            self._inflight[photo.id] = [waiter]

        self._workers.submit(self._download_image, photo.id, photo.remote_url, None)
        return future

    def fetch_photos(
        self,
        method: ListingMethod = ListingMethod.INTERESTING,
        completion: Completion | None = None,
        *,
        params: Mapping[str, str] | None = None,
    ) -> Future[FetchResult[list[Photo]]]:
        """Download a listing, merge it into the store and return stored photos."""
        future: Future[FetchResult[list[Photo]]] = Future()
        self._workers.submit(
            self._guarded, future, self._merge_listing, method, params, completion, future
        )
        return future

    def fetch_stored_photos(
        self,
        photo_filter: PhotoFilter = PhotoFilter.ALL,
        completion: Completion | None = None,
    ) -> Future[FetchResult[list[Photo]]]:
        return self._on_view(lambda view: view.list_photos(photo_filter), completion)

    def fetch_all_tags(
        self, completion: Completion | None = None
    ) -> Future[FetchResult[list[Tag]]]:
        return self._on_view(lambda view: view.list_tags(), completion)

    def commit_pending_changes(
        self, completion: Completion | None = None
    ) -> Future[FetchResult[bool]]:
        """Flush view-side edits; the result is ``False`` when nothing changed."""
        return self._on_view(lambda view: view.commit(), completion)

    def record_view(
        self, photo_id: str, completion: Completion | None = None
    ) -> Future[FetchResult[Photo]]:
        return self._on_view(lambda view: view.record_view(photo_id), completion)

    def set_favorite(
        self, photo_id: str, is_favorite: bool, completion: Completion | None = None
    ) -> Future[FetchResult[Photo]]:
        return self._on_view(lambda view: view.set_favorite(photo_id, is_favorite), completion)

    def create_tag(
        self, name: str, completion: Completion | None = None
    ) -> Future[FetchResult[Tag]]:
        return self._on_view(lambda view: view.create_tag(name), completion)

    def tag_photo(
        self, photo_id: str, tag_id: str, completion: Completion | None = None
    ) -> Future[FetchResult[Photo]]:
        return self._on_view(lambda view: view.tag_photo(photo_id, tag_id), completion)

    def untag_photo(
        self, photo_id: str, tag_id: str, completion: Completion | None = None
    ) -> Future[FetchResult[Photo]]:
        return self._on_view(lambda view: view.untag_photo(photo_id, tag_id), completion)

    def _download_image(self, key: str, url: str, waiters: list[_Waiter] | None) -> None:
        try:
            data = self.client.fetch_binary(url)
            decode_image(data)
        except FetchFailure as exc:
            logger.warning("image fetch failed key=%s error=%s", key, exc)
            result: FetchResult[bytes] = FetchResult.failure(exc)
        except Exception as exc:
            logger.exception("image fetch crashed key=%s", key)
            for _, future in self._take_waiters(key, waiters):
                if future.set_running_or_notify_cancel():
                    future.set_exception(exc)
            return
        else:
            self.cache.put(key, data)
            result = FetchResult.success(data)

        for completion, future in self._take_waiters(key, waiters):
            self._interaction.deliver(result, completion, future)

    def _take_waiters(self, key: str, waiters: list[_Waiter] | None) -> list[_Waiter]:
        if waiters is not None:
            return waiters
        with self._inflight_lock:
            return self._inflight.pop(key, [])

    def _merge_listing(
        self,
        method: ListingMethod,
        params: Mapping[str, str] | None,
        completion: Completion | None,
        future: Future[FetchResult[list[Photo]]],
    ) -> None:
        try:
            data = self.client.fetch_metadata(method, params)
            with self.database.session() as session:
                photos = parse_photos(data, session)
                session.commit()
        except FetchFailure as exc:
            logger.warning("photo listing failed method=%s error=%s", method, exc)
            self._interaction.deliver(FetchResult.failure(exc), completion, future)
            return
        except sqlite3.Error as exc:
            logger.warning("photo listing merge failed method=%s error=%s", method, exc)
            failure = PersistenceFailure(f"photo listing merge failed: {exc}")
            self._interaction.deliver(FetchResult.failure(failure), completion, future)
            return

        photo_ids = [photo.id for photo in photos]
        logger.info("photo listing merged method=%s photos=%d", method, len(photo_ids))
        self._interaction.submit(
            self._guarded,
            future,
            self._run_view_action,
            lambda view: view.get_photos(photo_ids),
            completion,
            future,
        )

    def _on_view(
        self, action: Callable[[DatabaseSession], T], completion: Completion | None
    ) -> Future[FetchResult[T]]:
        future: Future[FetchResult[T]] = Future()
        self._interaction.submit(self._guarded, future, self._run_view_action, action, completion, future)
        return future

    def _run_view_action(
        self,
        action: Callable[[DatabaseSession], T],
        completion: Completion | None,
        future: Future[FetchResult[T]],
    ) -> None:
        try:
            value = action(self._view())
        except FetchFailure as exc:
            result: FetchResult[T] = FetchResult.failure(exc)
        except sqlite3.Error as exc:
            logger.warning("view session query failed error=%s", exc)
            result = FetchResult.failure(PersistenceFailure(f"database query failed: {exc}"))
        else:
            result = FetchResult.success(value)
        complete(result, completion, future)

    def _view(self) -> DatabaseSession:
        if not self._interaction.is_current():
            raise RuntimeError("view session used outside the interaction context")
        if self._view_session is None:
            if self._view_closed:
                raise RuntimeError("repository is closed")
            self._view_session = self.database.session()
        return self._view_session

    def _close_view_session(self) -> None:
        self._view_closed = True
        if self._view_session is None:
            return
        if self._view_session.has_changes:
            logger.warning("closing view session with uncommitted changes")
        self._view_session.close()
        self._view_session = None

    @staticmethod
    def _guarded(future: Future[Any], fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as exc:
            logger.exception("repository task crashed")
            if not future.done() and future.set_running_or_notify_cancel():
                future.set_exception(exc)
