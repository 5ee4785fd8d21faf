from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

from photorama_core.schemas import FetchResult

T = TypeVar("T")
Completion = Callable[[FetchResult[Any]], None]

logger = logging.getLogger(__name__)


class InteractionContext:
    """Single-threaded executor on which completions are delivered.

    Code that is not thread-safe (a UI layer, the foreground database
    session) only ever runs here, so it needs no locking of its own.
    """

    def __init__(self, *, name: str = "photorama-interaction") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._thread_ident: int | None = None
        self._executor.submit(self._remember_thread).result()

    def is_current(self) -> bool:
        return threading.get_ident() == self._thread_ident

    def submit(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        return self._executor.submit(fn, *args)

    def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn`` here and wait for its return value."""
        if self.is_current():
            return fn(*args)
        return self._executor.submit(fn, *args).result()

    def deliver(
        self,
        result: FetchResult[T],
        completion: Completion | None,
        future: Future[FetchResult[T]],
    ) -> None:
        """Invoke ``completion`` exactly once with ``result``, then resolve ``future``."""
        self._executor.submit(complete, result, completion, future)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _remember_thread(self) -> None:
        self._thread_ident = threading.get_ident()


def complete(
    result: FetchResult[T],
    completion: Completion | None,
    future: Future[FetchResult[T]],
) -> None:
    try:
        if completion is not None:
            completion(result)
    except Exception as exc:
        logger.exception("completion handler raised")
        if future.set_running_or_notify_cancel():
            future.set_exception(exc)
        return
    if future.set_running_or_notify_cancel():
        future.set_result(result)
