from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


@dataclass(slots=True, frozen=True)
class CacheStats:
    memory_hits: int = 0
    disk_hits: int = 0
    misses: int = 0
    disk_write_failures: int = 0

    @property
    def lookups(self) -> int:
        return self.memory_hits + self.disk_hits + self.misses


class ImageCache:
    """Two-tier byte cache: an in-process dict backed by one file per key.

    Lookups try memory first, then disk; a disk hit is copied back into
    memory. Writes go to both tiers, but only the memory write is guaranteed.
    A failed disk write is logged and counted in ``stats().disk_write_failures``.
    """

    def __init__(self, directory: str | Path, *, max_memory_items: int | None = None) -> None:
        if max_memory_items is not None and max_memory_items < 1:
            raise ValueError("max_memory_items must be >= 1")

        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.max_memory_items = max_memory_items

        self._memory: OrderedDict[str, bytes] = OrderedDict()
        self._memory_lock = threading.Lock()
        self._key_locks = tuple(threading.Lock() for _ in range(_LOCK_STRIPES))

        self._stats_lock = threading.Lock()
        self._memory_hits = 0
        self._disk_hits = 0
        self._misses = 0
        self._disk_write_failures = 0

    def get(self, key: str) -> bytes | None:
        data = self._memory_get(key)
        if data is not None:
            self._count("memory_hits")
            logger.debug("image_cache hit key=%s tier=memory", self._sha1_key(key))
            return data

        with self._key_lock(key):
            data_path = self._data_path(key)
            try:
                data = data_path.read_bytes()
            except FileNotFoundError:
                data = None
            except OSError:
                logger.warning(
                    "image_cache disk read failed key=%s path=%s",
                    self._sha1_key(key),
                    data_path,
                    exc_info=True,
                )
                data = None

            if data is None:
                self._count("misses")
                logger.debug("image_cache miss key=%s", self._sha1_key(key))
                return None

            self._memory_set(key, data)

        self._count("disk_hits")
        logger.debug("image_cache hit key=%s tier=disk", self._sha1_key(key))
        return data

    def put(self, key: str, data: bytes) -> None:
        with self._key_lock(key):
            self._memory_set(key, data)
            data_path = self._data_path(key)
            try:
                self._write_atomic(data_path, data)
            except OSError:
                self._count("disk_write_failures")
                logger.warning(
                    "image_cache disk write failed key=%s path=%s; entry kept in memory only",
                    self._sha1_key(key),
                    data_path,
                    exc_info=True,
                )
                return

        logger.info("image_cache set key=%s bytes=%d", self._sha1_key(key), len(data))

    def delete(self, key: str) -> None:
        with self._key_lock(key):
            with self._memory_lock:
                self._memory.pop(key, None)

            data_path = self._data_path(key)
            try:
                data_path.unlink(missing_ok=True)
            except OSError:
                logger.warning(
                    "image_cache disk delete failed key=%s path=%s",
                    self._sha1_key(key),
                    data_path,
                    exc_info=True,
                )
                return

        logger.info("image_cache delete key=%s", self._sha1_key(key))

    def contains_in_memory(self, key: str) -> bool:
        with self._memory_lock:
            return key in self._memory

    def clear_memory(self) -> None:
        with self._memory_lock:
            self._memory.clear()

    def stats(self) -> CacheStats:
        with self._stats_lock:
            return CacheStats(
                memory_hits=self._memory_hits,
                disk_hits=self._disk_hits,
                misses=self._misses,
                disk_write_failures=self._disk_write_failures,
            )

    def path_for(self, key: str) -> Path:
        return self._data_path(key)

    @staticmethod
    def _sha1_key(key: str) -> str:
        return hashlib.sha1(key.encode("utf-8")).hexdigest()

    def _data_path(self, key: str) -> Path:
        return self.directory / f"{self._sha1_key(key)}.cache"

    def _memory_get(self, key: str) -> bytes | None:
        with self._memory_lock:
            data = self._memory.get(key)
            if data is not None:
                self._memory.move_to_end(key)
            return data

    def _memory_set(self, key: str, data: bytes) -> None:
        with self._memory_lock:
            self._memory[key] = data
            self._memory.move_to_end(key)
            if self.max_memory_items is None:
                return
            while len(self._memory) > self.max_memory_items:
                evicted, _ = self._memory.popitem(last=False)
                logger.debug("image_cache evict key=%s", self._sha1_key(evicted))

    @contextmanager
    def _key_lock(self, key: str) -> Iterator[None]:
        # Keys sharing a stripe serialize too; nothing nests these locks.
        with self._key_locks[hash(key) % len(self._key_locks)]:
            yield

    def _count(self, field: str) -> None:
        with self._stats_lock:
            setattr(self, f"_{field}", getattr(self, f"_{field}") + 1)

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
