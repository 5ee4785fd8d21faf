from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path

from photorama_core.errors import PersistenceFailure
from photorama_core.schemas import Photo, PhotoFilter, Tag

logger = logging.getLogger(__name__)

_PHOTO_COLUMNS = "id, title, date_taken, remote_url, views, is_favorite"


class PhotoDatabase:
    """SQLite-backed durable store for photos, tags and their links."""

    def __init__(self, db_path: str | Path, *, timeout_seconds: float = 5.0) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout_seconds = timeout_seconds
        self._init_schema()

    def session(self) -> DatabaseSession:
        """Open a session on a fresh connection.

        A session must only be used from the thread that opened it.
        """
        return DatabaseSession(self._connect())

    def _init_schema(self) -> None:
        schema_path = Path(__file__).with_name("schema.sql")
        schema = schema_path.read_text(encoding="utf-8")
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(schema)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn


class DatabaseSession:
    """Unit of work over one SQLite connection.

    Reads hit the database and are overlaid with this session's pending
    records. Mutations stay pending until ``commit`` writes all of them in a
    single transaction.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._photos: dict[str, Photo] = {}
        self._new_photo_ids: set[str] = set()
        self._view_increments: dict[str, int] = {}
        self._favorite_changes: dict[str, bool] = {}
        self._link_changes: dict[tuple[str, str], bool] = {}
        self._tags: dict[str, Tag] = {}

    def __enter__(self) -> DatabaseSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def has_changes(self) -> bool:
        return bool(self._photos or self._tags or self._link_changes)

    def find_photo(self, photo_id: str) -> Photo | None:
        pending = self._photos.get(photo_id)
        if pending is not None:
            return pending.model_copy(deep=True)

        row = self._conn.execute(
            f"SELECT {_PHOTO_COLUMNS} FROM photos WHERE id = ?",
            (photo_id,),
        ).fetchone()
        if row is None:
            return None
        links = self._load_photo_links([photo_id])
        return self._row_to_photo(row, links.get(photo_id, []))

    def get_photos(self, photo_ids: Iterable[str]) -> list[Photo]:
        photos: list[Photo] = []
        for photo_id in photo_ids:
            photo = self.find_photo(photo_id)
            if photo is None:
                logger.warning("photo not found during resolve id=%s", photo_id)
                continue
            photos.append(photo)
        return photos

    def list_photos(self, photo_filter: PhotoFilter = PhotoFilter.ALL) -> list[Photo]:
        query = f"SELECT {_PHOTO_COLUMNS} FROM photos"
        if photo_filter == PhotoFilter.FAVORITES:
            query += " WHERE is_favorite = 1"
        query += " ORDER BY id ASC"

        rows = self._conn.execute(query).fetchall()
        links = self._load_photo_links([row["id"] for row in rows])
        by_id = {
            row["id"]: self._row_to_photo(row, links.get(row["id"], [])) for row in rows
        }

        for photo_id, pending in self._photos.items():
            if _matches(pending, photo_filter):
                by_id[photo_id] = pending.model_copy(deep=True)
            else:
                by_id.pop(photo_id, None)

        return [by_id[photo_id] for photo_id in sorted(by_id)]

    def find_tag(self, tag_id: str) -> Tag | None:
        pending = self._tags.get(tag_id)
        if pending is not None:
            return pending.model_copy(deep=True)

        row = self._conn.execute("SELECT id, name FROM tags WHERE id = ?", (tag_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_tag(row, self._load_tag_links([tag_id]).get(tag_id, []))

    def list_tags(self) -> list[Tag]:
        rows = self._conn.execute("SELECT id, name FROM tags").fetchall()
        links = self._load_tag_links([row["id"] for row in rows])
        by_id = {row["id"]: self._row_to_tag(row, links.get(row["id"], [])) for row in rows}
        for tag_id, pending in self._tags.items():
            by_id[tag_id] = pending.model_copy(deep=True)

        return sorted(by_id.values(), key=lambda tag: (tag.name, tag.id))

    def add_photo(self, photo: Photo) -> Photo:
        if self.find_photo(photo.id) is not None:
            raise ValueError(f"photo already exists: {photo.id}")

        self._photos[photo.id] = photo.model_copy(deep=True)
        self._new_photo_ids.add(photo.id)
        return photo.model_copy(deep=True)

    def record_view(self, photo_id: str) -> Photo:
        photo = self._require_photo(photo_id)
        self._view_increments[photo_id] = self._view_increments.get(photo_id, 0) + 1
        return self._stage_photo(photo.model_copy(update={"views": photo.views + 1}))

    def set_favorite(self, photo_id: str, is_favorite: bool) -> Photo:
        photo = self._require_photo(photo_id)
        if photo.is_favorite == is_favorite:
            return photo
        self._favorite_changes[photo_id] = is_favorite
        return self._stage_photo(photo.model_copy(update={"is_favorite": is_favorite}))

    def create_tag(self, name: str) -> Tag:
        normalized = name.strip()
        if not normalized:
            raise ValueError("tag name must not be empty")

        tag = Tag(name=normalized)
        self._tags[tag.id] = tag
        return tag.model_copy(deep=True)

    def tag_photo(self, photo_id: str, tag_id: str) -> Photo:
        photo = self._require_photo(photo_id)
        tag = self._require_tag(tag_id)
        if tag_id in photo.tag_ids:
            return photo

        self._tags[tag_id] = tag.model_copy(update={"photo_ids": sorted({*tag.photo_ids, photo_id})})
        self._link_changes[(photo_id, tag_id)] = True
        return self._stage_photo(
            photo.model_copy(update={"tag_ids": sorted({*photo.tag_ids, tag_id})})
        )

    def untag_photo(self, photo_id: str, tag_id: str) -> Photo:
        photo = self._require_photo(photo_id)
        tag = self._require_tag(tag_id)
        if tag_id not in photo.tag_ids:
            return photo

        self._tags[tag_id] = tag.model_copy(
            update={"photo_ids": [pid for pid in tag.photo_ids if pid != photo_id]}
        )
        self._link_changes[(photo_id, tag_id)] = False
        return self._stage_photo(
            photo.model_copy(update={"tag_ids": [tid for tid in photo.tag_ids if tid != tag_id]})
        )

    def commit(self) -> bool:
        """Write every pending change in one transaction.

        Returns ``False`` when there was nothing to write. On failure the
        pending changes are kept and ``PersistenceFailure`` is raised.
        """
        if not self.has_changes:
            return False

        try:
            with self._conn:
                self._write_tags()
                self._write_photos()
                self._write_links()
        except sqlite3.Error as exc:
            logger.error("database commit failed photos=%d tags=%d", len(self._photos), len(self._tags))
            raise PersistenceFailure(f"database commit failed: {exc}") from exc

        logger.info(
            "database commit photos=%d new_photos=%d tags=%d links=%d",
            len(self._photos),
            len(self._new_photo_ids),
            len(self._tags),
            len(self._link_changes),
        )
        self._clear_pending()
        return True

    def rollback(self) -> None:
        self._clear_pending()

    def close(self) -> None:
        self._conn.close()

    def _write_tags(self) -> None:
        if not self._tags:
            return
        self._conn.executemany(
            """
            INSERT INTO tags (id, name) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET name=excluded.name
            """,
            [(tag.id, tag.name) for tag in self._tags.values()],
        )

    def _write_photos(self) -> None:
        for photo_id, photo in self._photos.items():
            if photo_id in self._new_photo_ids:
                cursor = self._conn.execute(
                    """
                    INSERT INTO photos (id, title, date_taken, remote_url, views, is_favorite)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                    """,
                    (
                        photo.id,
                        photo.title,
                        photo.date_taken.isoformat(),
                        photo.remote_url,
                        photo.views,
                        int(photo.is_favorite),
                    ),
                )
                if cursor.rowcount == 1:
                    continue

            # Deltas against the committed row, so concurrent sessions compose.
            increment = self._view_increments.get(photo_id, 0)
            if increment:
                self._conn.execute(
                    "UPDATE photos SET views = views + ? WHERE id = ?",
                    (increment, photo_id),
                )
            if photo_id in self._favorite_changes:
                self._conn.execute(
                    "UPDATE photos SET is_favorite = ? WHERE id = ?",
                    (int(self._favorite_changes[photo_id]), photo_id),
                )

    def _write_links(self) -> None:
        added = [pair for pair, linked in self._link_changes.items() if linked]
        removed = [pair for pair, linked in self._link_changes.items() if not linked]
        if added:
            self._conn.executemany(
                "INSERT OR IGNORE INTO photo_tags (photo_id, tag_id) VALUES (?, ?)",
                added,
            )
        if removed:
            self._conn.executemany(
                "DELETE FROM photo_tags WHERE photo_id = ? AND tag_id = ?",
                removed,
            )

    def _stage_photo(self, photo: Photo) -> Photo:
        self._photos[photo.id] = photo
        return photo.model_copy(deep=True)

    def _require_photo(self, photo_id: str) -> Photo:
        photo = self.find_photo(photo_id)
        if photo is None:
            raise KeyError(f"unknown photo id: {photo_id}")
        return photo

    def _require_tag(self, tag_id: str) -> Tag:
        tag = self.find_tag(tag_id)
        if tag is None:
            raise KeyError(f"unknown tag id: {tag_id}")
        return tag

    def _clear_pending(self) -> None:
        self._photos.clear()
        self._new_photo_ids.clear()
        self._view_increments.clear()
        self._favorite_changes.clear()
        self._link_changes.clear()
        self._tags.clear()

    def _load_photo_links(self, photo_ids: list[str]) -> dict[str, list[str]]:
        return self._load_links(
            "SELECT photo_id AS owner, tag_id AS other FROM photo_tags WHERE photo_id IN ({})",
            photo_ids,
        )

    def _load_tag_links(self, tag_ids: list[str]) -> dict[str, list[str]]:
        return self._load_links(
            "SELECT tag_id AS owner, photo_id AS other FROM photo_tags WHERE tag_id IN ({})",
            tag_ids,
        )

    def _load_links(self, template: str, owner_ids: list[str]) -> dict[str, list[str]]:
        if not owner_ids:
            return {}
        placeholders = ", ".join("?" for _ in owner_ids)
        rows = self._conn.execute(
            template.format(placeholders) + " ORDER BY other ASC",
            tuple(owner_ids),
        ).fetchall()

        links: dict[str, list[str]] = {}
        for row in rows:
            links.setdefault(row["owner"], []).append(row["other"])
        return links

    @staticmethod
    def _row_to_photo(row: sqlite3.Row, tag_ids: list[str]) -> Photo:
        return Photo(
            id=row["id"],
            title=row["title"],
            date_taken=row["date_taken"],
            remote_url=row["remote_url"],
            views=row["views"],
            is_favorite=bool(row["is_favorite"]),
            tag_ids=tag_ids,
        )

    @staticmethod
    def _row_to_tag(row: sqlite3.Row, photo_ids: list[str]) -> Tag:
        return Tag(id=row["id"], name=row["name"], photo_ids=photo_ids)


def _matches(photo: Photo, photo_filter: PhotoFilter) -> bool:
    if photo_filter == PhotoFilter.FAVORITES:
        return photo.is_favorite
    return True
