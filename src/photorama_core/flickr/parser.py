from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

from photorama_core.errors import DecodeFailure, InvalidStructureError
from photorama_core.schemas import Photo
from photorama_core.storage.db import DatabaseSession

DATE_TAKEN_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ParsedPhotoEntry:
    photo_id: str
    title: str
    date_taken: datetime
    remote_url: str


def parse_photos(data: bytes, session: DatabaseSession) -> list[Photo]:
    """Turn a ``photos.photo[]`` listing into photos registered in ``session``.

    An entry whose id is already known resolves to the stored photo as-is;
    unknown ids become new pending photos. Entries missing a field or carrying
    a bad date or URL are skipped. The caller commits the session.
    """
    entries = _load_entries(data)

    photos: list[Photo] = []
    skipped = 0
    for raw_entry in entries:
        entry = build_entry(raw_entry)
        if entry is None:
            skipped += 1
            continue
        photos.append(_merge_entry(entry, session))

    if entries and not photos:
        raise InvalidStructureError(f"none of {len(entries)} listing entries were usable")

    logger.info("parsed photo listing entries=%d kept=%d skipped=%d", len(entries), len(photos), skipped)
    return photos


def build_entry(raw_entry: Any) -> ParsedPhotoEntry | None:
    if not isinstance(raw_entry, dict):
        logger.debug("skipping non-object listing entry")
        return None

    photo_id = raw_entry.get("id")
    title = raw_entry.get("title")
    date_text = raw_entry.get("datetaken")
    url_text = raw_entry.get("url_h")
    if not all(isinstance(value, str) for value in (photo_id, title, date_text, url_text)):
        logger.debug("skipping listing entry with missing fields id=%s", photo_id)
        return None
    if not photo_id:
        return None

    date_taken = _parse_date_taken(date_text)
    if date_taken is None:
        logger.debug("skipping listing entry id=%s bad datetaken=%r", photo_id, date_text)
        return None

    remote_url = _parse_url(url_text)
    if remote_url is None:
        logger.debug("skipping listing entry id=%s bad url_h=%r", photo_id, url_text)
        return None

    return ParsedPhotoEntry(
        photo_id=photo_id,
        title=title,
        date_taken=date_taken,
        remote_url=remote_url,
    )


def _load_entries(data: bytes) -> list[Any]:
    try:
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeFailure(f"listing payload is not JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise InvalidStructureError("listing payload is not an object")
    photos = payload.get("photos")
    if not isinstance(photos, dict):
        raise InvalidStructureError("listing payload has no photos object")
    entries = photos.get("photo")
    if not isinstance(entries, list):
        raise InvalidStructureError("listing payload has no photos.photo list")
    return entries


def _merge_entry(entry: ParsedPhotoEntry, session: DatabaseSession) -> Photo:
    existing = session.find_photo(entry.photo_id)
    if existing is not None:
        return existing

    return session.add_photo(
        Photo(
            id=entry.photo_id,
            title=entry.title,
            date_taken=entry.date_taken,
            remote_url=entry.remote_url,
        )
    )


def _parse_date_taken(value: str) -> datetime | None:
    try:
        return datetime.strptime(value.strip(), DATE_TAKEN_FORMAT)
    except ValueError:
        return None


def _parse_url(value: str) -> str | None:
    candidate = value.strip()
    if not candidate or any(char.isspace() for char in candidate):
        return None
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        return None
    return candidate
