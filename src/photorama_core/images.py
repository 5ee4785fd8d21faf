from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from photorama_core.errors import DecodeFailure


@dataclass(slots=True, frozen=True)
class ImageInfo:
    format: str
    width: int
    height: int


def decode_image(data: bytes) -> ImageInfo:
    """Check that ``data`` is a readable image and describe it.

    Raises ``DecodeFailure`` for empty, truncated or unknown content.
    """
    if not data:
        raise DecodeFailure("image payload is empty")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            return ImageInfo(format=img.format or "UNKNOWN", width=img.width, height=img.height)
    except UnidentifiedImageError as exc:
        raise DecodeFailure("image payload has an unknown format") from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise DecodeFailure(f"image payload is corrupt: {exc}") from exc
