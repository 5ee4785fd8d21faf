"""Photorama core: Flickr fetch, two-tier image cache and SQLite photo store."""

from .config import AppConfig, load_config
from .errors import (
    DecodeFailure,
    FetchFailure,
    InvalidStructureError,
    ParseFailure,
    PersistenceFailure,
    TransportFailure,
)
from .repository import PhotoRepository
from .schemas import FetchResult, ListingMethod, Photo, PhotoFilter, Tag

__all__ = [
    "AppConfig",
    "DecodeFailure",
    "FetchFailure",
    "FetchResult",
    "InvalidStructureError",
    "ListingMethod",
    "ParseFailure",
    "PersistenceFailure",
    "Photo",
    "PhotoFilter",
    "PhotoRepository",
    "Tag",
    "TransportFailure",
    "load_config",
]
