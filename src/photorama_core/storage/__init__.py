"""Storage layer for the two-tier image cache + SQLite photo store."""

from .cache import CacheStats, ImageCache
from .db import DatabaseSession, PhotoDatabase

__all__ = ["CacheStats", "DatabaseSession", "ImageCache", "PhotoDatabase"]
