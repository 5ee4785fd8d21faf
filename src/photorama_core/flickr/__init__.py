"""Flickr REST client and listing codec."""

from .client import FlickrClient
from .parser import DATE_TAKEN_FORMAT, ParsedPhotoEntry, build_entry, parse_photos

__all__ = [
    "DATE_TAKEN_FORMAT",
    "FlickrClient",
    "ParsedPhotoEntry",
    "build_entry",
    "parse_photos",
]
