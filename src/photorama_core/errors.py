"""Failures surfaced to repository callers through ``FetchResult``."""

from __future__ import annotations


class FetchFailure(Exception):
    """Base class for every recoverable fetch failure."""


class TransportFailure(FetchFailure):
    """No bytes were received: connection, DNS, TLS or timeout error."""


class DecodeFailure(FetchFailure):
    """Bytes were received but could not be decoded as the expected content."""


class ParseFailure(FetchFailure):
    pass


class InvalidStructureError(ParseFailure):
    """The listing payload is not shaped like ``photos.photo[]`` or holds no usable entry."""


class PersistenceFailure(FetchFailure):
    """The durable store rejected a read or a commit."""
