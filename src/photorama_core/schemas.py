from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from photorama_core.errors import FetchFailure

T = TypeVar("T")


class DTOBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ListingMethod(StrEnum):
    INTERESTING = "interesting"
    RECENT = "recent"

    @property
    def api_method(self) -> str:
        return _API_METHODS[self]


_API_METHODS = {
    ListingMethod.INTERESTING: "flickr.interestingness.getList",
    ListingMethod.RECENT: "flickr.photos.getRecent",
}


class PhotoFilter(StrEnum):
    ALL = "all"
    FAVORITES = "favorites"


def new_tag_id() -> str:
    return uuid.uuid4().hex


class Photo(DTOBase):
    id: str
    title: str
    date_taken: datetime
    remote_url: str
    views: int = Field(default=0, ge=0)
    is_favorite: bool = False
    tag_ids: list[str] = Field(default_factory=list)


class Tag(DTOBase):
    id: str = Field(default_factory=new_tag_id)
    name: str
    photo_ids: list[str] = Field(default_factory=list)


@dataclass(slots=True, frozen=True)
class FetchResult(Generic[T]):
    """Outcome handed to completion callbacks: a value or a failure, never both."""

    value: T | None = None
    error: FetchFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @classmethod
    def success(cls, value: T) -> FetchResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: FetchFailure) -> FetchResult[T]:
        return cls(error=error)
