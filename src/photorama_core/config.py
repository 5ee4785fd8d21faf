from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

DEFAULT_API_BASE = "https://api.flickr.com/services/rest"


class FlickrConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_url: str = DEFAULT_API_BASE
    api_key_env: str = "FLICKR_API_KEY"
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    extras: str = "url_h,date_taken"

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        normalized = value.strip()
        parts = urlsplit(normalized)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ValueError("flickr.base_url must be an absolute http(s) URL")
        return normalized

    @field_validator("api_key_env", "extras")
    @classmethod
    def validate_not_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("flickr fields must not be empty")
        return normalized


class CachingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    directory: str = "data/cache/images"
    max_memory_items: int | None = Field(default=None, ge=1)


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = "data/storage/photorama.db"

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("storage.db_path must not be empty")
        return normalized


class FetchingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_workers: int = Field(default=4, ge=1)
    coalesce_requests: bool = True


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    flickr: FlickrConfig = Field(default_factory=FlickrConfig)
    caching: CachingConfig = Field(default_factory=CachingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    fetching: FetchingConfig = Field(default_factory=FetchingConfig)


def load_config(path: str | Path | None = None) -> AppConfig:
    if path is None:
        return AppConfig()

    raw = Path(path).read_text(encoding="utf-8")
    payload = _parse_yaml_or_json(raw)
    try:
        return AppConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _parse_yaml_or_json(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = _parse_yaml(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be an object.")
    return parsed


def _parse_yaml(raw: str) -> dict[str, Any]:
    import yaml

    parsed = yaml.safe_load(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be an object.")
    return parsed
