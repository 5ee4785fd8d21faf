from __future__ import annotations

import logging
import os
from collections.abc import Mapping

import requests

from photorama_core.config import DEFAULT_API_BASE
from photorama_core.errors import DecodeFailure, TransportFailure
from photorama_core.schemas import ListingMethod

DEFAULT_EXTRAS = "url_h,date_taken"
USER_AGENT = "photorama/0.1.0"

logger = logging.getLogger(__name__)


class FlickrClient:
    """Flickr REST client. One ``requests.Session`` serves every request."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_API_BASE,
        extras: str = DEFAULT_EXTRAS,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if not api_key.strip():
            raise ValueError("Flickr API key is empty.")
        if not base_url.strip():
            raise ValueError("Flickr base URL is empty.")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")

        self.api_key = api_key
        self.base_url = base_url
        self.extras = extras
        self.timeout_seconds = timeout_seconds
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = USER_AGENT
        self.session = session

    @classmethod
    def from_env(
        cls,
        *,
        env_var: str = "FLICKR_API_KEY",
        base_url: str = DEFAULT_API_BASE,
        extras: str = DEFAULT_EXTRAS,
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> FlickrClient:
        api_key = os.getenv(env_var, "").strip()
        if not api_key:
            raise ValueError(f"Environment variable {env_var} is not set.")
        return cls(
            api_key=api_key,
            base_url=base_url,
            extras=extras,
            timeout_seconds=timeout_seconds,
            session=session,
        )

    def photos_params(
        self, method: ListingMethod, params: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        query = {
            "method": method.api_method,
            "format": "json",
            "nojsoncallback": "1",
            "api_key": self.api_key,
            "extras": self.extras,
        }
        if params:
            query.update(params)
        return query

    def fetch_metadata(
        self, method: ListingMethod, params: Mapping[str, str] | None = None
    ) -> bytes:
        return self._get(self.base_url, params=self.photos_params(method, params))

    def fetch_binary(self, url: str) -> bytes:
        return self._get(url)

    def _get(self, url: str, *, params: Mapping[str, str] | None = None) -> bytes:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            logger.warning("flickr request failed url=%s error=%s", url, exc)
            raise TransportFailure(f"request to {url} failed: {exc}") from exc

        logger.debug("flickr response url=%s status=%s", url, response.status_code)
        for name, value in response.headers.items():
            logger.debug("flickr response header %s: %s", name, value)

        if response.status_code >= 400:
            raise DecodeFailure(
                f"unexpected status {response.status_code} from {url}"
            )
        return response.content
