import base64
import logging
from typing import Optional

import requests

from .errors import ExternalServiceError
from .logs import sanitize_log_value

logger = logging.getLogger("oneshare.shortener")


class UrlShortener:
    """Capability that turns a long URL into a short alias.

    ``shorten`` returns None instead of raising; callers fall back to the
    URL they already have.
    """

    def shorten(self, url: str) -> Optional[str]:
        raise NotImplementedError


class DisabledShortener(UrlShortener):
    def shorten(self, url: str) -> Optional[str]:
        logger.info("short_url_disabled url=%s", sanitize_log_value(url))
        return None


class RemoteShortener(UrlShortener):
    """Client for a form-encoded shortening endpoint.

    The long URL is sent base64-encoded in a ``longUrl`` field and the
    service answers ``{"Code": 1, "ShortUrl": "..."}`` on success.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 5,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session

    def _post(self, data: dict) -> requests.Response:
        if self._session is not None:
            return self._session.post(self.endpoint, data=data, timeout=self.timeout)
        return requests.post(self.endpoint, data=data, timeout=self.timeout)

    def request_short_url(self, url: str) -> str:
        """Call the service, raising :class:`ExternalServiceError` on any failure."""

        encoded = base64.b64encode(url.encode("utf-8")).decode("ascii")
        response = None
        try:
            response = self._post({"longUrl": encoded})
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as error:
            raise ExternalServiceError(f"Short URL request failed: {error}") from error
        except ValueError as error:
            raise ExternalServiceError("Short URL service returned invalid JSON") from error
        finally:
            if response is not None:
                response.close()

        if not isinstance(payload, dict):
            raise ExternalServiceError(f"Unexpected short URL response: {payload!r}")
        short_url = payload.get("ShortUrl")
        if payload.get("Code") != 1 or not isinstance(short_url, str) or not short_url:
            raise ExternalServiceError(f"Unexpected short URL response: {payload!r}")
        return short_url

    def shorten(self, url: str) -> Optional[str]:
        try:
            short_url = self.request_short_url(url)
        except ExternalServiceError as error:
            logger.warning(
                "short_url_failed url=%s error=%s",
                sanitize_log_value(url),
                sanitize_log_value(str(error)),
            )
            return None
        logger.info(
            "short_url_generated short=%s original=%s",
            sanitize_log_value(short_url),
            sanitize_log_value(url),
        )
        return short_url


def build_shortener(config: dict) -> UrlShortener:
    if not config.get("short_url_enabled", True) or not config.get("short_url_service"):
        return DisabledShortener()
    return RemoteShortener(
        config["short_url_service"],
        timeout=config.get("short_url_timeout", 5),
    )
