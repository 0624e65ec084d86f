import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Optional

from .errors import ObjectTooLargeError, UploadTooLargeError
from .logs import RequestAwareLogger, sanitize_log_value
from .naming import build_key, normalize_content_type
from .shortener import UrlShortener
from .storage import ObjectStore, isoformat_utc

DEFAULT_CONTENT_TYPE = "application/octet-stream"
ONE_TIME_WARNING = (
    "⚠️  Note: This file can only be downloaded once, "
    "it is deleted right after the first download!"
)

lifecycle_logger = RequestAwareLogger(logging.getLogger("oneshare.lifecycle"))


@dataclass(frozen=True)
class UploadResult:
    key: str
    url: str
    canonical_url: str
    size: int
    content_type: str

    @property
    def shortened(self) -> bool:
        return self.url != self.canonical_url


def wants_short_url(path: str) -> bool:
    """``/short`` and ``/short/<anything>`` ask for a short alias."""

    return path == "/short" or path.startswith("/short/")


def build_canonical_url(base_url: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/{key}"


def store_upload(
    store: ObjectStore,
    stream: BinaryIO,
    *,
    content_type: Optional[str],
    content_length: Optional[int],
    base_url: str,
    want_short: bool,
    shortener: UrlShortener,
    max_upload_size: int,
    now: Optional[datetime] = None,
) -> UploadResult:
    """Stream one upload into the store and return the URL to hand out.

    The declared length is checked before anything is written; the store
    enforces the same cap on the bytes it actually receives. Shortening is
    best effort and never fails the upload.
    """

    if content_length is not None and content_length > max_upload_size:
        lifecycle_logger.warning(
            "upload_rejected_too_large declared=%d limit=%d",
            content_length,
            max_upload_size,
        )
        raise UploadTooLargeError(max_upload_size)

    declared_type = (content_type or "").strip() or DEFAULT_CONTENT_TYPE
    key = build_key(normalize_content_type(declared_type))
    uploaded_at = now or datetime.now(timezone.utc)
    try:
        info = store.put(
            key,
            stream,
            content_type=declared_type,
            custom_metadata={
                "oneTime": "true",
                "uploadTime": isoformat_utc(uploaded_at),
            },
            max_bytes=max_upload_size,
        )
    except ObjectTooLargeError as error:
        lifecycle_logger.warning(
            "upload_rejected_stream_too_large key=%s limit=%d", key, max_upload_size
        )
        raise UploadTooLargeError(max_upload_size) from error

    canonical_url = build_canonical_url(base_url, key)
    url = canonical_url
    if want_short:
        short_url = shortener.shorten(canonical_url)
        if short_url:
            url = short_url
        else:
            lifecycle_logger.warning(
                "short_url_fallback key=%s url=%s", key, sanitize_log_value(canonical_url)
            )

    result = UploadResult(
        key=key,
        url=url,
        canonical_url=canonical_url,
        size=info.size,
        content_type=declared_type,
    )
    lifecycle_logger.info(
        "file_uploaded key=%s size=%d content_type=%s short=%s",
        key,
        result.size,
        sanitize_log_value(result.content_type),
        result.shortened,
    )
    return result


def render_upload_response_text(result: UploadResult) -> str:
    return f"\n\n{result.url}\n\n{ONE_TIME_WARNING}\n"
