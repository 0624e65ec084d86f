"""Key generation and content-type <-> extension mapping."""

import mimetypes
import secrets
import string
from typing import Optional

KEY_ALPHABET = string.ascii_lowercase + string.digits
KEY_LENGTH = 6

# Ids that would shadow a route or a static asset (``upload`` + ``.js``).
RESERVED_IDS = frozenset({"health", "upload"})

# Preferred extensions for types where the registry offers several.
PREFERRED_EXTENSIONS = {
    "application/gzip": "gz",
    "application/javascript": "js",
    "application/json": "json",
    "application/octet-stream": "bin",
    "application/pdf": "pdf",
    "application/x-tar": "tar",
    "application/xml": "xml",
    "application/zip": "zip",
    "audio/mpeg": "mp3",
    "image/gif": "gif",
    "image/jpeg": "jpeg",
    "image/png": "png",
    "image/svg+xml": "svg",
    "image/webp": "webp",
    "text/css": "css",
    "text/csv": "csv",
    "text/html": "html",
    "text/javascript": "js",
    "text/markdown": "md",
    "text/plain": "txt",
    "text/xml": "xml",
    "video/mp4": "mp4",
}


def normalize_content_type(content_type: Optional[str]) -> str:
    """Strip parameters and case from a declared content type."""

    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def generate_key() -> str:
    """Return a random 6 character id drawn uniformly from ``[a-z0-9]``."""

    while True:
        candidate = "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))
        if candidate not in RESERVED_IDS:
            return candidate


def derive_extension(content_type: Optional[str]) -> str:
    """Map a MIME type to a filename extension without the dot, or ``""``."""

    normalized = normalize_content_type(content_type)
    if not normalized:
        return ""
    preferred = PREFERRED_EXTENSIONS.get(normalized)
    if preferred:
        return preferred
    guessed = mimetypes.guess_extension(normalized, strict=False)
    if not guessed:
        return ""
    return guessed.lstrip(".")


def build_key(content_type: Optional[str]) -> str:
    extension = derive_extension(content_type)
    random_id = generate_key()
    return f"{random_id}.{extension}" if extension else random_id


def content_type_for_key(key: str) -> Optional[str]:
    """Guess a content type from the extension of ``key``."""

    if "." not in key:
        return None
    extension = key.rsplit(".", 1)[-1].lower()
    for content_type, preferred in PREFERRED_EXTENSIONS.items():
        if preferred == extension:
            return content_type
    guessed, _ = mimetypes.guess_type(key, strict=False)
    return guessed
