class OneShareError(Exception):
    """Base class for errors raised by the relay."""


class ClientError(OneShareError):
    """A request the client can fix; rendered as a 4xx plain-text reply."""

    status_code = 400


class NotFoundError(ClientError):
    status_code = 404

    def __init__(self, message: str = "File not found") -> None:
        super().__init__(message)


class UploadTooLargeError(ClientError):
    """Raised when an upload declares or streams more than the size cap."""

    status_code = 413

    def __init__(self, limit_bytes: int) -> None:
        super().__init__(
            f"Upload failed: file too large. Max size is {format_bytes(limit_bytes)}."
        )
        self.limit_bytes = limit_bytes


class StorageError(OneShareError):
    """Raised when the object store cannot complete an operation."""


class ObjectTooLargeError(StorageError):
    """Raised by the store when written bytes exceed ``max_bytes``."""

    def __init__(self, key: str, max_bytes: int) -> None:
        super().__init__(f"Object {key} exceeds {max_bytes} bytes")
        self.key = key
        self.max_bytes = max_bytes


class ExternalServiceError(OneShareError):
    """Raised when a third-party collaborator returns an unusable answer."""


def format_bytes(num: int) -> str:
    if num <= 0:
        return "0B"
    value = float(num)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if value < 1024.0 or unit == "TB":
            break
        value /= 1024.0
    return f"{round(value, 2):g}{unit}"
