"""Object store contract and the local filesystem implementation.

Objects live under two sharded trees below the storage root::

    blobs/<first two chars of key>/<key>
    meta/<first two chars of key>/<key>.json

The metadata sidecar is written last on ``put`` and removed first on
``delete``; an object exists exactly when its sidecar does. Listing walks
the ``meta`` tree in key order so a cursor (the last key returned) is
enough to resume.
"""

import hashlib
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional

from .errors import ObjectTooLargeError, StorageError

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
MAX_LIST_LIMIT = 1000

_VALID_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{1,254}$")

logger = logging.getLogger("oneshare.storage")


def is_valid_key(key: Optional[str]) -> bool:
    """Return True when ``key`` is a safe single-segment object name."""

    if not key or not _VALID_KEY_PATTERN.match(key):
        return False
    return ".." not in key


def isoformat_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""

    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    content_type: Optional[str]
    uploaded: datetime
    etag: str
    custom_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ObjectSummary:
    """Entry returned by ``list``; call ``head`` for the full metadata."""

    key: str
    uploaded: datetime


@dataclass(frozen=True)
class ListResult:
    objects: List[ObjectSummary]
    truncated: bool
    cursor: Optional[str] = None


@dataclass
class StoredObject:
    info: ObjectInfo
    body: BinaryIO

    def close(self) -> None:
        self.body.close()

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE_BYTES) -> Iterator[bytes]:
        try:
            while True:
                chunk = self.body.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def __enter__(self) -> "StoredObject":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ObjectStore:
    """Blob store with per-object metadata and a cursor-paginated listing.

    ``delete`` of a missing key is a no-op and ``get``/``head`` return None
    for missing keys. Every other failure raises :class:`StorageError`.
    """

    def put(
        self,
        key: str,
        stream: BinaryIO,
        content_type: Optional[str] = None,
        custom_metadata: Optional[Dict[str, str]] = None,
        max_bytes: Optional[int] = None,
    ) -> ObjectInfo:
        raise NotImplementedError

    def get(self, key: str) -> Optional[StoredObject]:
        raise NotImplementedError

    def head(self, key: str) -> Optional[ObjectInfo]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list(self, limit: int = MAX_LIST_LIMIT, cursor: Optional[str] = None) -> ListResult:
        raise NotImplementedError

    def purge_orphans(self, max_age: int, now: Optional[datetime] = None) -> int:
        """Remove leftovers of interrupted writes; return how many were removed."""

        return 0

    def check_writable(self) -> None:
        """Raise :class:`StorageError` when the store cannot accept writes."""


class LocalObjectStore(ObjectStore):
    """Object store backed by a directory tree on a local or shared volume."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.blobs_dir = self.root / "blobs"
        self.meta_dir = self.root / "meta"

    def ensure_directories(self) -> None:
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self.meta_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _shard(key: str) -> str:
        return key[:2]

    def _blob_path(self, key: str, ensure_parent: bool = False) -> Path:
        directory = self.blobs_dir / self._shard(key)
        if ensure_parent:
            directory.mkdir(parents=True, exist_ok=True)
        return directory / key

    def _meta_path(self, key: str, ensure_parent: bool = False) -> Path:
        directory = self.meta_dir / self._shard(key)
        if ensure_parent:
            directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{key}.json"

    def put(
        self,
        key: str,
        stream: BinaryIO,
        content_type: Optional[str] = None,
        custom_metadata: Optional[Dict[str, str]] = None,
        max_bytes: Optional[int] = None,
    ) -> ObjectInfo:
        if not is_valid_key(key):
            raise StorageError(f"Invalid object key: {key!r}")

        token = uuid.uuid4().hex
        try:
            blob_path = self._blob_path(key, ensure_parent=True)
            meta_path = self._meta_path(key, ensure_parent=True)
        except OSError as error:
            raise StorageError(f"Failed to prepare storage for {key}: {error}") from error
        temp_path = blob_path.with_name(f".{blob_path.name}.{token}.tmp")

        hash_md5 = hashlib.md5()
        written = 0
        blob_committed = False
        committed = False
        try:
            with temp_path.open("wb") as destination:
                while True:
                    chunk = stream.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise ObjectTooLargeError(key, max_bytes)
                    destination.write(chunk)
                    hash_md5.update(chunk)

            info = ObjectInfo(
                key=key,
                size=written,
                content_type=content_type,
                uploaded=datetime.now(timezone.utc),
                etag=hash_md5.hexdigest(),
                custom_metadata=dict(custom_metadata or {}),
            )
            temp_path.replace(blob_path)
            blob_committed = True
            self._write_metadata(meta_path, info)
            committed = True
        except OSError as error:
            logger.error("object_put_failed key=%s error=%s", key, error)
            raise StorageError(f"Failed to store {key}: {error.strerror or error}") from error
        finally:
            if not committed:
                temp_path.unlink(missing_ok=True)
                if blob_committed:
                    # A blob without its sidecar is invisible; do not leak it.
                    blob_path.unlink(missing_ok=True)

        logger.debug("object_stored key=%s size=%d", key, written)
        return info

    def _write_metadata(self, meta_path: Path, info: ObjectInfo) -> None:
        record = {
            "key": info.key,
            "size": info.size,
            "content_type": info.content_type,
            "uploaded": isoformat_utc(info.uploaded),
            "etag": info.etag,
            "custom_metadata": info.custom_metadata,
        }
        temp_path = meta_path.with_name(f".{meta_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(record, handle)
            temp_path.replace(meta_path)
        finally:
            temp_path.unlink(missing_ok=True)

    def _read_metadata(self, key: str) -> Optional[dict]:
        meta_path = self._meta_path(key)
        try:
            with meta_path.open("r", encoding="utf-8") as handle:
                record = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as error:
            raise StorageError(f"Unreadable metadata for {key}: {error}") from error
        if not isinstance(record, dict):
            raise StorageError(f"Unreadable metadata for {key}: not an object")
        return record

    def head(self, key: str) -> Optional[ObjectInfo]:
        if not is_valid_key(key):
            return None
        record = self._read_metadata(key)
        if record is None:
            return None
        try:
            custom_metadata = record.get("custom_metadata") or {}
            return ObjectInfo(
                key=key,
                size=int(record.get("size", 0)),
                content_type=record.get("content_type") or None,
                uploaded=parse_timestamp(str(record["uploaded"])),
                etag=str(record.get("etag", "")),
                custom_metadata={str(k): str(v) for k, v in custom_metadata.items()},
            )
        except (KeyError, TypeError, ValueError, AttributeError) as error:
            raise StorageError(f"Malformed metadata for {key}: {error}") from error

    def get(self, key: str) -> Optional[StoredObject]:
        info = self.head(key)
        if info is None:
            return None
        try:
            body = self._blob_path(key).open("rb")
        except FileNotFoundError:
            # Deleted between the metadata read and the open.
            return None
        except OSError as error:
            raise StorageError(f"Failed to read {key}: {error.strerror or error}") from error
        return StoredObject(info=info, body=body)

    def delete(self, key: str) -> None:
        if not is_valid_key(key):
            return
        try:
            self._meta_path(key).unlink(missing_ok=True)
            self._blob_path(key).unlink(missing_ok=True)
        except OSError as error:
            raise StorageError(f"Failed to delete {key}: {error.strerror or error}") from error

    def list(self, limit: int = MAX_LIST_LIMIT, cursor: Optional[str] = None) -> ListResult:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        objects: List[ObjectSummary] = []
        try:
            shards = sorted(
                entry.name
                for entry in os.scandir(self.meta_dir)
                if entry.is_dir()
            )
        except FileNotFoundError:
            return ListResult(objects=[], truncated=False)
        except OSError as error:
            raise StorageError(f"Failed to list objects: {error}") from error

        for shard in shards:
            if cursor and shard < cursor[:2]:
                continue
            try:
                entries = sorted(
                    (entry.name[: -len(".json")], entry)
                    for entry in os.scandir(self.meta_dir / shard)
                    if entry.name.endswith(".json") and not entry.name.startswith(".")
                )
            except FileNotFoundError:
                continue
            except OSError as error:
                raise StorageError(f"Failed to list objects: {error}") from error
            for key, entry in entries:
                if cursor and key <= cursor:
                    continue
                try:
                    mtime = entry.stat().st_mtime
                except FileNotFoundError:
                    continue
                except OSError as error:
                    raise StorageError(f"Failed to list objects: {error}") from error
                objects.append(
                    ObjectSummary(
                        key=key,
                        uploaded=datetime.fromtimestamp(mtime, tz=timezone.utc),
                    )
                )
                if len(objects) > limit:
                    objects.pop()
                    return ListResult(objects=objects, truncated=True, cursor=objects[-1].key)
        return ListResult(objects=objects, truncated=False)

    @staticmethod
    def _is_temp_file(name: str) -> bool:
        return name.startswith(".") and name.endswith(".tmp")

    def _iter_shard_files(self, tree: Path) -> Iterator[Path]:
        try:
            shards = sorted(entry.path for entry in os.scandir(tree) if entry.is_dir())
        except FileNotFoundError:
            return
        except OSError as error:
            raise StorageError(f"Failed to scan {tree.name}: {error}") from error
        for shard in shards:
            try:
                entries = sorted(entry.path for entry in os.scandir(shard) if entry.is_file())
            except FileNotFoundError:
                continue
            except OSError as error:
                raise StorageError(f"Failed to scan {tree.name}: {error}") from error
            for path in entries:
                yield Path(path)

    def purge_orphans(self, max_age: int, now: Optional[datetime] = None) -> int:
        """Remove files left behind by writes that never committed.

        A crash mid-upload leaves a temp file; a crash between the blob
        rename and the sidecar write leaves a blob ``list`` never returns.
        Either kind is removed once its mtime is more than ``max_age``
        seconds old.
        """

        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now.timestamp() - max_age
        removed = 0
        for tree in (self.blobs_dir, self.meta_dir):
            for path in self._iter_shard_files(tree):
                orphan = self._is_temp_file(path.name) or (
                    tree == self.blobs_dir and not self._meta_path(path.name).exists()
                )
                if not orphan:
                    continue
                try:
                    if path.stat().st_mtime >= cutoff:
                        continue
                    path.unlink(missing_ok=True)
                except FileNotFoundError:
                    continue
                except OSError as error:
                    logger.warning("orphan_purge_failed path=%s error=%s", path, error)
                    continue
                removed += 1
                logger.info("orphan_purged path=%s", path)
        return removed

    def check_writable(self) -> None:
        probe = self.root / f".health_check_{uuid.uuid4().hex}"
        try:
            self.ensure_directories()
            probe.write_text("health_check", encoding="utf-8")
            probe.unlink(missing_ok=True)
        except OSError as error:
            raise StorageError(f"Storage not writable: {error}") from error
