"""Expiry sweeper: delete every object older than the configured max age."""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .storage import MAX_LIST_LIMIT, ObjectInfo, ObjectStore, ObjectSummary, parse_timestamp

UPLOAD_TIME_METADATA_KEY = "uploadTime"

logger = logging.getLogger("oneshare.sweeper")


@dataclass(frozen=True)
class SweepResult:
    checked: int = 0
    deleted: int = 0
    failed: int = 0
    purged: int = 0
    completed: bool = True


def upload_time_of(info: ObjectInfo) -> datetime:
    """Return the authoritative upload time of an object.

    The ``uploadTime`` custom metadata wins; the store's own creation
    timestamp is used when it is missing or unparsable.
    """

    raw_value = info.custom_metadata.get(UPLOAD_TIME_METADATA_KEY)
    if raw_value:
        try:
            return parse_timestamp(raw_value)
        except ValueError:
            logger.warning(
                "sweep_upload_time_invalid key=%s value=%s", info.key, raw_value
            )
    return info.uploaded


def file_age_seconds(info: ObjectInfo, now: datetime) -> int:
    elapsed = (now - upload_time_of(info)).total_seconds()
    return math.floor(elapsed)


def _check_object(store: ObjectStore, summary: ObjectSummary, max_age: int, now: datetime) -> Optional[bool]:
    """Delete ``summary`` if expired. Returns None when the check failed."""

    try:
        info = store.head(summary.key)
        if info is None:
            return False
        age = file_age_seconds(info, now)
        if age <= max_age:
            return False
        store.delete(summary.key)
    except Exception:
        logger.exception("sweep_object_failed key=%s", summary.key)
        return None
    logger.info("sweep_deleted key=%s age=%ds", summary.key, age)
    return True


def sweep_expired_files(
    store: ObjectStore,
    max_age: int,
    now: Optional[datetime] = None,
    page_size: int = MAX_LIST_LIMIT,
    max_workers: int = 16,
) -> SweepResult:
    """Walk the whole namespace page by page and delete expired objects.

    Objects of one page are checked concurrently and the page is finished
    before the next one is listed. A failing object is logged and skipped;
    a failing listing ends the run early and the next run picks up the rest.
    """

    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    logger.info("sweep_started max_age=%ds", max_age)

    checked = deleted = failed = 0
    cursor: Optional[str] = None
    completed = True
    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="expiry-sweep") as executor:
        while True:
            try:
                listed = store.list(limit=page_size, cursor=cursor)
            except Exception:
                logger.exception("sweep_list_failed cursor=%s", cursor)
                completed = False
                break

            outcomes = list(
                executor.map(
                    lambda summary: _check_object(store, summary, max_age, now),
                    listed.objects,
                )
            )
            checked += len(outcomes)
            deleted += sum(1 for outcome in outcomes if outcome is True)
            failed += sum(1 for outcome in outcomes if outcome is None)

            if not listed.truncated or not listed.cursor:
                break
            cursor = listed.cursor

    result = SweepResult(checked=checked, deleted=deleted, failed=failed, completed=completed)
    logger.info(
        "sweep_completed checked=%d deleted=%d failed=%d complete=%s",
        result.checked,
        result.deleted,
        result.failed,
        result.completed,
    )
    return result
