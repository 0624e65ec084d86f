import threading
import unittest
from datetime import datetime, timedelta, timezone

from oneshare.errors import StorageError
from oneshare.storage import ListResult, ObjectInfo, ObjectSummary
from oneshare.sweeper import file_age_seconds, sweep_expired_files, upload_time_of

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _info(key, upload_time=None, uploaded=NOW):
    metadata = {"oneTime": "true"}
    if upload_time is not None:
        metadata["uploadTime"] = upload_time
    return ObjectInfo(
        key=key,
        size=1,
        content_type="text/plain",
        uploaded=uploaded,
        etag="",
        custom_metadata=metadata,
    )


class FakeStore:
    """In-memory store that records list cursors and deletes."""

    def __init__(self, infos, page_size=1000):
        self.infos = {info.key: info for info in infos}
        self.page_size = page_size
        self.cursors = []
        self.deleted = []
        self.fail_head = set()
        self.fail_list_after = None
        self._lock = threading.Lock()

    def list(self, limit=1000, cursor=None):
        self.cursors.append(cursor)
        if self.fail_list_after is not None and len(self.cursors) > self.fail_list_after:
            raise StorageError("listing unavailable")
        keys = sorted(key for key in self.infos if cursor is None or key > cursor)
        page = keys[: min(limit, self.page_size)]
        truncated = len(keys) > len(page)
        return ListResult(
            objects=[ObjectSummary(key=key, uploaded=NOW) for key in page],
            truncated=truncated,
            cursor=page[-1] if truncated else None,
        )

    def head(self, key):
        if key in self.fail_head:
            raise StorageError(f"head failed for {key}")
        return self.infos.get(key)

    def delete(self, key):
        with self._lock:
            self.deleted.append(key)


class UploadTimeTests(unittest.TestCase):
    def test_metadata_upload_time_wins(self):
        info = _info("k1", upload_time="2024-05-01T10:00:00.000Z")
        self.assertEqual(upload_time_of(info), datetime(2024, 5, 1, 10, tzinfo=timezone.utc))
        self.assertEqual(file_age_seconds(info, NOW), 7200)

    def test_falls_back_to_store_upload_time(self):
        uploaded = NOW - timedelta(seconds=90)
        self.assertEqual(upload_time_of(_info("k1", uploaded=uploaded)), uploaded)
        self.assertEqual(
            upload_time_of(_info("k2", upload_time="yesterday", uploaded=uploaded)),
            uploaded,
        )

    def test_age_is_floored(self):
        info = _info("k1", uploaded=NOW - timedelta(seconds=10, milliseconds=900))
        self.assertEqual(file_age_seconds(info, NOW), 10)


class SweepExpiredFilesTests(unittest.TestCase):
    def test_deletes_only_expired_files(self):
        store = FakeStore(
            [
                _info("old", upload_time=(NOW - timedelta(hours=2)).isoformat()),
                _info("young", upload_time=(NOW - timedelta(minutes=10)).isoformat()),
            ]
        )
        result = sweep_expired_files(store, 3600, now=NOW)
        self.assertEqual(store.deleted, ["old"])
        self.assertEqual((result.checked, result.deleted, result.failed), (2, 1, 0))
        self.assertTrue(result.completed)

    def test_age_equal_to_max_age_is_kept(self):
        store = FakeStore([_info("edge", uploaded=NOW - timedelta(seconds=3600))])
        sweep_expired_files(store, 3600, now=NOW)
        self.assertEqual(store.deleted, [])

    def test_every_page_is_visited_once(self):
        infos = [_info(f"k{n:05d}", uploaded=NOW - timedelta(days=1)) for n in range(1001)]
        store = FakeStore(infos)
        result = sweep_expired_files(store, 3600, now=NOW)

        self.assertEqual(store.cursors, [None, "k00999"])
        self.assertEqual(result.checked, 1001)
        self.assertEqual(sorted(store.deleted), [info.key for info in infos])

    def test_failing_object_does_not_stop_the_sweep(self):
        store = FakeStore(
            [
                _info("a", uploaded=NOW - timedelta(days=1)),
                _info("b", uploaded=NOW - timedelta(days=1)),
                _info("c", uploaded=NOW - timedelta(days=1)),
            ]
        )
        store.fail_head.add("b")
        with self.assertLogs("oneshare.sweeper", level="ERROR"):
            result = sweep_expired_files(store, 3600, now=NOW)
        self.assertEqual(sorted(store.deleted), ["a", "c"])
        self.assertEqual(result.failed, 1)

    def test_listing_failure_ends_run_with_partial_result(self):
        store = FakeStore(
            [_info(f"k{n}", uploaded=NOW - timedelta(days=1)) for n in range(4)],
            page_size=2,
        )
        store.fail_list_after = 1
        with self.assertLogs("oneshare.sweeper", level="ERROR"):
            result = sweep_expired_files(store, 3600, now=NOW, page_size=2)
        self.assertFalse(result.completed)
        self.assertEqual(sorted(store.deleted), ["k0", "k1"])

    def test_empty_store(self):
        result = sweep_expired_files(FakeStore([]), 3600, now=NOW)
        self.assertEqual((result.checked, result.deleted), (0, 0))

    def test_naive_now_is_treated_as_utc(self):
        store = FakeStore([_info("old", uploaded=NOW - timedelta(hours=2))])
        sweep_expired_files(store, 3600, now=NOW.replace(tzinfo=None))
        self.assertEqual(store.deleted, ["old"])


if __name__ == "__main__":
    unittest.main()
