import threading
import time
import unittest

from oneshare.deletion import DeferredDeleter
from oneshare.errors import StorageError


class RecordingStore:
    def __init__(self, error=None):
        self.deleted = []
        self.error = error
        self.called = threading.Event()

    def delete(self, key):
        self.called.set()
        if self.error is not None:
            raise self.error
        self.deleted.append((key, time.monotonic()))


class DeferredDeleterTests(unittest.TestCase):
    def test_delete_runs_after_delay(self):
        store = RecordingStore()
        deleter = DeferredDeleter(store, delay_seconds=0.05)
        started = time.monotonic()
        future = deleter.schedule("abc123.txt")
        self.assertLess(time.monotonic() - started, 0.05)

        self.assertTrue(deleter.flush(timeout=5))
        self.assertTrue(future.result())
        key, deleted_at = store.deleted[0]
        self.assertEqual(key, "abc123.txt")
        self.assertGreaterEqual(deleted_at - started, 0.05)
        self.assertEqual(deleter.pending_count(), 0)
        deleter.shutdown()

    def test_failures_are_logged_not_raised(self):
        store = RecordingStore(error=StorageError("disk gone"))
        deleter = DeferredDeleter(store, delay_seconds=0)
        with self.assertLogs("oneshare.deletion", level="ERROR") as captured:
            future = deleter.schedule("abc123.txt")
            self.assertFalse(future.result(timeout=5))
        self.assertIn("one_time_delete_failed", captured.output[0])
        deleter.shutdown()

    def test_unexpected_store_errors_are_logged(self):
        store = RecordingStore(error=RuntimeError("driver crashed"))
        deleter = DeferredDeleter(store, delay_seconds=0)
        with self.assertLogs("oneshare.deletion", level="ERROR") as captured:
            future = deleter.schedule("abc123.txt")
            self.assertFalse(future.result(timeout=5))
        self.assertIn("one_time_delete_failed key=abc123.txt", captured.output[0])
        self.assertIn("RuntimeError: driver crashed", captured.output[0])
        deleter.shutdown()

    def test_flush_with_nothing_pending(self):
        deleter = DeferredDeleter(RecordingStore(), delay_seconds=0)
        self.assertTrue(deleter.flush(timeout=0))
        deleter.shutdown()

    def test_shutdown_waits_and_rejects_new_work(self):
        store = RecordingStore()
        deleter = DeferredDeleter(store, delay_seconds=0.02)
        deleter.schedule("one111")
        deleter.shutdown(wait=True)
        self.assertEqual([key for key, _ in store.deleted], ["one111"])
        self.assertIsNone(deleter.schedule("two222"))


if __name__ == "__main__":
    unittest.main()
