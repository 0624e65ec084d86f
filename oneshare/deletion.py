import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from typing import Optional, Set

from .storage import ObjectStore

logger = logging.getLogger("oneshare.deletion")


class DeferredDeleter:
    """Delete downloaded objects on a background thread pool.

    ``schedule`` returns immediately; the delete runs after ``delay_seconds``
    on a worker thread, so the response that triggered it is never held up.
    Failures are logged and left for the expiry sweeper.
    """

    def __init__(self, store: ObjectStore, delay_seconds: float = 0.1, max_workers: int = 4) -> None:
        self.store = store
        self.delay_seconds = max(0.0, delay_seconds)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="one-time-delete"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    def schedule(self, key: str) -> Optional[Future]:
        with self._lock:
            if self._closed:
                logger.warning("one_time_delete_skipped_shutdown key=%s", key)
                return None
            future = self._executor.submit(self._delete, key)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _delete(self, key: str) -> bool:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        try:
            self.store.delete(key)
        except Exception:
            logger.exception("one_time_delete_failed key=%s", key)
            return False
        logger.info("one_time_delete_completed key=%s", key)
        return True

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for every scheduled delete; return False on timeout."""

        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_for_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
