import logging
import queue
import threading
from typing import Callable, Dict, Generic, List, Optional, TypeVar

log = logging.getLogger("webhook.worker")

J = TypeVar("J")

_STOP = object()


class RunQueue(Generic[J]):
    """
    Hands run descriptors from request handlers to a fixed pool of worker threads.

    Jobs with the same key never run at the same time; jobs with different
    keys run in parallel up to ``workers``.
    """

    def __init__(self, handler: Callable[[J], object], key: Callable[[J], str], workers: int = 1):
        self.handler = handler
        self.key = key
        self.workers = max(1, workers)
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        # key -> [lock, number of workers holding or waiting for it]
        self._key_locks: Dict[str, list] = {}
        self._key_locks_guard = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._threads = [
            threading.Thread(target=self._work, name=f"run-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for t in self._threads:
            t.start()
        log.info("run queue started with %d worker(s)", self.workers)

    def submit(self, job: J) -> None:
        self._queue.put(job)
        log.info("queued run key=%s depth=%d", self.key(job), self._queue.qsize())

    def join(self) -> None:
        """Block until every submitted job has been handled."""
        self._queue.join()

    def stop(self, timeout: Optional[float] = None) -> None:
        for _ in self._threads:
            self._queue.put(_STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def _lock_for(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            entry = self._key_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _release(self, key: str) -> None:
        with self._key_locks_guard:
            entry = self._key_locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._key_locks[key]

    def _work(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                key = self.key(job)
                try:
                    with self._lock_for(key):
                        self.handler(job)
                finally:
                    self._release(key)
            except Exception:
                log.exception("run worker: unhandled error for key=%s", self.key(job))
            finally:
                self._queue.task_done()
