"""Thread pools that run jobs in the background."""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from .errors import KvsError

log = logging.getLogger(__name__)

Job = Callable[[], object]


def _run_job(job: Job) -> None:
    try:
        job()
    except Exception:
        log.exception("Job in thread pool failed")


class ThreadPool(ABC):
    """A pool that runs jobs on background threads.

    A failing job is logged; the pool keeps working with the same number of
    threads.
    """

    def __init__(self, threads: int) -> None:
        if threads < 0:
            raise ValueError("thread count must not be negative")
        self.threads = threads

    @abstractmethod
    def spawn(self, job: Job) -> None:
        """Queue a job to run on the pool."""

    def shutdown(self) -> None:
        """Stop accepting jobs and release the pool's threads."""

    def __enter__(self) -> ThreadPool:
        return self

    def __exit__(self, *args: object) -> None:
        self.shutdown()


class NaiveThreadPool(ThreadPool):
    """Not really a pool: every job gets a thread of its own."""

    def spawn(self, job: Job) -> None:
        threading.Thread(target=_run_job, args=(job,), daemon=True).start()


class SharedQueueThreadPool(ThreadPool):
    """A fixed set of worker threads taking jobs from one shared queue."""

    def __init__(self, threads: int) -> None:
        super().__init__(threads)
        self._queue: queue.SimpleQueue[Job | None] = queue.SimpleQueue()
        self._workers: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._closed = False
        for number in range(threads):
            worker = threading.Thread(
                target=self._work, name=f"kvs-worker-{number}", daemon=True
            )
            try:
                worker.start()
            except RuntimeError as exc:
                self.shutdown()
                raise KvsError(f"failed to spawn a thread: {exc}") from exc
            self._workers.append(worker)

    def _work(self) -> None:
        while (job := self._queue.get()) is not None:
            _run_job(job)
        log.debug("Thread exits because the thread pool is destroyed.")

    def spawn(self, job: Job) -> None:
        """Queue a job; raises RuntimeError if the pool has no thread."""
        with self._lock:
            if self._closed or not self._workers:
                raise RuntimeError("The thread pool has no thread.")
            self._queue.put(job)

    def shutdown(self) -> None:
        """Let queued jobs finish, then stop every worker."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            workers = list(self._workers)
            for _ in workers:
                self._queue.put(None)
        current = threading.current_thread()
        for worker in workers:
            if worker is not current:
                worker.join()


class ExecutorThreadPool(ThreadPool):
    """A pool backed by the standard library's thread pool executor.

    A thread count of zero picks the executor's default size.
    """

    def __init__(self, threads: int) -> None:
        super().__init__(threads)
        try:
            self._executor = ThreadPoolExecutor(
                max_workers=threads or None, thread_name_prefix="kvs-pool"
            )
        except ValueError as exc:
            raise KvsError(str(exc)) from exc

    def spawn(self, job: Job) -> None:
        self._executor.submit(_run_job, job)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)