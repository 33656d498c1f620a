"""Storage engines whose operations run on a thread pool and are awaited."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from os import PathLike
from typing import Any, TypeVar

from .engine import KvsEngine, SledKvsEngine
from .errors import KvsError
from .kv_store import KvStore
from .thread_pool import ExecutorThreadPool, ThreadPool

log = logging.getLogger(__name__)

T = TypeVar("T")


def _default_concurrency() -> int:
    return os.cpu_count() or 1


class AsyncKvsEngine:
    """Runs the operations of a blocking engine on a thread pool.

    Each operation is a coroutine that completes once the pool has run it.
    The engine and the pool are shared by every caller; the engine must be
    safe to use from several threads.
    """

    def __init__(self, engine: KvsEngine, pool: ThreadPool) -> None:
        self.engine = engine
        self.pool = pool

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()

        def deliver(result: Any, error: BaseException | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def job() -> None:
            result: Any = None
            error: BaseException | None = None
            try:
                result = func(*args)
            except Exception as exc:
                error = exc
            try:
                loop.call_soon_threadsafe(deliver, result, error)
            except RuntimeError:
                log.error("Receiving end is dropped")

        try:
            self.pool.spawn(job)
        except RuntimeError as exc:
            raise KvsError(str(exc)) from exc
        return await future

    async def set(self, key: str, value: str) -> None:
        """Set the value of a key, overwriting any previous value."""
        await self._run(self.engine.set, key, value)

    async def get(self, key: str) -> str | None:
        """Return the value of a key, or None if it does not exist."""
        return await self._run(self.engine.get, key)

    async def remove(self, key: str) -> None:
        """Remove a key; raises KeyNotFoundError if it does not exist."""
        await self._run(self.engine.remove, key)

    def close(self) -> None:
        """Let queued operations finish, then release the pool and the engine."""
        self.pool.shutdown()
        self.engine.close()

    async def __aenter__(self) -> AsyncKvsEngine:
        return self

    async def __aexit__(self, *args: object) -> None:
        self.close()


class AsyncKvStore(AsyncKvsEngine):
    """The log-structured store with operations run on a thread pool."""

    @classmethod
    def open(
        cls,
        path: str | PathLike[str],
        concurrency: int | None = None,
        pool_class: type[ThreadPool] = ExecutorThreadPool,
    ) -> AsyncKvStore:
        """Open the store in ``path``; ``concurrency`` threads serve its operations."""
        if concurrency is None:
            concurrency = _default_concurrency()
        store = KvStore.open(path)
        try:
            pool = pool_class(concurrency)
        except Exception:
            store.close()
            raise
        return cls(store, pool)


class AsyncSledKvsEngine(AsyncKvsEngine):
    """The embedded-database engine with operations run on a thread pool."""

    @classmethod
    def open(
        cls,
        path: str | PathLike[str],
        concurrency: int | None = None,
        pool_class: type[ThreadPool] = ExecutorThreadPool,
    ) -> AsyncSledKvsEngine:
        """Open the database in ``path``; ``concurrency`` threads serve its operations."""
        if concurrency is None:
            concurrency = _default_concurrency()
        engine = SledKvsEngine(path)
        try:
            pool = pool_class(concurrency)
        except Exception:
            engine.close()
            raise
        return cls(engine, pool)