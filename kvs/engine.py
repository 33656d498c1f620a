"""The storage engine interface and an engine backed by an embedded database."""

from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from os import PathLike
from pathlib import Path

from .errors import KeyNotFoundError, KvsError

DB_FILE_NAME = "db"


class KvsEngine(ABC):
    """A key/value storage engine holding string keys and string values."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Set the value of a key, overwriting any previous value."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value of a key, or None if the key does not exist."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key; raises KeyNotFoundError if it does not exist."""

    def close(self) -> None:
        """Release the resources held by the engine."""

    def __enter__(self) -> KvsEngine:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class SledKvsEngine(KvsEngine):
    """An engine storing its data in an embedded SQLite database.

    The database lives in a file inside the given directory. Every write is
    committed before the call returns. The engine may be shared between
    threads.
    """

    def __init__(self, path: str | PathLike[str]) -> None:
        directory = Path(path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        self._lock = threading.Lock()
        self._closed = False
        try:
            self._conn = sqlite3.connect(
                directory / DB_FILE_NAME, check_same_thread=False, isolation_level=None
            )
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv "
                "(key TEXT PRIMARY KEY NOT NULL, value BLOB NOT NULL)"
            )
        except sqlite3.Error as exc:
            raise KvsError(f"sled error: {exc}") from exc

    @contextmanager
    def _database(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._closed:
                raise KvsError("sled error: the database is closed")
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise KvsError(f"sled error: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        with self._database() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (key, value.encode("utf-8")),
            )

    def get(self, key: str) -> str | None:
        with self._database() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return bytes(row[0]).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise KvsError(f"UTF-8 error: {exc}") from exc

    def remove(self, key: str) -> None:
        with self._database() as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            if cursor.rowcount == 0:
                raise KeyNotFoundError()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()