"""A log-structured key/value store that is safe to share between threads."""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from os import PathLike
from pathlib import Path
from typing import BinaryIO

from .engine import KvsEngine
from .errors import KeyNotFoundError, KvsError, ProtocolError, UnexpectedCommandTypeError
from .log_files import (
    Command,
    CommandPos,
    PositionedWriter,
    load,
    log_path,
    new_log_file,
    sorted_gen_list,
)

log = logging.getLogger(__name__)

COMPACTION_THRESHOLD = 1024 * 1024


@contextmanager
def _io_errors() -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise KvsError(f"IO error: {exc}") from exc


class _LogReader:
    """Keeps open handles on log files and reads raw records from them.

    A reader is used by one thread at a time.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._files: dict[int, BinaryIO] = {}

    def close_below(self, safe_point: int) -> None:
        """Close handles on generations older than ``safe_point``."""
        for gen in [gen for gen in self._files if gen < safe_point]:
            self._files.pop(gen).close()

    def read(self, cmd_pos: CommandPos) -> bytes:
        """Return the raw bytes of the record at ``cmd_pos``."""
        log_file = self._files.get(cmd_pos.gen)
        if log_file is None:
            log_file = open(log_path(self._directory, cmd_pos.gen), "rb")
            self._files[cmd_pos.gen] = log_file
        log_file.seek(cmd_pos.pos)
        data = log_file.read(cmd_pos.length)
        if len(data) != cmd_pos.length:
            raise ProtocolError(
                f"log entry at {cmd_pos.gen}.log:{cmd_pos.pos} is truncated"
            )
        return data

    def close(self) -> None:
        for log_file in self._files.values():
            log_file.close()
        self._files.clear()


def _decode_command(raw: bytes) -> Command:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"invalid log entry: {exc}") from exc
    return Command.from_json(data)


class KvStore(KvsEngine):
    """Stores string key/value pairs in append-only log files.

    Log files are named after increasing generation numbers with a ``.log``
    extension. An in-memory index maps every live key to the position of its
    latest record. Once stale records take more than a megabyte the log is
    compacted. Reads may run concurrently from any number of threads; writes
    are serialised.
    """

    def __init__(self, path: str | PathLike[str]) -> None:
        self._path = Path(path)
        self._index: dict[str, CommandPos] = {}
        with _io_errors():
            self._path.mkdir(parents=True, exist_ok=True)
            gens = sorted_gen_list(self._path)
            self._uncompacted = sum(load(gen, self._path, self._index) for gen in gens)
            self._current_gen = (gens[-1] if gens else 0) + 1
            self._writer: PositionedWriter = new_log_file(self._path, self._current_gen)
        # generation of the latest compaction file; older handles may be closed
        self._safe_point = 0
        self._write_lock = threading.Lock()
        self._readers_lock = threading.Lock()
        self._idle_readers: queue.SimpleQueue[_LogReader] = queue.SimpleQueue()
        self._all_readers: list[_LogReader] = []
        self._compaction_reader = _LogReader(self._path)
        self._closed = False

    @classmethod
    def open(cls, path: str | PathLike[str]) -> KvStore:
        """Open the store in ``path``, creating the directory if needed."""
        return cls(path)

    def _check_open(self) -> None:
        if self._closed:
            raise KvsError("the store is closed")

    @contextmanager
    def _reader(self) -> Iterator[_LogReader]:
        try:
            reader = self._idle_readers.get_nowait()
        except queue.Empty:
            reader = _LogReader(self._path)
            with self._readers_lock:
                self._all_readers.append(reader)
        try:
            reader.close_below(self._safe_point)
            yield reader
        finally:
            self._idle_readers.put(reader)

    def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``, overwriting any previous value."""
        record = Command.set(key, value).to_bytes()
        with self._write_lock:
            self._check_open()
            with _io_errors():
                pos = self._writer.pos
                self._writer.write(record)
                self._writer.flush()
            old = self._index.get(key)
            if old is not None:
                self._uncompacted += old.length
            self._index[key] = CommandPos(self._current_gen, pos, self._writer.pos - pos)
            if self._uncompacted > COMPACTION_THRESHOLD:
                self._compact()

    def get(self, key: str) -> str | None:
        """Return the value of ``key``, or None if it does not exist."""
        self._check_open()
        while True:
            cmd_pos = self._index.get(key)
            if cmd_pos is None:
                return None
            try:
                with self._reader() as reader:
                    raw = reader.read(cmd_pos)
            except FileNotFoundError as exc:
                # a compaction moved the record away; look it up again
                if self._index.get(key) is not cmd_pos:
                    continue
                raise KvsError(f"IO error: {exc}") from exc
            except OSError as exc:
                raise KvsError(f"IO error: {exc}") from exc
            command = _decode_command(raw)
            if command.value is None:
                raise UnexpectedCommandTypeError()
            return command.value

    def remove(self, key: str) -> None:
        """Remove ``key``; raises KeyNotFoundError if it does not exist."""
        record = Command.remove(key).to_bytes()
        with self._write_lock:
            self._check_open()
            if key not in self._index:
                raise KeyNotFoundError()
            with _io_errors():
                pos = self._writer.pos
                self._writer.write(record)
                self._writer.flush()
            old = self._index.pop(key)
            # the removal record itself can go at the next compaction
            self._uncompacted += old.length + (self._writer.pos - pos)
            if self._uncompacted > COMPACTION_THRESHOLD:
                self._compact()

    def compact(self) -> None:
        """Rewrite the live records into a fresh log and delete stale logs."""
        with self._write_lock:
            self._check_open()
            self._compact()

    def _compact(self) -> None:
        compaction_gen = self._current_gen + 1
        self._current_gen += 2
        with _io_errors():
            self._writer.close()
            self._writer = new_log_file(self._path, self._current_gen)
            moved: dict[str, CommandPos] = {}
            with new_log_file(self._path, compaction_gen) as compaction_writer:
                for key, cmd_pos in sorted(self._index.items()):
                    raw = self._compaction_reader.read(cmd_pos)
                    start = compaction_writer.pos
                    compaction_writer.write(raw)
                    moved[key] = CommandPos(compaction_gen, start, len(raw))
                compaction_writer.flush()
        self._index.update(moved)
        self._safe_point = compaction_gen
        self._compaction_reader.close_below(compaction_gen)

        # Readers still holding handles close them lazily; where the platform
        # refuses to delete an open file, the next compaction tries again.
        with _io_errors():
            stale = [gen for gen in sorted_gen_list(self._path) if gen < compaction_gen]
        for gen in stale:
            file_path = log_path(self._path, gen)
            try:
                file_path.unlink()
            except OSError as exc:
                log.error("%s cannot be deleted: %s", file_path, exc)
        self._uncompacted = 0

    def close(self) -> None:
        """Close the log files. Further operations raise KvsError."""
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            self._writer.close()
            self._compaction_reader.close()
        with self._readers_lock:
            for reader in self._all_readers:
                reader.close()
            self._all_readers.clear()

    def __enter__(self) -> KvStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()