"""Log records, positions and log files used by the log-structured store.

Log files live in one directory and are named after increasing generation
numbers with a ``.log`` extension. Each record is a compact JSON command
written back to back with the previous one.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator, MutableMapping
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import Any

from .errors import ProtocolError
from .protocol import encode

_WHITESPACE = re.compile(r"[ \t\n\r]*")
_GEN = re.compile(r"\+?[0-9]+")
_MAX_GEN = 2**64 - 1


@dataclass(frozen=True)
class Command:
    """A logged command: a set when ``value`` is a string, a removal when it is None."""

    key: str
    value: str | None = None

    @classmethod
    def set(cls, key: str, value: str) -> Command:
        """Build a command setting ``key`` to ``value``."""
        return cls(key, value)

    @classmethod
    def remove(cls, key: str) -> Command:
        """Build a command removing ``key``."""
        return cls(key, None)

    def to_bytes(self) -> bytes:
        """Return the compact JSON record for this command."""
        if self.value is None:
            return encode({"Remove": {"key": self.key}})
        return encode({"Set": {"key": self.key, "value": self.value}})

    @classmethod
    def from_json(cls, data: Any) -> Command:
        """Build a command from a decoded JSON record."""
        if not isinstance(data, dict) or len(data) != 1:
            raise ProtocolError(f"expected a command object with one variant, got {data!r}")
        tag, body = next(iter(data.items()))
        if not isinstance(body, dict):
            raise ProtocolError(f"command body must be an object, got {body!r}")
        key = body.get("key")
        if not isinstance(key, str):
            raise ProtocolError(f"command key must be a string, got {key!r}")
        if tag == "Set":
            value = body.get("value")
            if not isinstance(value, str):
                raise ProtocolError(f"command value must be a string, got {value!r}")
            return cls.set(key, value)
        if tag == "Remove":
            return cls.remove(key)
        raise ProtocolError(f"unknown command variant {tag!r}")


@dataclass(frozen=True)
class CommandPos:
    """Where a serialised command lies: its log generation, offset and byte length."""

    gen: int
    pos: int
    length: int


class PositionedWriter:
    """An append-only binary writer that tracks its byte position in the file."""

    def __init__(self, path: str | PathLike[str]) -> None:
        self.path = Path(path)
        self._file = open(self.path, "ab")
        self.pos = self._file.tell()

    def write(self, data: bytes) -> int:
        """Append ``data`` and return the number of bytes written."""
        self._file.write(data)
        self.pos += len(data)
        return len(data)

    def flush(self) -> None:
        """Push buffered bytes to the file."""
        self._file.flush()

    def close(self) -> None:
        """Flush and close the file."""
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> PositionedWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def log_path(directory: str | PathLike[str], gen: int) -> Path:
    """Return the path of the log file of generation ``gen``."""
    return Path(directory) / f"{gen}.log"


def _parse_gen(name: str) -> int | None:
    stem = name
    while stem.endswith(".log"):
        stem = stem[: -len(".log")]
    if not _GEN.fullmatch(stem):
        return None
    gen = int(stem)
    return gen if gen <= _MAX_GEN else None


def sorted_gen_list(directory: str | PathLike[str]) -> list[int]:
    """Return the generation numbers of the log files in ``directory``, ascending."""
    gens = (
        _parse_gen(entry.name)
        for entry in Path(directory).iterdir()
        if entry.is_file() and entry.suffix == ".log"
    )
    return sorted(gen for gen in gens if gen is not None)


def new_log_file(directory: str | PathLike[str], gen: int) -> PositionedWriter:
    """Create (or open for appending) the log of generation ``gen``."""
    return PositionedWriter(log_path(directory, gen))


def iter_commands(data: bytes) -> Iterator[tuple[Command, int, int]]:
    """Yield each command in a log with the byte offsets where it starts and ends.

    A command starts where the previous one ended.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError(f"invalid UTF-8 in log: {exc}") from exc
    decoder = json.JSONDecoder()
    index = 0
    byte_pos = 0
    while True:
        start = index
        index = _WHITESPACE.match(text, index).end()
        if index == len(text):
            return
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"invalid JSON in log: {exc}") from exc
        end_byte = byte_pos + len(text[start:end].encode("utf-8"))
        yield Command.from_json(value), byte_pos, end_byte
        byte_pos = end_byte
        index = end


def read_command(path: str | PathLike[str], cmd_pos: CommandPos) -> Command:
    """Read the command at ``cmd_pos`` from the log directory ``path``."""
    with open(log_path(path, cmd_pos.gen), "rb") as log_file:
        log_file.seek(cmd_pos.pos)
        raw = log_file.read(cmd_pos.length)
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"invalid log entry: {exc}") from exc
    return Command.from_json(data)


def load(gen: int, path: str | PathLike[str], index: MutableMapping[str, CommandPos]) -> int:
    """Replay the log of generation ``gen`` in directory ``path`` into ``index``.

    Returns how many bytes a compaction could reclaim.
    """
    uncompacted = 0
    for command, pos, new_pos in iter_commands(log_path(path, gen).read_bytes()):
        if command.value is not None:
            old = index.get(command.key)
            if old is not None:
                uncompacted += old.length
            index[command.key] = CommandPos(gen, pos, new_pos - pos)
        else:
            old = index.pop(command.key, None)
            if old is not None:
                uncompacted += old.length
            # the removal itself can go at the next compaction
            uncompacted += new_pos - pos
    return uncompacted