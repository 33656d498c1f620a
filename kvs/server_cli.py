"""Command-line entry point that runs the key/value server."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Sequence
from enum import Enum
from os import PathLike
from pathlib import Path

from .client_cli import VERSION
from .engine import KvsEngine, SledKvsEngine
from .errors import KvsError
from .kv_store import KvStore
from .protocol import parse_address
from .server import KvsServer
from .thread_pool import ExecutorThreadPool

log = logging.getLogger(__name__)

DEFAULT_ADDRESS = "127.0.0.1:4000"
ENGINE_FILE_NAME = "engine"


class Engine(Enum):
    """The storage engines the server can run."""

    KVS = "kvs"
    SLED = "sled"

    def __str__(self) -> str:
        return self.value


DEFAULT_ENGINE = Engine.KVS


def _address(text: str) -> tuple[str, int]:
    try:
        return parse_address(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _engine(text: str) -> Engine:
    try:
        return Engine(text)
    except ValueError:
        names = ", ".join(engine.value for engine in Engine)
        raise argparse.ArgumentTypeError(
            f"invalid engine {text!r} (choose from {names})"
        ) from None


def _format_address(addr: tuple[str, int]) -> str:
    host, port = addr
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser of the server command."""
    parser = argparse.ArgumentParser(prog="kvs-server")
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {VERSION}"
    )
    parser.add_argument(
        "--addr",
        type=_address,
        default=DEFAULT_ADDRESS,
        metavar="IP:PORT",
        help="Sets the listening address",
    )
    parser.add_argument(
        "--engine",
        type=_engine,
        default=None,
        metavar="ENGINE-NAME",
        help="Sets the storage engine (kvs or sled)",
    )
    return parser


def current_engine(directory: str | PathLike[str] | None = None) -> Engine | None:
    """Return the engine recorded in ``directory``, or None if there is none."""
    path = Path.cwd() if directory is None else Path(directory)
    engine_file = path / ENGINE_FILE_NAME
    if not engine_file.exists():
        return None
    try:
        content = engine_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise KvsError(f"IO error: {exc}") from exc
    try:
        return Engine(content)
    except ValueError:
        log.warning("The content of engine file is invalid: %r", content)
        return None


def open_engine(engine: Engine | str, directory: str | PathLike[str]) -> KvsEngine:
    """Open the given storage engine on the data in ``directory``."""
    if Engine(engine) is Engine.KVS:
        return KvStore.open(directory)
    return SledKvsEngine(directory)


def run(args: argparse.Namespace, directory: str | PathLike[str] | None = None) -> None:
    """Record the engine in ``directory`` and serve it until the server stops."""
    path = Path.cwd() if directory is None else Path(directory)
    engine = args.engine or DEFAULT_ENGINE
    log.info("kvs-server %s", VERSION)
    log.info("Storage engine: %s", engine)
    log.info("Listening on %s", _format_address(args.addr))

    try:
        (path / ENGINE_FILE_NAME).write_text(str(engine), encoding="utf-8")
    except OSError as exc:
        raise KvsError(f"IO error: {exc}") from exc

    with open_engine(engine, path) as store, ExecutorThreadPool(os.cpu_count() or 1) as pool:
        KvsServer(store, pool).run(args.addr)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the server command; returns the process exit status."""
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="[%(asctime)s %(levelname)s %(name)s] %(message)s",
    )
    args = build_parser().parse_args(argv)
    directory = Path.cwd()
    try:
        recorded = current_engine(directory)
        if args.engine is None:
            args.engine = recorded
        if recorded is not None and args.engine is not recorded:
            log.error("Wrong engine!")
            return 1
        run(args, directory)
    except KvsError as exc:
        log.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())