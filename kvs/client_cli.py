"""Command-line client for the key/value server."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from .client import KvsClient
from .errors import KvsError
from .protocol import parse_address

VERSION = "0.1.0"
DEFAULT_ADDRESS = "127.0.0.1:4000"


def _address(text: str) -> tuple[str, int]:
    try:
        return parse_address(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _add_address(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--addr",
        type=_address,
        default=DEFAULT_ADDRESS,
        metavar="IP:PORT",
        help="Sets the server address",
    )


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser of the client command."""
    parser = argparse.ArgumentParser(prog="kvs-client")
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {VERSION}"
    )
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    get = commands.add_parser(
        "get", help="Get the string value of a given string key"
    )
    get.add_argument("key", metavar="KEY", help="A string key")
    _add_address(get)

    set_ = commands.add_parser("set", help="Set the value of a string key to a string")
    set_.add_argument("key", metavar="KEY", help="A string key")
    set_.add_argument("value", metavar="VALUE", help="The string value of the key")
    _add_address(set_)

    remove = commands.add_parser("rm", help="Remove a given string key")
    remove.add_argument("key", metavar="KEY", help="A string key")
    _add_address(remove)
    return parser


def run(args: argparse.Namespace) -> None:
    """Carry out the parsed command against the server."""
    with KvsClient.connect(args.addr) as client:
        if args.command == "get":
            value = client.get(args.key)
            print(value if value is not None else "Key not found")
        elif args.command == "set":
            client.set(args.key, args.value)
        else:
            client.remove(args.key)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the client command; returns the process exit status."""
    args = build_parser().parse_args(argv)
    try:
        run(args)
    except KvsError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())