"""Wire messages exchanged between client and server, and JSON stream reading."""

from __future__ import annotations

import codecs
import ipaddress
import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ProtocolError

_CHUNK_SIZE = 4096
_WHITESPACE = " \t\n\r"
_VALUE_START = frozenset('{["-0123456789tfn')
_PORT = re.compile(r"[0-9]{1,5}")


class RequestKind(Enum):
    """The operations a client can ask for."""

    GET = "Get"
    SET = "Set"
    REMOVE = "Remove"


def _single_entry(data: Any, what: str) -> tuple[str, Any]:
    if not isinstance(data, dict) or len(data) != 1:
        raise ProtocolError(f"expected a {what} object with exactly one variant, got {data!r}")
    return next(iter(data.items()))


def _expect_optional_str(value: Any, what: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise ProtocolError(f"{what} must be a string or null, got {value!r}")
    return value


def _expect_str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise ProtocolError(f"{what} must be a string, got {value!r}")
    return value


@dataclass(frozen=True)
class Request:
    """A request sent from the client to the server."""

    kind: RequestKind
    key: str
    value: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.key, str):
            raise ValueError("key must be a string")
        if self.kind is RequestKind.SET:
            if not isinstance(self.value, str):
                raise ValueError("a set request needs a string value")
        elif self.value is not None:
            raise ValueError(f"a {self.kind.value} request takes no value")

    def to_json(self) -> dict[str, Any]:
        """Return the JSON object for this request."""
        body: dict[str, Any] = {"key": self.key}
        if self.kind is RequestKind.SET:
            body["value"] = self.value
        return {self.kind.value: body}

    @classmethod
    def from_json(cls, data: Any) -> Request:
        """Build a request from a decoded JSON object."""
        tag, body = _single_entry(data, "request")
        try:
            kind = RequestKind(tag)
        except ValueError:
            raise ProtocolError(f"unknown request variant {tag!r}") from None
        if not isinstance(body, dict):
            raise ProtocolError(f"request body must be an object, got {body!r}")
        key = _expect_str(body.get("key"), "key")
        value = None
        if kind is RequestKind.SET:
            value = _expect_str(body.get("value"), "value")
        return cls(kind, key, value)


@dataclass(frozen=True)
class Response:
    """A reply from the server: a value, a plain acknowledgement, or an error."""

    kind: RequestKind | None = None
    value: str | None = None
    error: str | None = None

    def to_json(self, kind: RequestKind) -> dict[str, Any]:
        """Return the JSON object answering a request of the given kind."""
        kind = RequestKind(kind)
        if self.error is not None:
            return {"Err": self.error}
        if kind is RequestKind.GET:
            return {"Ok": self.value}
        return {"Ok": None}

    @classmethod
    def from_json(cls, data: Any, kind: RequestKind) -> Response:
        """Decode the reply to a request of the given kind."""
        kind = RequestKind(kind)
        tag, body = _single_entry(data, "response")
        if tag == "Err":
            return cls(kind=kind, error=_expect_str(body, "error message"))
        if tag != "Ok":
            raise ProtocolError(f"unknown response variant {tag!r}")
        if kind is RequestKind.GET:
            return cls(kind=kind, value=_expect_optional_str(body, "value"))
        if body is not None:
            raise ProtocolError(f"expected null acknowledgement, got {body!r}")
        return cls(kind=kind)

    def to_message(self) -> Any:
        """Return the self-describing JSON form, which names its own kind."""
        if self.error is not None:
            return {"Err": self.error}
        if self.kind is RequestKind.GET:
            return {"Get": self.value}
        if self.kind in (RequestKind.SET, RequestKind.REMOVE):
            return self.kind.value
        raise ProtocolError("response has neither a kind nor an error")

    @classmethod
    def from_message(cls, data: Any) -> Response:
        """Decode the self-describing JSON form."""
        if isinstance(data, str):
            if data in (RequestKind.SET.value, RequestKind.REMOVE.value):
                return cls(kind=RequestKind(data))
            raise ProtocolError(f"unknown response variant {data!r}")
        tag, body = _single_entry(data, "response")
        if tag == "Err":
            return cls(error=_expect_str(body, "error message"))
        if tag == RequestKind.GET.value:
            return cls(kind=RequestKind.GET, value=_expect_optional_str(body, "value"))
        if tag in (RequestKind.SET.value, RequestKind.REMOVE.value) and body is None:
            return cls(kind=RequestKind(tag))
        raise ProtocolError(f"unknown response variant {tag!r}")


def encode(value: Any) -> bytes:
    """Serialise a JSON value compactly as UTF-8."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _may_continue(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class JsonStream:
    """Reads back-to-back JSON values from a byte source.

    ``read`` is called with a size and returns bytes; an empty result means
    the source is exhausted. Values need no separator between them.
    """

    def __init__(self, read: Callable[[int], bytes]) -> None:
        self._read = read
        self._decoder = json.JSONDecoder()
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._eof = False

    def _fill(self) -> None:
        chunk = self._read(_CHUNK_SIZE)
        try:
            if chunk:
                self._buffer += self._utf8.decode(chunk)
            else:
                self._eof = True
                self._buffer += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"invalid UTF-8 in stream: {exc}") from exc

    def read_value(self) -> Any:
        """Return the next value, or None once the source ends cleanly."""
        while True:
            text = self._buffer.lstrip(_WHITESPACE)
            self._buffer = text
            if text:
                if text[0] not in _VALUE_START:
                    raise ProtocolError(f"unexpected character {text[0]!r} in stream")
                try:
                    value, end = self._decoder.raw_decode(text)
                except json.JSONDecodeError as exc:
                    if self._eof:
                        raise ProtocolError(f"invalid JSON in stream: {exc}") from exc
                else:
                    if end < len(text) or self._eof or not _may_continue(value):
                        self._buffer = text[end:]
                        return value
            elif self._eof:
                return None
            self._fill()

    def __iter__(self) -> Iterator[Any]:
        while (value := self.read_value()) is not None:
            yield value


def parse_address(text: str) -> tuple[str, int]:
    """Parse ``IP:PORT`` (or ``[IPv6]:PORT``) into a host and port."""
    host, sep, port_text = text.rpartition(":")
    if not sep or not _PORT.fullmatch(port_text):
        raise ValueError(f"invalid socket address syntax: {text!r}")
    port = int(port_text)
    if port > 65535:
        raise ValueError(f"invalid socket address syntax: {text!r}")
    try:
        if host.startswith("[") and host.endswith("]"):
            ip: ipaddress.IPv4Address | ipaddress.IPv6Address = ipaddress.IPv6Address(host[1:-1])
        else:
            ip = ipaddress.IPv4Address(host)
    except ValueError:
        raise ValueError(f"invalid socket address syntax: {text!r}") from None
    return str(ip), port