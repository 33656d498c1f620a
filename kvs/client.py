"""A blocking client for the key/value server."""

from __future__ import annotations

import socket

from .errors import KvsError, ProtocolError
from .protocol import JsonStream, Request, RequestKind, Response, encode, parse_address

Address = str | tuple[str, int]


def _resolve(addr: Address) -> tuple[str, int]:
    if isinstance(addr, str):
        return parse_address(addr)
    host, port = addr
    return host, int(port)


class KvsClient:
    """Talks to a key/value server over one TCP connection.

    Requests and responses are JSON values written back to back.
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._stream = JsonStream(self._recv)

    def _recv(self, size: int) -> bytes:
        try:
            return self._sock.recv(size)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc

    @classmethod
    def connect(cls, addr: Address) -> KvsClient:
        """Connect to the server at ``addr`` (``"IP:PORT"`` or a host/port pair)."""
        host, port = _resolve(addr)
        try:
            sock = socket.create_connection((host, port))
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        return cls(sock)

    def _request(self, request: Request) -> Response:
        try:
            self._sock.sendall(encode(request.to_json()))
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        data = self._stream.read_value()
        if data is None:
            raise ProtocolError("No response received")
        response = Response.from_json(data, request.kind)
        if response.error is not None:
            raise KvsError(response.error)
        return response

    def get(self, key: str) -> str | None:
        """Return the value of ``key`` on the server, or None if it does not exist."""
        return self._request(Request(RequestKind.GET, key)).value

    def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value`` on the server."""
        self._request(Request(RequestKind.SET, key, value))

    def remove(self, key: str) -> None:
        """Remove ``key`` on the server; raises KvsError if that fails."""
        self._request(Request(RequestKind.REMOVE, key))

    def close(self) -> None:
        """Close the connection."""
        self._sock.close()

    def __enter__(self) -> KvsClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()