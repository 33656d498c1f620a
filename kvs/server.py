"""A blocking TCP server in front of a storage engine."""

from __future__ import annotations

import functools
import logging
import selectors
import socket
import threading

from .engine import KvsEngine
from .errors import KvsError
from .protocol import JsonStream, Request, RequestKind, Response, encode, parse_address
from .thread_pool import ThreadPool

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1

Address = str | tuple[str, int]


def _resolve(addr: Address) -> tuple[str, int]:
    if isinstance(addr, str):
        return parse_address(addr)
    host, port = addr
    return host, int(port)


def handle_request(engine: KvsEngine, request: Request) -> Response:
    """Run one request against ``engine``; engine errors become error responses."""
    try:
        if request.kind is RequestKind.GET:
            return Response(kind=request.kind, value=engine.get(request.key))
        if request.kind is RequestKind.SET:
            assert request.value is not None
            engine.set(request.key, request.value)
        else:
            engine.remove(request.key)
        return Response(kind=request.kind)
    except KvsError as exc:
        return Response(kind=request.kind, error=str(exc))


class KvsServer:
    """Serves a storage engine to clients over TCP.

    Without a pool each connection is served on the accepting thread, one at
    a time; with a pool every connection is handed to it.
    """

    def __init__(self, engine: KvsEngine, pool: ThreadPool | None = None) -> None:
        self.engine = engine
        self.pool = pool
        self.address: tuple[str, int] | None = None
        self._listener: socket.socket | None = None
        self._stop = threading.Event()
        self._done = threading.Event()
        self._done.set()
        self._lock = threading.Lock()
        self._connections: set[socket.socket] = set()

    def bind(self, addr: Address) -> tuple[str, int]:
        """Listen on ``addr`` and return the address actually bound."""
        host, port = _resolve(addr)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            listener = socket.create_server((host, port), family=family)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        self._listener = listener
        self._stop.clear()
        self.address = tuple(listener.getsockname()[:2])  # type: ignore[assignment]
        assert self.address is not None
        return self.address

    def serve_forever(self) -> None:
        """Accept and serve connections until shutdown() is called."""
        listener = self._listener
        if listener is None:
            if self._stop.is_set():
                return
            raise KvsError("the server is not bound")
        self._done.clear()
        try:
            with selectors.DefaultSelector() as selector:
                selector.register(listener, selectors.EVENT_READ)
                while not self._stop.is_set():
                    if not selector.select(timeout=_POLL_INTERVAL):
                        continue
                    try:
                        conn, peer = listener.accept()
                    except OSError as exc:
                        log.error("Connection failed: %s", exc)
                        continue
                    conn.setblocking(True)
                    self._dispatch(conn, peer)
        finally:
            self._listener = None
            listener.close()
            self._done.set()

    def run(self, addr: Address) -> None:
        """Bind to ``addr`` and serve until shutdown() is called."""
        self.bind(addr)
        self.serve_forever()

    def shutdown(self) -> None:
        """Stop accepting, drop open connections and wait for the loop to end."""
        self._stop.set()
        with self._lock:
            for conn in self._connections:
                try:
                    conn.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
        self._done.wait()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.close()

    def _dispatch(self, conn: socket.socket, peer: object) -> None:
        if self.pool is None:
            self._serve_client(conn, peer)
            return
        try:
            self.pool.spawn(functools.partial(self._serve_client, conn, peer))
        except RuntimeError as exc:
            log.error("Error on serving client: %s", exc)
            conn.close()

    def _serve_client(self, conn: socket.socket, peer: object) -> None:
        with self._lock:
            self._connections.add(conn)
        try:
            with conn:
                self._serve(conn, peer)
        except (KvsError, OSError) as exc:
            log.error("Error on serving client: %s", exc)
        finally:
            with self._lock:
                self._connections.discard(conn)

    def _serve(self, conn: socket.socket, peer: object) -> None:
        for data in JsonStream(conn.recv):
            request = Request.from_json(data)
            log.debug("Receive request from %s: %s", peer, request)
            response = handle_request(self.engine, request)
            conn.sendall(encode(response.to_json(request.kind)))
            log.debug("Response sent to %s: %s", peer, response)