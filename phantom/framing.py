"""Length-prefixed framing over stream sockets and a threaded TCP server."""

from __future__ import annotations

import contextlib
import logging
import socket
import struct
import threading
from typing import Protocol, runtime_checkable

LENGTH_PREFIX_SIZE = 2
MAX_PACKET_SIZE = 65535
READ_TIMEOUT = 5 * 60.0
WRITE_TIMEOUT = 30.0

_ACCEPT_POLL = 1.0
_KEEPALIVE_PERIOD = 30

_LEVELS = {0: logging.ERROR, 1: logging.INFO, 2: logging.DEBUG}
_logger = logging.getLogger(__name__)


class FrameError(Exception):
    """A frame on the wire is malformed, truncated or too large."""


@runtime_checkable
class TCPConnectionHandler(Protocol):
    """Serves one accepted TCP connection until it ends or the server stops."""

    def handle_connection(self, stop_event: threading.Event, conn: socket.socket) -> None: ...


def _log_level_from_name(name: str) -> int:
    return {"debug": 2, "error": 0}.get(name, 1)


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            if not buf:
                raise EOFError("connection closed")
            raise FrameError(f"connection closed after {len(buf)} of {size} bytes")
        buf += chunk
    return bytes(buf)


class FrameReader:
    """Reads frames of the form Length(2, big-endian) + Data(Length)."""

    def __init__(self, sock: socket.socket, timeout: float | None = READ_TIMEOUT) -> None:
        self._sock = sock
        self._timeout = timeout

    def read_frame(self) -> bytes:
        """Read one complete frame.

        Raises EOFError when the peer closed between frames, FrameError for a
        bad or truncated frame and TimeoutError when the read timeout expires.
        """
        if self._timeout:
            self._sock.settimeout(self._timeout)
        (length,) = struct.unpack(">H", _recv_exactly(self._sock, LENGTH_PREFIX_SIZE))
        if length == 0:
            raise FrameError("invalid frame length: 0")
        if length > MAX_PACKET_SIZE:
            raise FrameError(f"frame too large: {length}")
        try:
            return _recv_exactly(self._sock, length)
        except EOFError as exc:
            raise FrameError(f"connection closed before {length} byte frame body") from exc


class FrameWriter:
    """Writes length-prefixed frames; safe to share between threads."""

    def __init__(self, sock: socket.socket, timeout: float | None = WRITE_TIMEOUT) -> None:
        self._sock = sock
        self._timeout = timeout
        self._lock = threading.Lock()

    def write_frame(self, data: bytes) -> None:
        """Write one frame holding data."""
        if len(data) > MAX_PACKET_SIZE:
            raise FrameError(f"data too large: {len(data)} > {MAX_PACKET_SIZE}")
        frame = struct.pack(">H", len(data)) + bytes(data)
        with self._lock:
            if self._timeout:
                self._sock.settimeout(self._timeout)
            self._sock.sendall(frame)


class TCPServer:
    """Accepts TCP connections and hands each one to a handler on its own thread."""

    def __init__(self, addr: str, handler: TCPConnectionHandler, log_level: str = "info") -> None:
        self._addr = addr
        self._handler = handler
        self._log_level = _log_level_from_name(log_level)
        self._listener: socket.socket | None = None
        self._stop_event = threading.Event()
        self._conns: set[socket.socket] = set()
        self._conns_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()

    def _log(self, level: int, message: str, *args) -> None:
        if level > self._log_level:
            return
        _logger.log(_LEVELS[level], "[TCP] " + message, *args)

    def start(self) -> None:
        """Bind the listening socket and start accepting connections."""
        if self._listener is not None:
            raise RuntimeError("server already started")
        host, port = _split_host_port(self._addr)
        if not host and socket.has_dualstack_ipv6():
            listener = socket.create_server(
                ("", port), family=socket.AF_INET6, dualstack_ipv6=True
            )
        else:
            family = socket.AF_INET6 if ":" in host else socket.AF_INET
            listener = socket.create_server((host, port), family=family)
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        self._spawn(self._accept_loop, "tcp-accept")
        self._log(1, "TCP server started: %s", self._addr)

    def address(self) -> tuple[str, int]:
        """The (host, port) the server is bound to."""
        if self._listener is None:
            raise RuntimeError("server not started")
        host, port = self._listener.getsockname()[:2]
        return host, port

    def _spawn(self, target, name: str, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._threads_lock:
            self._threads.append(thread)
        thread.start()

    def _accept_loop(self) -> None:
        listener = self._listener
        while not self._stop_event.is_set():
            try:
                conn, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._stop_event.is_set():
                    return
                self._log(2, "accept error: %s", exc)
                continue
            self._configure(conn)
            with self._conns_lock:
                self._conns.add(conn)
            self._spawn(self._serve, "tcp-conn", conn)

    @staticmethod
    def _configure(conn: socket.socket) -> None:
        with contextlib.suppress(OSError):
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            conn.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            if hasattr(socket, "TCP_KEEPIDLE"):
                conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, _KEEPALIVE_PERIOD)
            if hasattr(socket, "TCP_KEEPINTVL"):
                conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, _KEEPALIVE_PERIOD)

    def _serve(self, conn: socket.socket) -> None:
        try:
            self._handler.handle_connection(self._stop_event, conn)
        except Exception as exc:  # a failing handler must not bring down the server
            self._log(0, "handler error: %s", exc)
        finally:
            with self._conns_lock:
                self._conns.discard(conn)
            conn.close()

    @staticmethod
    def _shutdown(sock: socket.socket) -> None:
        with contextlib.suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        sock.close()

    def stop(self) -> None:
        """Stop accepting, close every connection and wait for handlers to finish."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        if self._listener is not None:
            self._shutdown(self._listener)
        with self._conns_lock:
            conns = list(self._conns)
        for conn in conns:
            self._shutdown(conn)
        while True:
            with self._threads_lock:
                pending = [t for t in self._threads if t.is_alive()]
            if not pending:
                break
            for thread in pending:
                thread.join()