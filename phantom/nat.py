"""NAT traversal helper for fake-TCP clients behind address translation."""

from __future__ import annotations

import contextlib
import ipaddress
import socket
import threading
import time
from enum import IntEnum

KEEP_ALIVE_INTERVAL = 25.0
PROBE_DATA = b"FAKETCP_PROBE"
KEEP_ALIVE_DATA = b"KA"
PROBE_COUNT = 3
PROBE_GAP = 0.05
SYN_TIMEOUT = 0.1

_ACCEPT_POLL = 0.5
_PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(block)
    for block in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "100.64.0.0/10")
)
_PROBE_TARGET = ("8.8.8.8", 53)


class NATTraversalMode(IntEnum):
    """Strategy used to keep a NAT mapping open for fake-TCP traffic."""

    AUTO = 0
    UDP_HOLE = 1
    TCP_BIND = 2
    CONNTRACK = 3
    NONE = 4


class NATHelperError(Exception):
    """The NAT helper could not be set up or could not act."""


def _set_reuse(sock: socket.socket) -> None:
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)


class NATHelper:
    """Creates and maintains the local state a NAT needs to pass fake-TCP packets."""

    def __init__(
        self,
        mode: NATTraversalMode = NATTraversalMode.AUTO,
        local_port: int = 0,
        server_addr: tuple[str, int] | None = None,
    ) -> None:
        self.mode = NATTraversalMode(mode)
        self.server_addr = server_addr
        self.keep_alive_interval = KEEP_ALIVE_INTERVAL
        self._local_addr: tuple[str, int] | None = None
        self._udp_sock: socket.socket | None = None
        self._tcp_listener: socket.socket | None = None
        self._closed = threading.Event()
        self._lock = threading.Lock()

        if self.mode is NATTraversalMode.AUTO:
            self.mode = self._detect_best_mode()

        try:
            if self.mode is NATTraversalMode.UDP_HOLE:
                self._setup_udp_hole(local_port)
            elif self.mode is NATTraversalMode.TCP_BIND:
                self._setup_tcp_bind(local_port)
            elif self.mode is NATTraversalMode.CONNTRACK:
                self._setup_conntrack(local_port)
            else:
                self._local_addr = ("0.0.0.0", local_port)
        except (OSError, NATHelperError) as exc:
            raise NATHelperError(
                f"NAT helper init failed (mode={int(self.mode)}): {exc}"
            ) from exc

    def __enter__(self) -> NATHelper:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _detect_best_mode(self) -> NATTraversalMode:
        if self._is_public_ip():
            return NATTraversalMode.NONE
        if self._has_conntrack_capability():
            return NATTraversalMode.CONNTRACK
        return NATTraversalMode.UDP_HOLE

    @staticmethod
    def _is_public_ip() -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
                probe.connect(_PROBE_TARGET)
                local_ip = ipaddress.ip_address(probe.getsockname()[0])
        except (OSError, ValueError):
            return False
        return not any(local_ip in network for network in _PRIVATE_NETWORKS)

    @staticmethod
    def _has_conntrack_capability() -> bool:
        # Manipulating the conntrack table needs netlink access; assume it is absent.
        return False

    def _setup_udp_hole(self, local_port: int) -> None:
        with self._lock:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                try:
                    sock.bind(("0.0.0.0", local_port))
                except OSError:
                    sock.close()
                    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                    sock.bind(("0.0.0.0", 0))
            except OSError as exc:
                sock.close()
                raise NATHelperError(f"UDP bind failed: {exc}") from exc
            self._udp_sock = sock
            host, port = sock.getsockname()[:2]
            self._local_addr = (host, port)

    def punch_hole(self, stop_event: threading.Event | None = None) -> None:
        """Send probe datagrams to the server so the NAT creates a mapping.

        Does nothing outside UDP hole mode. Raises NATHelperError when stopped
        early or when a probe cannot be sent.
        """
        if self.mode is not NATTraversalMode.UDP_HOLE or self._udp_sock is None:
            return
        with self._lock:
            for _ in range(PROBE_COUNT):
                if stop_event is not None and stop_event.is_set():
                    raise NATHelperError("hole punching cancelled")
                sock = self._udp_sock
                if sock is None:
                    raise NATHelperError("UDP hole punching failed: helper closed")
                try:
                    sock.sendto(PROBE_DATA, self.server_addr)
                except (OSError, TypeError) as exc:
                    raise NATHelperError(f"UDP hole punching failed: {exc}") from exc
                time.sleep(PROBE_GAP)

    def start_keep_alive(
        self, stop_event: threading.Event | None = None
    ) -> threading.Thread | None:
        """Send a small datagram to the server every keep_alive_interval seconds.

        Runs until stop_event is set or the helper is closed. Returns the
        background thread, or None outside UDP hole mode.
        """
        if self.mode is not NATTraversalMode.UDP_HOLE or self._udp_sock is None:
            return None

        def run() -> None:
            while not self._closed.wait(self.keep_alive_interval):
                if stop_event is not None and stop_event.is_set():
                    return
                sock = self._udp_sock
                if sock is None:
                    return
                with contextlib.suppress(OSError, TypeError):
                    sock.sendto(KEEP_ALIVE_DATA, self.server_addr)

        thread = threading.Thread(target=run, name="nat-keepalive", daemon=True)
        thread.start()
        return thread

    def _setup_tcp_bind(self, local_port: int) -> None:
        with self._lock:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                _set_reuse(listener)
                listener.bind(("0.0.0.0", local_port))
                listener.listen()
            except OSError as exc:
                listener.close()
                raise NATHelperError(f"TCP bind failed: {exc}") from exc
            listener.settimeout(_ACCEPT_POLL)
            self._tcp_listener = listener
            self._local_addr = ("0.0.0.0", listener.getsockname()[1])

        # Accept and drop connections so the kernel does not answer with RST.
        threading.Thread(
            target=self._discard_connections, args=(listener,), name="nat-accept", daemon=True
        ).start()

    def _discard_connections(self, listener: socket.socket) -> None:
        while not self._closed.is_set():
            try:
                conn, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError:
                return
            conn.close()

    def simulate_syn(self, server_addr: tuple[str, int]) -> None:
        """Start a real TCP connection from the bound port to leave a conntrack entry.

        Only acts in TCP bind mode; the connection attempt is expected to fail
        and its outcome is ignored.
        """
        if self.mode is not NATTraversalMode.TCP_BIND or self._local_addr is None:
            return
        with contextlib.suppress(OSError):
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as dialer:
                _set_reuse(dialer)
                dialer.bind(self._local_addr)
                dialer.settimeout(SYN_TIMEOUT)
                dialer.connect_ex(tuple(server_addr))

    def _setup_conntrack(self, local_port: int) -> None:
        self._local_addr = ("0.0.0.0", local_port)
        raise NATHelperError("conntrack mode is not implemented")

    def local_addr(self) -> tuple[str, int] | None:
        """The local (host, port) the helper occupies."""
        return self._local_addr

    def local_port(self) -> int:
        """The local port, or 0 when none is bound."""
        return self._local_addr[1] if self._local_addr is not None else 0

    def close(self) -> None:
        """Stop keep-alives and release the sockets; safe to call more than once."""
        self._closed.set()
        with self._lock:
            if self._udp_sock is not None:
                self._udp_sock.close()
                self._udp_sock = None
            if self._tcp_listener is not None:
                self._tcp_listener.close()
                self._tcp_listener = None