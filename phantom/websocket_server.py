"""WebSocket transport that carries binary packets behind an ordinary-looking site."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import time
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from aiohttp import WSMsgType, web

from phantom.faketcp_types import normalize_ip

READ_TIMEOUT = 5 * 60.0
WRITE_TIMEOUT = 30.0
IDLE_TIMEOUT = 10 * 60.0
CLEANUP_INTERVAL = 30.0
SHUTDOWN_TIMEOUT = 5.0

FAKE_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>Welcome</title>
    <meta charset="utf-8">
</head>
<body>
    <h1>It works!</h1>
    <p>This is the default page.</p>
</body>
</html>"""

_LEVELS = {0: logging.ERROR, 1: logging.INFO, 2: logging.DEBUG}
_logger = logging.getLogger(__name__)
_CLOSED = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR)


@runtime_checkable
class PacketHandler(Protocol):
    """Handles one packet and returns the reply, or None for no reply."""

    def handle_packet(self, data: bytes, from_addr: tuple[str, int]) -> bytes | None: ...


@dataclass
class WSSession:
    """One connected WebSocket peer."""

    conn: web.WebSocketResponse
    addr: tuple[str, int]
    last_active: float = field(default_factory=time.monotonic)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _addr_text(addr) -> str:
    try:
        host = str(normalize_ip(addr[0]))
    except ValueError:
        host = str(addr[0])
    port = int(addr[1])
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _remote_addr(request: web.Request) -> tuple[str, int]:
    peer = request.transport.get_extra_info("peername") if request.transport else None
    if peer:
        return str(peer[0]), int(peer[1])
    return "127.0.0.1", 0


class WebSocketServer:
    """Serves packets over WebSocket on one path and a placeholder page elsewhere."""

    def __init__(
        self,
        addr: str,
        path: str,
        host: str,
        use_tls: bool,
        cert_file: str,
        key_file: str,
        handler: PacketHandler,
        log_level: str = "info",
    ) -> None:
        self._addr = addr
        self._path = path
        self._host = host
        self._use_tls = use_tls
        self._cert_file = cert_file
        self._key_file = key_file
        self._handler = handler
        self._log_level = {"debug": 2, "error": 0}.get(log_level, 1)
        self._sessions: dict[int, WSSession] = {}
        self._active = 0
        self._stopping = asyncio.Event()
        self._runner: web.AppRunner | None = None
        self._cleanup_task: asyncio.Task | None = None

    def _log(self, level: int, message: str, *args) -> None:
        if level > self._log_level:
            return
        _logger.log(_LEVELS[level], "[WebSocket] " + message, *args)

    async def start(self) -> None:
        """Bind the HTTP(S) listener and begin serving."""
        if self._runner is not None:
            raise RuntimeError("server already started")
        app = web.Application()
        app.router.add_get(self._path, self._handle_websocket)
        app.router.add_route("*", "/{tail:.*}", self._handle_fake_page)

        ssl_context = None
        if self._use_tls:
            ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
            ssl_context.load_cert_chain(self._cert_file, self._key_file)

        host, port = _split_host_port(self._addr)
        runner = web.AppRunner(app, handle_signals=False)
        await runner.setup()
        site = web.TCPSite(runner, host or None, port, ssl_context=ssl_context)
        try:
            await site.start()
        except BaseException:
            await runner.cleanup()
            raise
        self._runner = runner
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        protocol = "HTTPS" if self._use_tls else "HTTP"
        self._log(1, "WebSocket server started: %s (%s%s)", self._addr, protocol, self._path)

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        if self._host and request.host != self._host:
            self._log(2, "host mismatch: %s != %s", request.host, self._host)
            return web.Response(status=404, text="Not Found")

        ws = web.WebSocketResponse()
        if not ws.can_prepare(request).ok:
            self._log(2, "websocket upgrade failed for %s", request.remote)
            return web.Response(status=400, text="Bad Request")
        await ws.prepare(request)

        addr = _remote_addr(request)
        session = WSSession(conn=ws, addr=addr)
        self._active += 1
        self._sessions[id(ws)] = session
        self._log(2, "websocket connection: %s", _addr_text(addr))
        try:
            await self._read_loop(session)
        finally:
            self._active -= 1
            self._sessions.pop(id(ws), None)
            await ws.close()
        return ws

    async def _read_loop(self, session: WSSession) -> None:
        ws = session.conn
        while not self._stopping.is_set():
            try:
                msg = await ws.receive(timeout=READ_TIMEOUT)
            except asyncio.TimeoutError:
                self._log(2, "websocket read timeout: %s", _addr_text(session.addr))
                return
            if msg.type in _CLOSED:
                return
            if msg.type != WSMsgType.BINARY:
                continue
            session.last_active = time.monotonic()
            response = self._handler.handle_packet(msg.data, session.addr)
            if response is None:
                continue
            try:
                async with session.lock:
                    await asyncio.wait_for(ws.send_bytes(response), WRITE_TIMEOUT)
            except (ConnectionError, asyncio.TimeoutError) as exc:
                self._log(2, "websocket write error: %s", exc)
                return

    async def _handle_fake_page(self, request: web.Request) -> web.Response:
        return web.Response(text=FAKE_PAGE, content_type="text/html", charset="utf-8")

    async def send_to(self, data: bytes, addr) -> None:
        """Send a binary message to the peer at addr; LookupError if none is connected."""
        target = _addr_text(addr)
        session = next(
            (s for s in self._sessions.values() if _addr_text(s.addr) == target), None
        )
        if session is None:
            raise LookupError(f"session not found: {target}")
        async with session.lock:
            await asyncio.wait_for(session.conn.send_bytes(data), WRITE_TIMEOUT)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL)
            now = time.monotonic()
            for key, session in list(self._sessions.items()):
                if now - session.last_active > IDLE_TIMEOUT:
                    self._sessions.pop(key, None)
                    with contextlib.suppress(Exception):
                        await session.conn.close()

    def active_conns(self) -> int:
        """Number of WebSocket connections being served."""
        return self._active

    async def stop(self) -> None:
        """Close every connection and shut the HTTP server down."""
        self._stopping.set()
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        for session in list(self._sessions.values()):
            with contextlib.suppress(Exception):
                await asyncio.wait_for(session.conn.close(code=1000), 1.0)
        if self._runner is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._runner.cleanup(), SHUTDOWN_TIMEOUT)
            self._runner = None