# phantom

Building blocks for a proxy server:

- **FakeTCP types** (`phantom.faketcp_types`): the `TCPState` enum, header models (`TCPHeader`, `TCPOption`, `IPHeader`, `IPv6Header`), `FakeTCPPacket`, session keys for IPv4 and IPv6 (`new_session_key`, `session_key_from_ip`, `BinarySessionKey`), and the `FakeTCPSession`, `FakeTCPConfig` and `FakeTCPStats` records.
- **IPv6 helpers** (`phantom.ipv6`): `is_ipv4`, `is_ipv6`, `parse_ip_version`, conversion between addresses and integers (`ip_to_uint32`, `uint32_to_ip`, `ip_to_uint128`, `uint128_to_ip`), the byte swaps `htons` and `ntohs`, and `UnifiedSessionKey`.
- **Framed TCP** (`phantom.framing`): `FrameReader` and `FrameWriter` send and receive frames made of a 2-byte big-endian length followed by the data. `TCPServer` runs each accepted connection on its own thread and passes it to a `TCPConnectionHandler`.
- **WebSocket transport** (`phantom.websocket_server`): a `WebSocketServer` built on aiohttp. It passes binary messages on one path to a `PacketHandler` and sends back the handler's reply. Every other path gets a plain "It works!" page.
- **NAT traversal** (`phantom.nat`): `NATHelper` supports UDP hole punching and keep-alives, and binding a TCP port and sending a SYN from it. Conntrack mode raises `NATHelperError`.
- **Privileges** (`phantom.privilege`): when the process runs as root on Linux, `PrivilegeManager` returns `subprocess.Popen` keyword arguments that start a child process as an unprivileged user. It can also wrap the command in `capsh`. `apply_sandbox` adds UTS, IPC and, if requested, network namespaces. `is_root` and `current_privileges` report on the running process.
- **Sandboxing** (`phantom.sandbox`): `configure_namespaces`, and resource limits through `ResourceLimits`, `apply_resource_limits` and `resource_limits_preexec`. `AuditLogger` appends lines to a file. `ProcessMonitor` reads `/proc/<pid>/status` and the process's open file descriptors.

## Install

```
pip install .
pip install ".[test]"   # with the test dependencies
```

## Examples

Send and receive length-prefixed frames over a socket:

```python
import socket
from phantom.framing import FrameReader, FrameWriter

left, right = socket.socketpair()
FrameWriter(left, timeout=5.0).write_frame(b"hello")
assert FrameReader(right, timeout=5.0).read_frame() == b"hello"
```

A framed echo server:

```python
from phantom.framing import FrameReader, FrameWriter, TCPServer

class Echo:
    def handle_connection(self, stop_event, conn):
        reader, writer = FrameReader(conn), FrameWriter(conn)
        while not stop_event.is_set():
            writer.write_frame(reader.read_frame())

server = TCPServer("127.0.0.1:0", Echo(), "info")
server.start()
print(server.address())
server.stop()
```

A WebSocket packet server:

```python
import asyncio
from phantom.websocket_server import WebSocketServer

class Upper:
    def handle_packet(self, data, from_addr):
        return data.upper()

async def main():
    server = WebSocketServer("127.0.0.1:8080", "/ws", "", False, "", "", Upper())
    await server.start()
    await asyncio.sleep(60)
    await server.stop()

asyncio.run(main())
```

Build session keys:

```python
from phantom.faketcp_types import new_session_key
from phantom.ipv6 import UnifiedSessionKey

key = new_session_key(("10.0.0.1", 1000), ("10.0.0.2", 2000))
# "10.0.0.1:1000-10.0.0.2:2000"

unified = UnifiedSessionKey.from_addrs(("10.0.0.1", 1000), ("10.0.0.2", 2000))
assert unified.to_addrs() == (("10.0.0.1", 1000), ("10.0.0.2", 2000))
```

## What it does not do

- It does not create, obtain or renew TLS certificates. `WebSocketServer` serves TLS only from a certificate file and a key file that you supply.
- It does not download or manage the external programs a tunnel runs. The privilege and sandbox helpers only prepare `Popen` arguments for child processes that you start yourself.
- It has no command-line program. It is a library.

## Tests

```
pytest
```