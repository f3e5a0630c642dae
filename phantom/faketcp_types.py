"""Packet, header, session and configuration types for the fake-TCP transport."""

from __future__ import annotations

import ipaddress
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import NewType, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
# A socket-style address: (host, port) or (host, port, flowinfo, scope_id).
Address = tuple

# Header sizes
TCP_HEADER_MIN_SIZE = 20
TCP_HEADER_MAX_SIZE = 60
IP_HEADER_MIN_SIZE = 20
IP_HEADER_MAX_SIZE = 60
IPV6_HEADER_SIZE = 40
IPV6_PSEUDO_HDR_SIZE = 40
PSEUDO_HEADER_SIZE = 12
PSEUDO_HEADER_V6_SIZE = 40

# TCP flags
TCP_FLAG_FIN = 0x01
TCP_FLAG_SYN = 0x02
TCP_FLAG_RST = 0x04
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10
TCP_FLAG_URG = 0x20
TCP_FLAG_ECE = 0x40
TCP_FLAG_CWR = 0x80

# TCP option kinds
TCP_OPT_END = 0
TCP_OPT_NOP = 1
TCP_OPT_MSS = 2
TCP_OPT_WSCALE = 3
TCP_OPT_SACK_PERM = 4
TCP_OPT_SACK = 5
TCP_OPT_TIMESTAMP = 8

# Defaults
DEFAULT_TCP_MSS = 1460
DEFAULT_TCP_MSS_V6 = 1440
DEFAULT_TCP_WINDOW = 65535
DEFAULT_TCP_TTL = 64
DEFAULT_MAX_SEGMENT = 1400

# Timeouts, in seconds
TCP_CONN_TIMEOUT = 30.0
TCP_IDLE_TIMEOUT = 5 * 60.0
TCP_RETRANSMIT_MIN = 0.2
TCP_RETRANSMIT_MAX = 60.0
TCP_TIME_WAIT_DURATION = 2 * 60.0

# Buffers
TCP_RECV_BUFFER_SIZE = 256 * 1024
TCP_SEND_BUFFER_SIZE = 256 * 1024

# IP versions
IP_VERSION_4 = 4
IP_VERSION_6 = 6

# Protocol numbers
PROTOCOL_TCP = 6
PROTOCOL_UDP = 17
PROTOCOL_ICMP = 1

SessionKey = NewType("SessionKey", str)


class TCPState(IntEnum):
    """TCP connection state."""

    CLOSED = 0
    LISTEN = 1
    SYN_SENT = 2
    SYN_RECEIVED = 3
    ESTABLISHED = 4
    FIN_WAIT_1 = 5
    FIN_WAIT_2 = 6
    CLOSE_WAIT = 7
    CLOSING = 8
    LAST_ACK = 9
    TIME_WAIT = 10

    def __str__(self) -> str:
        return self.name


@dataclass
class TCPOption:
    """A single TCP option."""

    kind: int
    length: int
    data: bytes = b""


@dataclass
class TCPHeader:
    """TCP header fields."""

    src_port: int = 0
    dst_port: int = 0
    seq_num: int = 0
    ack_num: int = 0
    data_offset: int = 0
    flags: int = 0
    window: int = 0
    checksum: int = 0
    urgent_ptr: int = 0
    options: list[TCPOption] = field(default_factory=list)


@dataclass
class IPHeader:
    """IPv4 header fields."""

    version: int = 4
    ihl: int = 5
    tos: int = 0
    total_len: int = 0
    id: int = 0
    flags: int = 0
    frag_offset: int = 0
    ttl: int = 0
    protocol: int = 0
    checksum: int = 0
    src_ip: IPAddress | None = None
    dst_ip: IPAddress | None = None

    def payload_length(self) -> int:
        """Length of the data following the header."""
        return self.total_len - self.ihl * 4


@dataclass
class IPv6Header:
    """IPv6 header fields."""

    version: int = 6
    traffic_class: int = 0
    flow_label: int = 0
    payload_len: int = 0
    next_header: int = 0
    hop_limit: int = 0
    src_ip: IPAddress | None = None
    dst_ip: IPAddress | None = None

    @property
    def protocol(self) -> int:
        """The upper-layer protocol number."""
        return self.next_header

    def payload_length(self) -> int:
        """Length of the data following the header."""
        return self.payload_len


UnifiedIPHeader = Union[IPHeader, IPv6Header]


@dataclass
class FakeTCPPacket:
    """A complete fake-TCP packet carried over IPv4 or IPv6."""

    tcp_header: TCPHeader | None = None
    payload: bytes = b""
    ipv4_header: IPHeader | None = None
    ipv6_header: IPv6Header | None = None

    def is_ipv6(self) -> bool:
        return self.ipv6_header is not None

    def ip_header(self) -> UnifiedIPHeader | None:
        """Whichever IP header is present, preferring IPv6."""
        if self.ipv6_header is not None:
            return self.ipv6_header
        return self.ipv4_header

    def src_ip(self) -> IPAddress | None:
        header = self.ip_header()
        return header.src_ip if header is not None else None

    def dst_ip(self) -> IPAddress | None:
        header = self.ip_header()
        return header.dst_ip if header is not None else None


def _parse_ip(value) -> IPAddress | None:
    if value is None:
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    if isinstance(value, (bytes, bytearray)):
        if not value:
            return None
        return ipaddress.ip_address(bytes(value))
    text = str(value)
    if not text:
        return None
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    return ipaddress.ip_address(text)


def normalize_ip(ip) -> IPAddress | None:
    """Return the IPv4 form of an address when it has one, else the IPv6 form.

    Raises ValueError for text that is not an IP address.
    """
    parsed = _parse_ip(ip)
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        return parsed.ipv4_mapped
    return parsed


def is_ipv6_ip(ip) -> bool:
    """True if the address has no IPv4 form."""
    return isinstance(normalize_ip(ip), ipaddress.IPv6Address)


def is_ipv6_addr(addr) -> bool:
    """True if the host of a socket address has no IPv4 form."""
    if addr is None:
        return False
    return is_ipv6_ip(addr[0])


def _ip_text(ip) -> str:
    normalized = normalize_ip(ip)
    return "" if normalized is None else str(normalized)


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _format_addr(addr) -> str:
    return _join_host_port(_ip_text(addr[0]), int(addr[1]))


def new_session_key(local, remote) -> SessionKey:
    """Key of the form "localIP:localPort-remoteIP:remotePort"."""
    return SessionKey(f"{_format_addr(local)}-{_format_addr(remote)}")


def session_key_from_ip(local_ip, local_port: int, remote_ip, remote_port: int) -> SessionKey:
    """Build a session key from separate IPs and 16-bit ports."""
    local = _join_host_port(_ip_text(local_ip), local_port & 0xFFFF)
    remote = _join_host_port(_ip_text(remote_ip), remote_port & 0xFFFF)
    return SessionKey(f"{local}-{remote}")


def _ip16(ip) -> bytes:
    parsed = _parse_ip(ip)
    if parsed is None:
        return bytes(16)
    if isinstance(parsed, ipaddress.IPv4Address):
        return bytes(10) + b"\xff\xff" + parsed.packed
    return parsed.packed


@dataclass(frozen=True)
class BinarySessionKey:
    """Fixed-size session key; IPv4 addresses occupy the first four bytes."""

    local_ip: bytes = bytes(16)
    remote_ip: bytes = bytes(16)
    local_port: int = 0
    remote_port: int = 0
    is_ipv6: bool = False

    @classmethod
    def from_addrs(cls, local, remote) -> BinarySessionKey:
        local_v4 = normalize_ip(local[0])
        remote_v4 = normalize_ip(remote[0])
        local_port = int(local[1]) & 0xFFFF
        remote_port = int(remote[1]) & 0xFFFF
        if isinstance(local_v4, ipaddress.IPv4Address) and isinstance(
            remote_v4, ipaddress.IPv4Address
        ):
            return cls(
                local_ip=local_v4.packed + bytes(12),
                remote_ip=remote_v4.packed + bytes(12),
                local_port=local_port,
                remote_port=remote_port,
                is_ipv6=False,
            )
        return cls(
            local_ip=_ip16(local[0]),
            remote_ip=_ip16(remote[0]),
            local_port=local_port,
            remote_port=remote_port,
            is_ipv6=True,
        )

    def __str__(self) -> str:
        width = 16 if self.is_ipv6 else 4
        local = _join_host_port(_ip_text(self.local_ip[:width]), self.local_port)
        remote = _join_host_port(_ip_text(self.remote_ip[:width]), self.remote_port)
        return f"{local}-{remote}"


@dataclass
class _Segment:
    seq_num: int
    data: bytes
    sent_at: float = field(default_factory=time.time)
    retries: int = 0
    acked: bool = False


@dataclass(kw_only=True)
class FakeTCPSession:
    """State of one fake-TCP connection."""

    local_addr: Address | None = None
    remote_addr: Address | None = None
    is_ipv6: bool = False

    state: TCPState = TCPState.CLOSED

    local_seq: int = 0
    local_ack: int = 0
    remote_seq: int = 0
    remote_ack: int = 0

    local_window: int = 0
    remote_window: int = 0

    mss: int = 0
    window_scale: int = 0
    sack_permitted: bool = False
    timestamps: bool = False

    ts_val: int = 0
    ts_ecr: int = 0
    last_ts_val: int = 0

    retransmit_queue: list[_Segment] = field(default_factory=list)
    retransmit_timer: threading.Timer | None = None
    rto: float = 0.0
    srtt: float = 0.0
    rttvar: float = 0.0

    bytes_sent: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    packets_recv: int = 0
    retransmits: int = 0

    created_at: float = field(default_factory=time.time)
    last_active: float = field(default_factory=time.time)
    established_at: float | None = None

    recv_buffer: bytearray = field(default_factory=bytearray)
    send_buffer: bytearray = field(default_factory=bytearray)

    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def effective_mss(self) -> int:
        """The negotiated MSS, or the default for the session's IP version."""
        if self.mss > 0:
            return self.mss
        return DEFAULT_TCP_MSS_V6 if self.is_ipv6 else DEFAULT_TCP_MSS


@dataclass
class FakeTCPConfig:
    """Fake-TCP configuration with its default values."""

    listen_addr: str = ":54322"
    interface: str = ""

    mss: int = DEFAULT_TCP_MSS
    mss_v6: int = DEFAULT_TCP_MSS_V6
    window_size: int = DEFAULT_TCP_WINDOW
    window_scale: int = 7

    conn_timeout: float = TCP_CONN_TIMEOUT
    idle_timeout: float = TCP_IDLE_TIMEOUT
    retransmit_min: float = TCP_RETRANSMIT_MIN
    retransmit_max: float = TCP_RETRANSMIT_MAX

    enable_timestamps: bool = True
    enable_sack: bool = True
    enable_window_scale: bool = True

    ttl: int = DEFAULT_TCP_TTL
    hop_limit: int = DEFAULT_TCP_TTL
    tos: int = 0
    traffic_class: int = 0
    randomize_isn: bool = True

    enable_ipv6: bool = True
    prefer_ipv6: bool = False
    flow_label: int = 0

    log_level: str = "info"

    def mss_for_version(self, is_ipv6: bool) -> int:
        """The configured MSS for an IP version, falling back to the default."""
        if is_ipv6:
            return self.mss_v6 if self.mss_v6 > 0 else DEFAULT_TCP_MSS_V6
        return self.mss if self.mss > 0 else DEFAULT_TCP_MSS


@dataclass
class FakeTCPStats:
    """Counters for the fake-TCP transport."""

    active_sessions: int = 0
    total_sessions: int = 0
    success_handshakes: int = 0
    failed_handshakes: int = 0

    ipv6_sessions: int = 0
    ipv4_sessions: int = 0

    bytes_sent: int = 0
    bytes_received: int = 0
    packets_sent: int = 0
    packets_received: int = 0

    retransmits: int = 0
    timeout_retrans: int = 0
    fast_retrans: int = 0

    checksum_errors: int = 0
    invalid_packets: int = 0
    dropped_packets: int = 0