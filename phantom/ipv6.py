"""IPv4/IPv6 helpers and a version-independent session key."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from enum import IntEnum

from phantom.faketcp_types import normalize_ip

_MAPPED_PREFIX = 0xFFFF << 32
_U64 = (1 << 64) - 1


class IPVersion(IntEnum):
    """Which IP versions an address or listener uses."""

    DUAL_STACK = 0
    IPV4_ONLY = 4
    IPV6_ONLY = 6


def _normalized(ip):
    try:
        return normalize_ip(ip)
    except ValueError:
        return None


def is_ipv6(ip) -> bool:
    """True for a valid address that has no IPv4 form."""
    return isinstance(_normalized(ip), ipaddress.IPv6Address)


def is_ipv4(ip) -> bool:
    """True for a valid IPv4 or IPv4-mapped IPv6 address."""
    return isinstance(_normalized(ip), ipaddress.IPv4Address)


def parse_ip_version(addr) -> IPVersion:
    """The IP version of a socket address; dual stack when it has no host."""
    if addr is None or not addr[0]:
        return IPVersion.DUAL_STACK
    if is_ipv4(addr[0]):
        return IPVersion.IPV4_ONLY
    return IPVersion.IPV6_ONLY


def ip_to_uint32(ip) -> int:
    """The IPv4 address as an integer, or 0 if it has no IPv4 form."""
    normalized = _normalized(ip)
    if not isinstance(normalized, ipaddress.IPv4Address):
        return 0
    return int(normalized)


def uint32_to_ip(n: int) -> ipaddress.IPv4Address:
    """The IPv4 address for a 32-bit integer."""
    return ipaddress.IPv4Address(n)


def _to_int16(ip) -> int | None:
    normalized = _normalized(ip)
    if normalized is None:
        return None
    if isinstance(normalized, ipaddress.IPv4Address):
        return _MAPPED_PREFIX | int(normalized)
    return int(normalized)


def ip_to_uint128(ip) -> tuple[int, int]:
    """The 16-byte form of an address split into high and low 64-bit halves."""
    value = _to_int16(ip)
    if value is None:
        return 0, 0
    return value >> 64, value & _U64


def uint128_to_ip(high: int, low: int) -> ipaddress.IPv6Address:
    """The IPv6 address for two 64-bit halves."""
    return ipaddress.IPv6Address(((high & _U64) << 64) | (low & _U64))


def htons(v: int) -> int:
    """Swap the bytes of a 16-bit value."""
    v &= 0xFFFF
    return ((v >> 8) | (v << 8)) & 0xFFFF


def ntohs(v: int) -> int:
    """Swap the bytes of a 16-bit value."""
    return htons(v)


@dataclass(frozen=True)
class UnifiedSessionKey:
    """Session key holding either IP version; ports are stored byte-swapped."""

    src_ip_high: int = 0
    src_ip_low: int = 0
    dst_ip_high: int = 0
    dst_ip_low: int = 0
    src_port: int = 0
    dst_port: int = 0
    ip_ver: int = 0

    @classmethod
    def from_addrs(cls, src, dst) -> UnifiedSessionKey:
        src_port = htons(int(src[1]))
        dst_port = htons(int(dst[1]))
        if is_ipv4(src[0]):
            return cls(
                src_ip_low=ip_to_uint32(src[0]),
                dst_ip_low=ip_to_uint32(dst[0]),
                src_port=src_port,
                dst_port=dst_port,
                ip_ver=4,
            )
        src_high, src_low = ip_to_uint128(src[0])
        dst_high, dst_low = ip_to_uint128(dst[0])
        return cls(
            src_ip_high=src_high,
            src_ip_low=src_low,
            dst_ip_high=dst_high,
            dst_ip_low=dst_low,
            src_port=src_port,
            dst_port=dst_port,
            ip_ver=6,
        )

    def to_addrs(self) -> tuple[tuple[str, int], tuple[str, int]]:
        """The (host, port) source and destination addresses."""
        if self.ip_ver == 4:
            src_ip = uint32_to_ip(self.src_ip_low & 0xFFFFFFFF)
            dst_ip = uint32_to_ip(self.dst_ip_low & 0xFFFFFFFF)
        else:
            src_ip = uint128_to_ip(self.src_ip_high, self.src_ip_low)
            dst_ip = uint128_to_ip(self.dst_ip_high, self.dst_ip_low)
        return (str(src_ip), ntohs(self.src_port)), (str(dst_ip), ntohs(self.dst_port))