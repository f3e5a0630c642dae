import ipaddress

import pytest

from phantom.ipv6 import (
    IPVersion,
    UnifiedSessionKey,
    htons,
    ip_to_uint128,
    ip_to_uint32,
    is_ipv4,
    is_ipv6,
    ntohs,
    parse_ip_version,
    uint128_to_ip,
    uint32_to_ip,
)


@pytest.mark.parametrize(
    "ip, v4, v6",
    [
        ("10.1.2.3", True, False),
        ("::ffff:10.1.2.3", True, False),
        ("2001:db8::1", False, True),
        ("::1", False, True),
        (None, False, False),
        ("not-an-ip", False, False),
    ],
)
def test_version_predicates(ip, v4, v6):
    assert is_ipv4(ip) is v4
    assert is_ipv6(ip) is v6


def test_parse_ip_version():
    assert parse_ip_version(None) is IPVersion.DUAL_STACK
    assert parse_ip_version(("", 80)) is IPVersion.DUAL_STACK
    assert parse_ip_version(("192.168.0.1", 80)) is IPVersion.IPV4_ONLY
    assert parse_ip_version(("2001:db8::1", 80)) is IPVersion.IPV6_ONLY


def test_ip_version_values():
    assert parse_ip_version(None) == 0
    assert parse_ip_version(("192.168.0.1", 80)) == 4
    assert parse_ip_version(("2001:db8::1", 80)) == 6


@pytest.mark.parametrize("text", ["0.0.0.0", "10.20.30.40", "255.255.255.255"])
def test_uint32_round_trip(text):
    assert uint32_to_ip(ip_to_uint32(text)) == ipaddress.IPv4Address(text)


def test_uint32_known_value():
    assert uint32_to_ip(0x7F000001) == ipaddress.IPv4Address("127.0.0.1")


def test_ip_to_uint32_without_ipv4_form():
    assert ip_to_uint32("2001:db8::1") == 0
    assert ip_to_uint32(None) == 0


@pytest.mark.parametrize("text", ["::", "::1", "2001:db8::1", "fe80::dead:beef"])
def test_uint128_round_trip(text):
    high, low = ip_to_uint128(text)
    assert uint128_to_ip(high, low) == ipaddress.IPv6Address(text)


def test_uint128_of_ipv4_is_mapped_form():
    high, low = ip_to_uint128("1.2.3.4")
    assert high == 0
    assert low == 0xFFFF01020304
    assert uint128_to_ip(high, low).ipv4_mapped == ipaddress.IPv4Address("1.2.3.4")


def test_uint128_of_invalid():
    assert ip_to_uint128(None) == (0, 0)
    assert ip_to_uint128("garbage") == (0, 0)


def test_htons_known_value():
    assert htons(0x1234) == 0x3412


@pytest.mark.parametrize("value", [0, 1, 80, 443, 0x1234, 54321, 0xFFFF])
def test_htons_is_involution(value):
    assert ntohs(htons(value)) == value
    assert ntohs(value) == htons(value)


def test_unified_key_ipv4_round_trip():
    src = ("192.168.1.10", 5000)
    dst = ("10.0.0.1", 443)
    key = UnifiedSessionKey.from_addrs(src, dst)
    assert key.ip_ver == 4
    assert key.src_ip_high == 0
    assert key.src_port == htons(5000)
    assert key.to_addrs() == (src, dst)


def test_unified_key_ipv6_round_trip():
    src = ("2001:db8::10", 5000)
    dst = ("2001:db8::1", 443)
    key = UnifiedSessionKey.from_addrs(src, dst)
    assert key.ip_ver == 6
    assert key.dst_port == htons(443)
    assert key.to_addrs() == (src, dst)


def test_unified_key_mapped_source_uses_ipv4():
    key = UnifiedSessionKey.from_addrs(("::ffff:10.0.0.5", 1), ("10.0.0.6", 2))
    assert key.ip_ver == 4
    assert key.to_addrs() == (("10.0.0.5", 1), ("10.0.0.6", 2))


def test_unified_key_is_hashable():
    a = UnifiedSessionKey.from_addrs(("10.0.0.1", 1), ("10.0.0.2", 2))
    b = UnifiedSessionKey.from_addrs(("10.0.0.1", 1), ("10.0.0.2", 2))
    assert a == b
    assert {a: "x"}[b] == "x"