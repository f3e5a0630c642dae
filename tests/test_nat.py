import socket
import threading

import pytest

from phantom.nat import (
    KEEP_ALIVE_DATA,
    PROBE_COUNT,
    PROBE_DATA,
    NATHelper,
    NATHelperError,
    NATTraversalMode,
)


@pytest.fixture
def udp_server():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


def test_none_mode_keeps_requested_port():
    helper = NATHelper(NATTraversalMode.NONE, 40123, ("127.0.0.1", 1))
    try:
        assert helper.mode is NATTraversalMode.NONE
        assert helper.local_addr() == ("0.0.0.0", 40123)
        assert helper.local_port() == 40123
    finally:
        helper.close()


def test_mode_accepts_plain_int():
    helper = NATHelper(4, 5000, ("127.0.0.1", 1))
    try:
        assert helper.mode is NATTraversalMode.NONE
    finally:
        helper.close()


def test_conntrack_mode_fails():
    with pytest.raises(NATHelperError, match="conntrack"):
        NATHelper(NATTraversalMode.CONNTRACK, 0, ("127.0.0.1", 1))


def test_udp_hole_binds_port(udp_server):
    with NATHelper(NATTraversalMode.UDP_HOLE, 0, udp_server.getsockname()) as helper:
        assert helper.local_port() > 0
        assert helper.local_addr()[0] == "0.0.0.0"


def test_udp_hole_falls_back_when_port_busy(udp_server):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("0.0.0.0", 0))
    busy = blocker.getsockname()[1]
    try:
        with NATHelper(NATTraversalMode.UDP_HOLE, busy, udp_server.getsockname()) as helper:
            assert helper.local_port() > 0
            assert helper.local_port() != busy
    finally:
        blocker.close()


def test_punch_hole_sends_probes(udp_server):
    with NATHelper(NATTraversalMode.UDP_HOLE, 0, udp_server.getsockname()) as helper:
        helper.punch_hole()
        received = [udp_server.recvfrom(64) for _ in range(PROBE_COUNT)]
    assert [data for data, _ in received] == [PROBE_DATA] * PROBE_COUNT
    assert all(addr[1] == helper.local_port() for _, addr in received)


def test_punch_hole_cancelled(udp_server):
    stop = threading.Event()
    stop.set()
    with NATHelper(NATTraversalMode.UDP_HOLE, 0, udp_server.getsockname()) as helper:
        with pytest.raises(NATHelperError, match="cancelled"):
            helper.punch_hole(stop)


def test_punch_hole_noop_outside_udp_mode(udp_server):
    udp_server.settimeout(0.3)
    with NATHelper(NATTraversalMode.NONE, 0, udp_server.getsockname()) as helper:
        helper.punch_hole()
    with pytest.raises(TimeoutError):
        udp_server.recvfrom(64)


def test_keep_alive_sends_datagrams(udp_server):
    helper = NATHelper(NATTraversalMode.UDP_HOLE, 0, udp_server.getsockname())
    helper.keep_alive_interval = 0.05
    thread = helper.start_keep_alive()
    try:
        data, _ = udp_server.recvfrom(64)
        assert data == KEEP_ALIVE_DATA
    finally:
        helper.close()
    thread.join(2.0)
    assert not thread.is_alive()


def test_keep_alive_stops_on_event(udp_server):
    stop = threading.Event()
    helper = NATHelper(NATTraversalMode.UDP_HOLE, 0, udp_server.getsockname())
    helper.keep_alive_interval = 0.05
    try:
        thread = helper.start_keep_alive(stop)
        stop.set()
        thread.join(2.0)
        assert not thread.is_alive()
    finally:
        helper.close()


def test_keep_alive_not_started_outside_udp_mode():
    with NATHelper(NATTraversalMode.NONE, 0, ("127.0.0.1", 1)) as helper:
        assert helper.start_keep_alive() is None


def test_tcp_bind_accepts_and_drops_connections():
    with NATHelper(NATTraversalMode.TCP_BIND, 0, ("127.0.0.1", 1)) as helper:
        port = helper.local_port()
        assert port > 0
        with socket.create_connection(("127.0.0.1", port), timeout=2.0) as client:
            assert client.recv(16) == b""


def test_simulate_syn_noop_outside_tcp_mode():
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(0.3)
    try:
        with NATHelper(NATTraversalMode.NONE, 0, ("127.0.0.1", 1)) as helper:
            helper.simulate_syn(listener.getsockname())
        with pytest.raises(TimeoutError):
            listener.accept()
    finally:
        listener.close()


def test_close_is_idempotent_and_stops_probes(udp_server):
    udp_server.settimeout(0.3)
    helper = NATHelper(NATTraversalMode.UDP_HOLE, 0, udp_server.getsockname())
    port = helper.local_port()
    helper.close()
    helper.close()
    helper.punch_hole()
    assert helper.local_port() == port
    with pytest.raises(TimeoutError):
        udp_server.recvfrom(64)