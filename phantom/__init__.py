"""FakeTCP types, framed TCP and WebSocket transports, NAT traversal and privilege helpers for a proxy server."""

__version__ = "4.0.0"