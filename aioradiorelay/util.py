"""Utility functions for aioradiorelay."""

from __future__ import annotations

import socket


def get_local_ip(probe_host: str = "192.0.2.1") -> str | None:
    """Return the IPv4 address of the interface routing towards probe_host.

    Connecting a UDP socket sends no packet; it only selects the outgoing
    interface. Returns None when the host has no usable route.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect((probe_host, 9))
        except OSError:
            return None
        address: str = sock.getsockname()[0]
    return None if address.startswith("0.") else address


def stream_url(host: str, port: int, path: str) -> str:
    """Build the http URL of an endpoint, using localhost for wildcard hosts."""
    if host in ("0.0.0.0", "", "::"):
        host = "127.0.0.1"
    return f"http://{host}:{port}{path}"
