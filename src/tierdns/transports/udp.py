"""Single-shot DNS-over-UDP exchange with the upstream resolver."""

import socket
import time
from typing import Optional, Tuple


class UDPError(Exception):
    """
    Brief: DNS-over-UDP transport error (socket failure or timeout).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


def _resolve(host: str, port: int) -> Tuple[int, Tuple]:
    """Brief: Pick the address family and sockaddr for host:port."""
    try:
        infos = socket.getaddrinfo(host, int(port), type=socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise UDPError(f"cannot resolve upstream {host!r}: {e}") from e
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 5000,
    source_ip: Optional[str] = None,
    max_size: int = 65535,
) -> bytes:
    """
    Brief: Send one query datagram and wait for the reply.

    Inputs:
    - host: upstream resolver host/IP
    - port: upstream UDP port
    - query: wire-format DNS query bytes
    - timeout_ms: total time budget in milliseconds for send and receive
    - source_ip: optional local address to bind
    - max_size: receive buffer size

    Outputs:
    - bytes: wire-format DNS response

    Datagrams arriving from any address other than the upstream are dropped
    and the wait continues until the budget is spent.

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 9, b'\x00\x01', timeout_ms=100)
        ... except UDPError:
        ...     pass
    """
    family, upstream_addr = _resolve(host, port)
    deadline = time.monotonic() + timeout_ms / 1000.0
    try:
        with socket.socket(family, socket.SOCK_DGRAM) as s:
            if source_ip:
                s.bind((source_ip, 0))
            s.settimeout(timeout_ms / 1000.0)
            s.sendto(query, upstream_addr)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout("timed out")
                s.settimeout(remaining)
                data, peer = s.recvfrom(max_size)
                if peer[:2] == upstream_addr[:2]:
                    return data
    except OSError as e:
        raise UDPError(f"UDP exchange with {host}:{port} failed: {e}") from e
