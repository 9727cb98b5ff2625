"""Single-shot DNS-over-TCP exchange (two-byte length framing, RFC 7766)."""

import socket
import time
from typing import Optional

MAX_MESSAGE_SIZE = 65535


class TCPError(Exception):
    """
    Brief: DNS-over-TCP transport error (connect, read/write, framing).

    Inputs:
      - message: Error description.
    Outputs:
      - Exception instance.
    """

    pass


def _recv_exact(sock: socket.socket, n: int, deadline: Optional[float] = None) -> bytes:
    """
    Receive up to n bytes, stopping early only at EOF.

    Inputs:
      - sock: Connected socket
      - n: Number of bytes wanted
      - deadline: Optional time.monotonic() value by which all n bytes must
        have arrived; socket.timeout is raised once it passes.
    Outputs:
      - bytes: n bytes, or fewer if the peer closed the connection.
    """
    buf = bytearray()
    while len(buf) < n:
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("timed out")
            sock.settimeout(remaining)
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _read_message(sock: socket.socket, deadline: Optional[float] = None) -> bytes:
    prefix = _recv_exact(sock, 2, deadline)
    if len(prefix) != 2:
        raise TCPError("short read on length header")
    expected = int.from_bytes(prefix, "big")
    body = _recv_exact(sock, expected, deadline)
    if len(body) != expected:
        raise TCPError(f"short read on body ({len(body)} of {expected} bytes)")
    return body


def tcp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    connect_timeout_ms: int = 5000,
    read_timeout_ms: int = 5000,
    write_timeout_ms: int = 5000,
) -> bytes:
    """
    Send one framed query over a fresh TCP connection and read one reply.

    Inputs:
      - host: Upstream resolver host/IP.
      - port: Upstream TCP port.
      - query: Wire-format DNS query bytes (at most 65535 bytes).
      - connect_timeout_ms: Bound on establishing the connection.
      - read_timeout_ms: Bound on reading the whole reply, length prefix
        included, however the upstream splits it into segments.
      - write_timeout_ms: Bound on sending the framed query.
    Outputs:
      - bytes: Wire-format DNS response.

    Example:
      >>> resp = tcp_query('8.8.8.8', 53, DNSRecord.question('example.com').pack())
    """
    if len(query) > MAX_MESSAGE_SIZE:
        raise TCPError(f"query of {len(query)} bytes does not fit a TCP frame")
    framed = len(query).to_bytes(2, "big") + query
    try:
        with socket.create_connection(
            (host, int(port)), timeout=connect_timeout_ms / 1000.0
        ) as sock:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(write_timeout_ms / 1000.0)
            sock.sendall(framed)
            deadline = time.monotonic() + read_timeout_ms / 1000.0
            return _read_message(sock, deadline)
    except OSError as e:
        raise TCPError(f"TCP exchange with {host}:{port} failed: {e}") from e
