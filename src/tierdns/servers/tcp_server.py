"""DNS-over-TCP listener.

Brief:
  Each connection carries a sequence of two-byte length-prefixed messages
  (RFC 7766). Queries on one connection are answered strictly in order; the
  connection closes on EOF, a zero-length frame, a truncated frame, an empty
  reply from the resolver, or after ``idle_timeout`` seconds without a query.

Inputs:
  - resolver: Callable mapping (query_bytes, client_ip) -> reply_bytes.

Outputs:
  - serve_tcp (asyncio) and serve_tcp_threaded (socketserver) entry points.
"""

import asyncio
import logging
import socketserver
from typing import Callable, Optional

logger = logging.getLogger("tierdns.server.tcp")

Resolver = Callable[[bytes, str], bytes]


def _frame(message: bytes) -> bytes:
    return len(message).to_bytes(2, "big") + message


def _peer_ip(peer: object) -> str:
    return peer[0] if isinstance(peer, tuple) and peer else "0.0.0.0"


async def _next_query(
    reader: asyncio.StreamReader, idle_timeout: float
) -> Optional[bytes]:
    """
    Read one framed query from reader.

    Inputs:
      - reader: asyncio.StreamReader for the connection
      - idle_timeout: Seconds allowed for each read
    Outputs:
      - bytes for the next query, or None when the connection should close.
    """
    try:
        prefix = await asyncio.wait_for(reader.readexactly(2), timeout=idle_timeout)
        size = int.from_bytes(prefix, "big")
        if size == 0:
            return None
        return await asyncio.wait_for(reader.readexactly(size), timeout=idle_timeout)
    except asyncio.IncompleteReadError:
        return None


async def _handle_conn(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    resolver: Resolver,
    idle_timeout: float = 10.0,
) -> None:
    """
    Serve every query on one TCP connection, then close it.

    The resolver is blocking, so it runs in the loop's default executor and
    a slow upstream on one connection does not stall the others.
    """
    client_ip = _peer_ip(writer.get_extra_info("peername"))
    loop = asyncio.get_running_loop()
    try:
        while True:
            query = await _next_query(reader, idle_timeout)
            if query is None:
                break
            reply = await loop.run_in_executor(None, resolver, query, client_ip)
            if not reply:
                break
            writer.write(_frame(reply))
            await writer.drain()
    except asyncio.TimeoutError:
        logger.debug("Closing idle TCP connection from %s", client_ip)
    except (ConnectionError, OSError) as exc:
        logger.debug("TCP connection from %s failed: %s", client_ip, exc)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def serve_tcp(
    host: str, port: int, resolver: Resolver, *, idle_timeout: float = 10.0
) -> None:
    """
    Listen for DNS-over-TCP on host:port until the task is cancelled.

    Inputs:
      - host, port: Listen address
      - resolver: Callable mapping (query_bytes, client_ip) -> reply_bytes
      - idle_timeout: Per-connection idle timeout in seconds
    Outputs:
      - None

    Example:
      >>> asyncio.run(serve_tcp('127.0.0.1', 5353, pipeline.handle))
    """

    async def _on_connect(reader, writer):
        await _handle_conn(reader, writer, resolver, idle_timeout)

    server = await asyncio.start_server(_on_connect, host, port)
    logger.debug("DNS TCP server bound to %s:%d", host, port)
    async with server:
        await server.serve_forever()


class _TCPHandler(socketserver.StreamRequestHandler):
    """
    Brief: Blocking per-connection handler used by serve_tcp_threaded.

    Inputs:
    - request: connected socket provided by socketserver
    - client_address: peer address

    Outputs:
    - None
    """

    resolver: Resolver
    idle_timeout: float = 10.0

    def _next_query(self) -> Optional[bytes]:
        prefix = self.rfile.read(2)
        if len(prefix) != 2:
            return None
        size = int.from_bytes(prefix, "big")
        if size == 0:
            return None
        query = self.rfile.read(size)
        return query if len(query) == size else None

    def handle(self) -> None:
        client_ip = _peer_ip(self.client_address)
        self.request.settimeout(self.idle_timeout)
        try:
            while True:
                query = self._next_query()
                if query is None:
                    return
                reply = self.resolver(query, client_ip)
                if not reply:
                    return
                self.wfile.write(_frame(reply))
        except OSError as exc:
            logger.debug("TCP connection from %s failed: %s", client_ip, exc)


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


def serve_tcp_threaded(
    host: str, port: int, resolver: Resolver, *, idle_timeout: float = 10.0
) -> None:
    """
    Brief: Thread-per-connection DNS-over-TCP listener without asyncio.

    Inputs:
    - host, port: listen address
    - resolver: callable mapping (query_bytes, client_ip) -> reply_bytes
    - idle_timeout: per-connection idle timeout in seconds

    Outputs:
    - None; blocks for the life of the process.

    Used when the environment refuses to create an asyncio event loop.
    """
    handler_cls = type(
        "BoundTCPHandler",
        (_TCPHandler,),
        {"resolver": staticmethod(resolver), "idle_timeout": float(idle_timeout)},
    )
    with _ThreadingTCPServer((host, port), handler_cls) as server:
        server.serve_forever()
