"""Threaded DNS-over-UDP listener.

Brief:
  Every datagram is handed to a resolver callable on its own thread and the
  returned bytes are sent back to the sender. An empty reply sends nothing.
"""

import logging
import socketserver
from typing import Callable

logger = logging.getLogger("tierdns.server.udp")

Resolver = Callable[[bytes, str], bytes]


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Brief: Answer one datagram with the bound resolver.

    Inputs:
    - request: (payload, listening socket) from socketserver
    - client_address: sender address tuple

    Outputs:
    - None

    Notes:
    - DNSServer subclasses this per server to bind ``resolver``.
    """

    resolver: Resolver

    def handle(self) -> None:
        payload, listener = self.request
        peer = self.client_address
        client_ip = peer[0] if isinstance(peer, tuple) else "0.0.0.0"
        reply = self.resolver(payload, client_ip)
        if not reply:
            return
        try:
            listener.sendto(reply, peer)
        except OSError as exc:
            logger.warning("Could not send UDP reply to %s: %s", client_ip, exc)


class _ThreadingUDPServer(socketserver.ThreadingUDPServer):
    daemon_threads = True


class DNSServer:
    """UDP listener bound to host:port that answers with resolver.

    Example use:
        >>> import threading
        >>> server = DNSServer("127.0.0.1", 5355, lambda data, ip: data)
        >>> t = threading.Thread(target=server.serve_forever, daemon=True)
        >>> t.start()
        >>> server.stop()
    """

    def __init__(self, host: str, port: int, resolver: Resolver) -> None:
        bound = type(
            "BoundDNSUDPHandler",
            (DNSUDPHandler,),
            {"resolver": staticmethod(resolver)},
        )
        try:
            self.server = _ThreadingUDPServer((host, port), bound)
        except PermissionError:
            logger.error(
                "Not allowed to bind UDP %s:%d; use a port above 1024 or grant the "
                "process CAP_NET_BIND_SERVICE",
                host,
                port,
            )
            raise
        logger.debug("DNS UDP server bound to %s:%d", host, port)

    def serve_forever(self) -> None:
        """Run the receive loop until stop() is called."""
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            pass

    def stop(self) -> None:
        """
        Brief: Stop the receive loop and release the socket.

        Inputs:
          - None
        Outputs:
          - None
        """
        try:
            self.server.shutdown()
        finally:
            try:
                self.server.server_close()
            except OSError:
                logger.exception("Closing the UDP socket failed")
