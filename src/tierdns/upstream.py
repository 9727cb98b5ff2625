"""Forwarding client for the configured upstream recursive resolver.

Brief:
  UpstreamResolver sends the client's query unmodified to one upstream server
  and returns the parsed reply. Every socket operation is bounded by the
  configured timeout and any failure surfaces as UpstreamError; there is no
  retry.

Inputs:
  - Upstream address/transport/timeout settings.

Outputs:
  - UpstreamResolver instances.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Tuple, Union

from dnslib import DNSError, DNSRecord

from .transports.tcp import TCPError, tcp_query
from .transports.udp import UDPError, udp_query

logger = logging.getLogger("tierdns.upstream")

DEFAULT_UPSTREAM = "8.8.8.8:53"
DEFAULT_TIMEOUT_MS = 5000
_TRANSPORTS = ("udp", "tcp")


class UpstreamError(Exception):
    """
    Brief: Upstream exchange failed (transport error, timeout, bad reply).

    Inputs:
      - message: description

    Outputs:
      - Exception instance
    """

    pass


def parse_upstream_address(address: str, default_port: int = 53) -> Tuple[str, int]:
    """Brief: Split an upstream address string into (host, port).

    Inputs:
      - address: 'host', 'host:port', '[v6]:port' or a bare IPv6 literal.
      - default_port: Port used when none is given.

    Outputs:
      - (host, port) tuple.

    Raises:
      - ValueError: empty host or invalid port.

    Example:
      >>> parse_upstream_address("8.8.8.8:53")
      ('8.8.8.8', 53)
      >>> parse_upstream_address("[2001:db8::1]:5353")
      ('2001:db8::1', 5353)
    """

    text = str(address).strip()
    port_text = ""
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep:
            raise ValueError(f"invalid upstream address {address!r}")
        if rest.startswith(":"):
            port_text = rest[1:]
        elif rest:
            raise ValueError(f"invalid upstream address {address!r}")
    elif text.count(":") == 1:
        host, _, port_text = text.partition(":")
    else:
        # Bare hostname, IPv4 or an unbracketed IPv6 literal.
        host = text

    host = host.strip()
    if not host:
        raise ValueError(f"upstream address {address!r} has no host")
    try:
        port = int(port_text) if port_text else int(default_port)
    except ValueError:
        raise ValueError(f"invalid upstream port in {address!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"upstream port out of range in {address!r}")
    return host, port


def normalize_upstream_config(
    cfg: Union[None, str, Mapping[str, Any]],
) -> Dict[str, Any]:
    """Brief: Normalize the ``upstream`` config value to a settings mapping.

    Inputs:
      - cfg: None, an address string, or a mapping with keys host/port/
        transport/timeout_ms (an 'address' key is accepted in place of host).

    Outputs:
      - dict with keys host, port, transport, timeout_ms.

    Example:
      >>> normalize_upstream_config("1.1.1.1")["port"]
      53
    """

    if cfg is None:
        cfg = DEFAULT_UPSTREAM
    if isinstance(cfg, str):
        host, port = parse_upstream_address(cfg)
        return {
            "host": host,
            "port": port,
            "transport": "udp",
            "timeout_ms": DEFAULT_TIMEOUT_MS,
        }
    if not isinstance(cfg, Mapping):
        raise ValueError("config.upstream must be an address string or a mapping")

    if "address" in cfg:
        host, port = parse_upstream_address(str(cfg["address"]))
    else:
        host, port = parse_upstream_address(str(cfg.get("host", "8.8.8.8")))
    if "port" in cfg:
        port = int(cfg["port"])

    transport = str(cfg.get("transport", "udp")).lower()
    if transport not in _TRANSPORTS:
        raise ValueError(
            f"upstream transport must be one of {_TRANSPORTS}, got {transport!r}"
        )
    timeout_ms = int(cfg.get("timeout_ms", DEFAULT_TIMEOUT_MS))
    if timeout_ms <= 0:
        raise ValueError("upstream timeout_ms must be positive")
    return {
        "host": host,
        "port": port,
        "transport": transport,
        "timeout_ms": timeout_ms,
    }


class UpstreamResolver:
    """Single-upstream forwarding client.

    Example use:
        >>> from dnslib import DNSRecord
        >>> up = UpstreamResolver("8.8.8.8", 53, timeout_ms=5000)
        >>> # reply = up.exchange(DNSRecord.question("example.com", "A"))
    """

    def __init__(
        self,
        host: str,
        port: int = 53,
        transport: str = "udp",
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.host = str(host)
        self.port = int(port)
        self.transport = str(transport).lower()
        if self.transport not in _TRANSPORTS:
            raise ValueError(f"unsupported upstream transport {transport!r}")
        self.timeout_ms = int(timeout_ms)

    @classmethod
    def from_config(cls, cfg: Union[None, str, Mapping[str, Any]]) -> "UpstreamResolver":
        return cls(**normalize_upstream_config(cfg))

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def _send(self, wire: bytes, transport: str) -> bytes:
        if transport == "tcp":
            return tcp_query(
                self.host,
                self.port,
                wire,
                connect_timeout_ms=self.timeout_ms,
                read_timeout_ms=self.timeout_ms,
                write_timeout_ms=self.timeout_ms,
            )
        return udp_query(self.host, self.port, wire, timeout_ms=self.timeout_ms)

    def exchange(self, request: DNSRecord) -> DNSRecord:
        """Forward request to the upstream and return its parsed reply.

        Inputs:
          - request: The client's DNSRecord, forwarded as-is.
        Outputs:
          - DNSRecord: Upstream reply (any rcode).

        Raises:
          - UpstreamError: transport failure, timeout, unparseable reply or a
            reply whose id does not match the request.

        A UDP reply with the TC bit set is fetched again over TCP so the full
        answer section is available.
        """
        wire = request.pack()
        try:
            reply_wire = self._send(wire, self.transport)
            reply = DNSRecord.parse(reply_wire)
            if self.transport == "udp" and reply.header.tc:
                logger.debug(
                    "Truncated UDP reply from %s for %s; retrying over TCP",
                    self.address,
                    request.q.qname,
                )
                reply = DNSRecord.parse(self._send(wire, "tcp"))
        except (UDPError, TCPError) as exc:
            raise UpstreamError(f"{self.address}: {exc}") from exc
        except (DNSError, ValueError, IndexError) as exc:
            raise UpstreamError(f"{self.address}: malformed reply: {exc}") from exc

        if reply.header.id != request.header.id:
            raise UpstreamError(
                f"{self.address}: reply id {reply.header.id} does not match query id {request.header.id}"
            )
        return reply
