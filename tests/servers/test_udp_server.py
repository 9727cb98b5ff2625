"""
Brief: Unit tests for the downstream UDP server wrapper.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest
from dnslib import RCODE, DNSRecord

from tierdns.cache_plugins.none import NullCache
from tierdns.records import RecordStore
from tierdns.resolver.pipeline import ResolutionPipeline
from tierdns.servers.udp_server import DNSServer, DNSUDPHandler
from tierdns.upstream import UpstreamResolver


class _FakeSock:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def sendto(self, data, addr):
        if self.fail:
            raise OSError("network unreachable")
        self.sent.append((data, addr))


def _run_handler(resolver, data: bytes, sock: _FakeSock):
    handler_cls = type("H", (DNSUDPHandler,), {"resolver": staticmethod(resolver)})
    # BaseRequestHandler runs handle() from __init__.
    handler_cls((data, sock), ("192.0.2.10", 40000), None)


def test_handler_sends_resolver_reply_to_client():
    seen = []

    def _resolver(data, ip):
        seen.append((data, ip))
        return b"reply"

    sock = _FakeSock()
    _run_handler(_resolver, b"query", sock)
    assert seen == [(b"query", "192.0.2.10")]
    assert sock.sent == [(b"reply", ("192.0.2.10", 40000))]


def test_handler_sends_nothing_for_empty_reply():
    sock = _FakeSock()
    _run_handler(lambda data, ip: b"", b"\x01", sock)
    assert sock.sent == []


def test_handler_send_failure_is_logged_not_raised():
    sock = _FakeSock(fail=True)
    _run_handler(lambda data, ip: b"reply", b"query", sock)
    assert sock.sent == []


@pytest.fixture
def running_udp_server():
    """
    Brief: Start DNSServer on an ephemeral loopback port backed by a pipeline.

    Inputs:
      - None

    Outputs:
      - (host, port) tuple; server stopped on teardown.
    """
    pipeline = ResolutionPipeline(
        RecordStore({"a.example": {"A": ["192.0.2.1"]}}),
        NullCache(),
        UpstreamResolver("127.0.0.1", 9, timeout_ms=200),
    )
    server = DNSServer("127.0.0.1", 0, pipeline.handle)
    host, port = server.server.server_address
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        yield host, port
    finally:
        server.stop()
        t.join(timeout=2)


def test_udp_server_answers_static_query(running_udp_server):
    host, port = running_udp_server
    query = DNSRecord.question("a.example", "A")
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.settimeout(2)
    try:
        s.sendto(query.pack(), (host, port))
        data, _ = s.recvfrom(4096)
    finally:
        s.close()
    reply = DNSRecord.parse(data)
    assert reply.header.id == query.header.id
    assert reply.header.aa == 1
    assert str(reply.rr[0].rdata) == "192.0.2.1"


def test_udp_server_malformed_query_gets_servfail(running_udp_server):
    host, port = running_udp_server
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.settimeout(2)
    try:
        s.sendto(b"\x12\x34\x01\x00\x00\x01\x00\x00\x00\x00\x00\x00", (host, port))
        data, _ = s.recvfrom(4096)
    finally:
        s.close()
    reply = DNSRecord.parse(data)
    assert reply.header.id == 0x1234
    assert reply.header.rcode == RCODE.SERVFAIL


def test_two_servers_keep_separate_resolvers():
    a = DNSServer("127.0.0.1", 0, lambda d, ip: b"a")
    b = DNSServer("127.0.0.1", 0, lambda d, ip: b"b")
    try:
        assert a.server.RequestHandlerClass is not b.server.RequestHandlerClass
        assert a.server.RequestHandlerClass.resolver(b"", "") == b"a"
        assert b.server.RequestHandlerClass.resolver(b"", "") == b"b"
    finally:
        a.server.server_close()
        b.server.server_close()
