"""
Brief: Tests for tierdns.resolver.pipeline (static -> cache -> upstream).

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from dnslib import EDNS0, QTYPE, RCODE, RR, DNSHeader, DNSQuestion, DNSRecord

from tierdns.cache_plugins.base import CacheError, CachePlugin
from tierdns.cache_plugins.in_memory_ttl import InMemoryTTLCache
from tierdns.records import RecordStore
from tierdns.resolver.pipeline import (
    UDP_MIN_PAYLOAD,
    PipelineSettings,
    ResolutionPipeline,
    cache_key,
    servfail_for_wire,
    udp_payload_limit,
)
from tierdns.upstream import UpstreamError


class FakeCache(CachePlugin):
    """Brief: Dict-backed cache that records calls and can simulate outages.

    Inputs:
      - fail_get: raise CacheError from get().
      - fail_set: raise CacheError from set().

    Outputs:
      - FakeCache instance.
    """

    def __init__(self, fail_get: bool = False, fail_set: bool = False) -> None:
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.store: Dict[str, str] = {}
        self.gets: List[str] = []
        self.sets: List[Tuple[str, str, int]] = []

    def get(self, key: str) -> Optional[str]:
        self.gets.append(key)
        if self.fail_get:
            raise CacheError("connection refused")
        return self.store.get(key)

    def set(self, key: str, value: str, ttl: int) -> None:
        self.sets.append((key, value, ttl))
        if self.fail_set:
            raise CacheError("read only replica")
        self.store[key] = value


class FakeUpstream:
    """Brief: Upstream stand-in that delegates to a responder callable."""

    address = "192.0.2.53:53"

    def __init__(self, responder: Callable[[DNSRecord], DNSRecord]) -> None:
        self.responder = responder
        self.calls: List[DNSRecord] = []

    def exchange(self, request: DNSRecord) -> DNSRecord:
        self.calls.append(request)
        return self.responder(request)


def _answering(*zone_lines: str, rcode: int = RCODE.NOERROR):
    def _respond(request: DNSRecord) -> DNSRecord:
        reply = request.reply()
        reply.header.aa = 0
        reply.header.rcode = rcode
        for line in zone_lines:
            reply.add_answer(*RR.fromZone(line))
        return reply

    return _respond


def _unreachable(request: DNSRecord) -> DNSRecord:
    raise AssertionError("upstream must not be queried")


STATIC = {
    "example.com.": {"A": ["93.184.216.34"], "MX": ["10 mail.example.com."]},
    "www.example.com.": {"CNAME": ["example.com."]},
}


def _pipeline(cache=None, responder=_unreachable, records=STATIC, settings=None):
    upstream = FakeUpstream(responder)
    pipeline = ResolutionPipeline(
        RecordStore(records), cache if cache is not None else FakeCache(), upstream, settings
    )
    return pipeline, upstream


def test_cache_key_format():
    assert cache_key("Example.COM", QTYPE.A) == "example.com.:1"
    assert cache_key("example.com.", QTYPE.AAAA) == "example.com.:28"


def test_static_hit_is_authoritative_with_static_ttl():
    """
    Brief: A static (name, type) hit answers authoritatively and stops there.

    Inputs:
      - None

    Outputs:
      - None: Asserts AA, TTL 60 and no cache/upstream traffic
    """
    cache = FakeCache()
    pipeline, upstream = _pipeline(cache=cache)
    reply = pipeline.resolve(DNSRecord.question("EXAMPLE.com", "A"))

    assert reply.header.rcode == RCODE.NOERROR
    assert reply.header.aa == 1
    assert reply.header.qr == 1
    assert [str(rr.rdata) for rr in reply.rr] == ["93.184.216.34"]
    assert reply.rr[0].ttl == 60
    assert cache.gets == []
    assert upstream.calls == []


def test_static_cname_answered_without_following():
    pipeline, _ = _pipeline()
    reply = pipeline.resolve(DNSRecord.question("www.example.com", "CNAME"))
    assert reply.header.aa == 1
    assert len(reply.rr) == 1
    assert reply.rr[0].rtype == QTYPE.CNAME
    assert str(reply.rr[0].rdata) == "example.com."


def test_reply_mirrors_request_header_and_question():
    request = DNSRecord.question("example.com", "MX")
    request.header.id = 4242
    request.header.rd = 1
    pipeline, _ = _pipeline()
    reply = pipeline.resolve(request)
    assert reply.header.id == 4242
    assert reply.header.rd == 1
    assert reply.header.ra == 1
    assert reply.header.tc == 0
    assert reply.questions == request.questions


def test_static_name_without_type_falls_through_to_cache(caplog):
    """
    Brief: A static name lacking the requested type continues to the cache tier.

    Inputs:
      - None

    Outputs:
      - None: Asserts cached AAAA served non-authoritatively
    """
    cache = FakeCache()
    caplog.set_level(logging.DEBUG, logger="tierdns.pipeline")
    cache.store["example.com.:28"] = "example.com. 900 IN AAAA 2001:db8::1"
    pipeline, upstream = _pipeline(cache=cache)

    reply = pipeline.resolve(DNSRecord.question("example.com", "AAAA"))

    assert cache.gets == ["example.com.:28"]
    assert reply.header.aa == 0
    assert [str(rr.rdata) for rr in reply.rr] == ["2001:db8::1"]
    assert reply.rr[0].ttl == 300
    assert upstream.calls == []
    assert "Static name example.com. has no AAAA records" in caplog.text


def test_cache_hit_filters_foreign_owners():
    cache = FakeCache()
    cache.store["a.example.:1"] = "|".join(
        [
            "a.example. 60 IN A 192.0.2.5",
            "b.example. 60 IN A 192.0.2.99",
            "a.example. 60 IN A 192.0.2.6",
        ]
    )
    pipeline, _ = _pipeline(cache=cache)
    reply = pipeline.resolve(DNSRecord.question("a.example", "A"))
    assert [str(rr.rdata) for rr in reply.rr] == ["192.0.2.5", "192.0.2.6"]
    assert all(rr.ttl == 300 for rr in reply.rr)


def test_upstream_answer_relayed_verbatim_and_cached():
    """
    Brief: An upstream answer is copied as-is and written to the cache.

    Inputs:
      - None

    Outputs:
      - None: Asserts verbatim TTLs, cache key/value/ttl and a second cached hit
    """
    cache = InMemoryTTLCache()
    pipeline, upstream = _pipeline(
        cache=cache,
        responder=_answering(
            "www.example.net. 120 IN CNAME example.net.",
            "example.net. 120 IN A 192.0.2.7",
        ),
    )

    first = pipeline.resolve(DNSRecord.question("www.example.net", "A"))
    assert first.header.aa == 0
    assert [QTYPE[rr.rtype] for rr in first.rr] == ["CNAME", "A"]
    assert [rr.ttl for rr in first.rr] == [120, 120]
    assert len(upstream.calls) == 1

    stored = cache.get("www.example.net.:1")
    assert stored is not None
    assert len(stored.split("|")) == 2

    # Served from cache: the matcher keeps the alias but drops the target's
    # A record because its owner is not the query name.
    second = pipeline.resolve(DNSRecord.question("www.example.net", "A"))
    assert len(upstream.calls) == 1
    assert second.header.aa == 0
    assert [QTYPE[rr.rtype] for rr in second.rr] == ["CNAME"]
    assert [rr.ttl for rr in second.rr] == [300]


def test_upstream_fill_uses_configured_cache_ttl():
    cache = FakeCache()
    settings = PipelineSettings(cache_ttl=42)
    pipeline, _ = _pipeline(
        cache=cache,
        responder=_answering("x.example. 30 IN A 192.0.2.8"),
        settings=settings,
    )
    pipeline.resolve(DNSRecord.question("x.example", "A"))
    assert len(cache.sets) == 1
    key, value, ttl = cache.sets[0]
    assert key == "x.example.:1"
    assert ttl == 42
    assert "192.0.2.8" in value


def test_upstream_nxdomain_propagated_without_caching():
    cache = FakeCache()
    pipeline, upstream = _pipeline(
        cache=cache, responder=_answering(rcode=RCODE.NXDOMAIN)
    )
    reply = pipeline.resolve(DNSRecord.question("missing.example", "A"))
    assert reply.header.rcode == RCODE.NXDOMAIN
    assert reply.rr == []
    assert cache.sets == []
    assert len(upstream.calls) == 1


def test_upstream_refused_rcode_propagated():
    pipeline, _ = _pipeline(responder=_answering(rcode=RCODE.REFUSED))
    reply = pipeline.resolve(DNSRecord.question("x.example", "A"))
    assert reply.header.rcode == RCODE.REFUSED


def test_upstream_error_yields_servfail(caplog):
    def _boom(request):
        raise UpstreamError("timed out")

    caplog.set_level(logging.WARNING, logger="tierdns.pipeline")
    cache = FakeCache()
    pipeline, upstream = _pipeline(cache=cache, responder=_boom)
    reply = pipeline.resolve(DNSRecord.question("x.example", "A"))
    assert reply.header.rcode == RCODE.SERVFAIL
    assert reply.rr == []
    assert len(upstream.calls) == 1
    assert cache.sets == []
    assert "timed out" in caplog.text


def test_delegation_authority_copied_not_cached():
    def _delegate(request):
        reply = request.reply()
        reply.header.aa = 0
        reply.add_auth(*RR.fromZone("example.net. 3600 IN NS ns1.example.net."))
        return reply

    cache = FakeCache()
    pipeline, _ = _pipeline(cache=cache, responder=_delegate)
    reply = pipeline.resolve(DNSRecord.question("deep.example.net", "A"))
    assert reply.header.rcode == RCODE.NOERROR
    assert reply.rr == []
    assert [QTYPE[rr.rtype] for rr in reply.auth] == ["NS"]
    assert cache.sets == []


def test_cache_get_error_treated_as_miss():
    cache = FakeCache(fail_get=True)
    pipeline, upstream = _pipeline(
        cache=cache, responder=_answering("x.example. 30 IN A 192.0.2.8")
    )
    reply = pipeline.resolve(DNSRecord.question("x.example", "A"))
    assert reply.header.rcode == RCODE.NOERROR
    assert len(upstream.calls) == 1
    assert [str(rr.rdata) for rr in reply.rr] == ["192.0.2.8"]


def test_cache_set_error_does_not_affect_reply(caplog):
    caplog.set_level(logging.WARNING, logger="tierdns.pipeline")
    cache = FakeCache(fail_set=True)
    pipeline, _ = _pipeline(
        cache=cache, responder=_answering("x.example. 30 IN A 192.0.2.8")
    )
    reply = pipeline.resolve(DNSRecord.question("x.example", "A"))
    assert reply.header.rcode == RCODE.NOERROR
    assert len(reply.rr) == 1
    assert len(cache.sets) == 1
    assert "Error caching response" in caplog.text


def test_zero_questions_servfail_without_side_effects():
    """
    Brief: A query with no question is refused before any tier is consulted.

    Inputs:
      - None

    Outputs:
      - None: Asserts SERVFAIL and no cache/upstream calls
    """
    cache = FakeCache()
    pipeline, upstream = _pipeline(cache=cache)
    request = DNSRecord(DNSHeader(id=7, rd=1))

    reply = pipeline.resolve(request)
    assert reply.header.rcode == RCODE.SERVFAIL
    assert reply.header.id == 7
    assert reply.questions == []
    assert cache.gets == [] and cache.sets == []
    assert upstream.calls == []

    wire = pipeline.handle(request.pack(), "127.0.0.1")
    parsed = DNSRecord.parse(wire)
    assert parsed.header.id == 7
    assert parsed.header.rcode == RCODE.SERVFAIL


def test_only_first_question_is_answered():
    request = DNSRecord.question("example.com", "A")
    request.add_question(DNSQuestion("example.com", QTYPE.MX))
    pipeline, _ = _pipeline()
    reply = pipeline.resolve(request)
    assert [QTYPE[rr.rtype] for rr in reply.rr] == ["A"]


def test_handle_round_trips_wire_bytes():
    pipeline, _ = _pipeline()
    query = DNSRecord.question("example.com", "A")
    wire = pipeline.handle(query.pack(), "198.51.100.10")
    reply = DNSRecord.parse(wire)
    assert reply.header.id == query.header.id
    assert str(reply.rr[0].rdata) == "93.184.216.34"


def test_handle_malformed_query_servfail_echoes_id():
    # Header claims one question but carries none.
    data = b"\xab\xcd\x01\x00\x00\x01\x00\x00\x00\x00\x00\x00"
    pipeline, upstream = _pipeline()
    wire = pipeline.handle(data, "127.0.0.1")
    reply = DNSRecord.parse(wire)
    assert reply.header.id == 0xABCD
    assert reply.header.qr == 1
    assert reply.header.rcode == RCODE.SERVFAIL
    assert upstream.calls == []


def test_servfail_for_wire_short_input_is_empty():
    assert servfail_for_wire(b"\x01\x02") == b""
    assert servfail_for_wire(b"") == b""


def test_handle_unexpected_error_becomes_servfail(caplog):
    def _explode(request):
        raise RuntimeError("bug")

    caplog.set_level(logging.ERROR, logger="tierdns.pipeline")
    pipeline, _ = _pipeline(responder=_explode)
    query = DNSRecord.question("x.example", "A")
    reply = DNSRecord.parse(pipeline.handle(query.pack(), "127.0.0.1"))
    assert reply.header.id == query.header.id
    assert reply.header.rcode == RCODE.SERVFAIL
    assert "Unhandled error" in caplog.text


def test_cache_value_joins_zone_lines_with_delimiter():
    """
    Brief: Cached values are the upstream records' zone text joined by '|'.

    Inputs:
      - None

    Outputs:
      - None: Asserts exact stored value (delimiter is not escaped)
    """
    line = 'txt.example. 30 IN TXT "a|b"'
    cache = FakeCache()
    pipeline, _ = _pipeline(cache=cache, responder=_answering(line))
    reply = pipeline.resolve(DNSRecord.question("txt.example", "TXT"))

    expected = "|".join(rr.toZone() for rr in reply.rr)
    assert cache.sets[0][1] == expected
    assert "a|b" in expected


@pytest.mark.parametrize("static_ttl,cache_ttl", [(5, 7), (0, 0)])
def test_answer_ttls_are_configurable(static_ttl, cache_ttl):
    settings = PipelineSettings(static_answer_ttl=static_ttl, cache_answer_ttl=cache_ttl)
    cache = FakeCache()
    cache.store["c.example.:1"] = "c.example. 60 IN A 192.0.2.3"
    pipeline, _ = _pipeline(cache=cache, settings=settings)

    static = pipeline.resolve(DNSRecord.question("example.com", "A"))
    cached = pipeline.resolve(DNSRecord.question("c.example", "A"))
    assert static.rr[0].ttl == static_ttl
    assert cached.rr[0].ttl == cache_ttl


@pytest.mark.parametrize(
    "qname,qtype",
    [("example.com", "MX"), ("example.com", "A"), ("multi.example", "A")],
)
def test_repeated_query_returns_identical_answers(qname, qtype):
    """
    Brief: With an unchanged store and a warm cache, repeats answer identically.

    Inputs:
      - qname, qtype: one static-tier name and one name only upstream knows

    Outputs:
      - None: Asserts equal zone text across repeats and a single upstream call
    """
    upstream_lines = (
        "multi.example. 120 IN A 192.0.2.10",
        "multi.example. 120 IN A 192.0.2.11",
    )
    cache = InMemoryTTLCache()
    pipeline, upstream = _pipeline(cache=cache, responder=_answering(*upstream_lines))

    # Warm the cache; static names never reach it.
    pipeline.resolve(DNSRecord.question(qname, qtype))

    first = pipeline.resolve(DNSRecord.question(qname, qtype))
    second = pipeline.resolve(DNSRecord.question(qname, qtype))

    assert first.rr
    assert [rr.toZone() for rr in first.rr] == [rr.toZone() for rr in second.rr]
    assert first.header.aa == second.header.aa
    assert len(upstream.calls) == (1 if qname == "multi.example" else 0)


BIG_TXT = {
    "big.example.": {"TXT": ['"%s"' % (letter * 200) for letter in "abcde"]},
}


def test_udp_reply_over_512_bytes_is_truncated_without_edns():
    """
    Brief: A plain UDP query whose answer does not fit 512 bytes gets TC.

    Inputs:
      - None

    Outputs:
      - None: Asserts TC set, records dropped, id and question kept
    """
    pipeline, _ = _pipeline(records=BIG_TXT)
    request = DNSRecord.question("big.example", "TXT")
    request.header.id = 777

    full = pipeline.handle(request.pack(), "127.0.0.1")
    udp = pipeline.handle_udp(request.pack(), "127.0.0.1")

    assert len(full) > UDP_MIN_PAYLOAD
    assert len(udp) <= UDP_MIN_PAYLOAD
    reply = DNSRecord.parse(udp)
    assert reply.header.tc == 1
    assert reply.header.id == 777
    assert reply.header.aa == 1
    assert reply.header.rcode == RCODE.NOERROR
    assert reply.rr == []
    assert reply.questions == request.questions
    assert DNSRecord.parse(full).header.tc == 0


def test_udp_reply_within_edns_payload_is_sent_whole():
    pipeline, _ = _pipeline(records=BIG_TXT)
    request = DNSRecord.question("big.example", "TXT")
    request.add_ar(EDNS0(udp_len=4096))
    assert udp_payload_limit(request) == 4096

    reply = DNSRecord.parse(pipeline.handle_udp(request.pack(), "127.0.0.1"))
    assert reply.header.tc == 0
    assert len(reply.rr) == 5


def test_udp_payload_limit_never_below_512():
    request = DNSRecord.question("example.com", "A")
    assert udp_payload_limit(request) == UDP_MIN_PAYLOAD
    request.add_ar(EDNS0(udp_len=100))
    assert udp_payload_limit(request) == UDP_MIN_PAYLOAD


def test_udp_small_reply_is_unchanged():
    pipeline, _ = _pipeline()
    wire = DNSRecord.question("example.com", "A").pack()
    assert pipeline.handle_udp(wire, "127.0.0.1") == pipeline.handle(wire, "127.0.0.1")
