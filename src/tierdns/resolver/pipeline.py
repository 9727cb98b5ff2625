"""Three-tier resolution: static records, shared cache, upstream resolver.

Brief:
  ResolutionPipeline answers one query at a time and holds no mutable state
  of its own, so a single instance is shared by every listener thread and
  coroutine. Tiers are consulted in order and the first one that produces an
  answer wins:

    1. RecordStore (authoritative, answers re-stamped with static_answer_ttl)
    2. CachePlugin  (non-authoritative, answers re-stamped with cache_answer_ttl)
    3. UpstreamResolver (reply relayed verbatim, answers written to the cache)

Inputs:
  - RecordStore, CachePlugin, UpstreamResolver, PipelineSettings.

Outputs:
  - DNSRecord replies (resolve) or wire bytes (handle, handle_udp).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from dnslib import QTYPE, RCODE, RR, DNSError, DNSHeader, DNSRecord

from ..cache_plugins.base import CacheError, CachePlugin
from ..records import RecordStore, normalize_name
from ..upstream import UpstreamError, UpstreamResolver
from .matcher import match_records

logger = logging.getLogger("tierdns.pipeline")

_HEADER_LEN = 12
UDP_MIN_PAYLOAD = 512


@dataclass(frozen=True)
class PipelineSettings:
    """TTL and encoding knobs for the resolution pipeline.

    Attributes:
      - cache_ttl: Lifetime in seconds of cache entries written after an
        upstream answer.
      - static_answer_ttl: TTL stamped on answers from the record store.
      - cache_answer_ttl: TTL stamped on answers served from the cache.
      - cache_delimiter: Separator between record strings in a cache value.
        It is not escaped, so a record whose text contains it (e.g. a TXT
        string with '|') will not survive a cache round trip intact.
    """

    cache_ttl: int = 300
    static_answer_ttl: int = 60
    cache_answer_ttl: int = 300
    cache_delimiter: str = "|"


def cache_key(qname: str, qtype: int) -> str:
    """Brief: Build the shared cache key for a question.

    Inputs:
      - qname: Query name in any case.
      - qtype: Record type code.

    Outputs:
      - str: '<normalized name>:<numeric type>'.

    Example:
      >>> cache_key("Example.COM", 1)
      'example.com.:1'
    """

    return f"{normalize_name(qname)}:{int(qtype)}"


def _type_name(qtype: int) -> str:
    return QTYPE.get(qtype, str(qtype))


def _make_reply(request: DNSRecord) -> DNSRecord:
    """Brief: Start a reply that mirrors the request id, flags and question.

    Inputs:
      - request: Parsed client query.

    Outputs:
      - DNSRecord with QR and RA set, AA/TC cleared and rcode NOERROR.
    """

    header = DNSHeader(id=request.header.id, bitmap=request.header.bitmap)
    header.qr = 1
    header.ra = 1
    header.aa = 0
    header.tc = 0
    header.rcode = RCODE.NOERROR
    return DNSRecord(header, questions=list(request.questions))


def servfail_for_wire(data: bytes) -> bytes:
    """Brief: Synthesize a SERVFAIL for a datagram that could not be parsed.

    Inputs:
      - data: Raw query bytes.

    Outputs:
      - bytes: Header-only SERVFAIL echoing the query id, or b'' when the
        input is too short to carry an id (callers then send nothing).
    """

    if len(data) < _HEADER_LEN:
        return b""
    header = DNSHeader(id=int.from_bytes(data[:2], "big"))
    header.qr = 1
    header.ra = 1
    header.rcode = RCODE.SERVFAIL
    return DNSRecord(header).pack()


def udp_payload_limit(request: DNSRecord) -> int:
    """Brief: Largest UDP reply the client said it accepts.

    Inputs:
      - request: Parsed client query.

    Outputs:
      - int: The EDNS0 OPT payload size (never below 512), or 512 when the
        query carries no OPT record.
    """

    for rr in request.ar:
        if rr.rtype == QTYPE.OPT:
            return min(max(int(rr.rclass), UDP_MIN_PAYLOAD), 65535)
    return UDP_MIN_PAYLOAD


def fit_udp_reply(reply: DNSRecord, limit: int) -> bytes:
    """Brief: Pack reply, dropping every record section when it exceeds limit.

    Inputs:
      - reply: Complete reply.
      - limit: Client payload size in bytes.

    Outputs:
      - bytes: The full reply, or header and question with TC set so the
        client retries over TCP.
    """

    wire = reply.pack()
    if len(wire) <= limit:
        return wire
    header = DNSHeader(id=reply.header.id, bitmap=reply.header.bitmap)
    header.tc = 1
    return DNSRecord(header, questions=list(reply.questions)).pack()


class ResolutionPipeline:
    """Resolve queries against static records, the cache, then upstream.

    Example use:
        >>> from tierdns.cache_plugins.none import NullCache
        >>> from tierdns.records import RecordStore
        >>> from tierdns.upstream import UpstreamResolver
        >>> pipeline = ResolutionPipeline(
        ...     RecordStore.default(), NullCache(), UpstreamResolver("8.8.8.8")
        ... )
        >>> reply = pipeline.resolve(DNSRecord.question("example.com", "A"))
        >>> reply.header.aa, str(reply.rr[0].rdata), reply.rr[0].ttl
        (1, '93.184.216.34', 60)
    """

    def __init__(
        self,
        records: RecordStore,
        cache: CachePlugin,
        upstream: UpstreamResolver,
        settings: Optional[PipelineSettings] = None,
    ) -> None:
        self.records = records
        self.cache = cache
        self.upstream = upstream
        self.settings = settings or PipelineSettings()

    def handle(self, data: bytes, client_ip: str) -> bytes:
        """Resolve a single wire-format query and return the wire reply.

        Inputs:
          - data: Wire-format DNS query bytes.
          - client_ip: Peer address, used for logging only.
        Outputs:
          - bytes: Wire-format reply, or b'' when no reply can be addressed.

        This is the callable handed to the TCP listener. Any unexpected
        failure is logged and converted to SERVFAIL so each query gets
        exactly one reply.
        """
        return self._handle(data, client_ip, udp=False)

    def handle_udp(self, data: bytes, client_ip: str) -> bytes:
        """Like handle(), but the reply is sized for a UDP client.

        A reply larger than udp_payload_limit() loses its record sections and
        carries TC, which tells the client to ask again over TCP.
        """
        return self._handle(data, client_ip, udp=True)

    def _handle(self, data: bytes, client_ip: str, udp: bool) -> bytes:
        try:
            request = DNSRecord.parse(data)
        except DNSError as exc:
            logger.warning("Malformed query from %s: %s", client_ip, exc)
            return servfail_for_wire(data)

        try:
            reply = self.resolve(request, client_ip)
            wire = reply.pack()
            if udp:
                limit = udp_payload_limit(request)
                if len(wire) > limit:
                    logger.info(
                        "Reply to %s is %d bytes, over its %d byte UDP limit; setting TC",
                        client_ip,
                        len(wire),
                        limit,
                    )
                    wire = fit_udp_reply(reply, limit)
            return wire
        except Exception:
            logger.exception("Unhandled error resolving query from %s", client_ip)
            reply = _make_reply(request)
            reply.header.rcode = RCODE.SERVFAIL
            return reply.pack()

    def resolve(self, request: DNSRecord, client_ip: str = "-") -> DNSRecord:
        """Produce the reply for a parsed query.

        Inputs:
          - request: Parsed client query.
          - client_ip: Peer address, used for logging only.
        Outputs:
          - DNSRecord: The reply. Only the first question is answered.
        """
        reply = _make_reply(request)

        if not request.questions:
            logger.warning(
                "Query from %s carries no question; replying SERVFAIL", client_ip
            )
            reply.header.rcode = RCODE.SERVFAIL
            return reply

        q = request.questions[0]
        qname = normalize_name(q.qname)
        qtype = int(q.qtype)
        logger.info(
            "Received query for %s (Type %s) from %s", qname, _type_name(qtype), client_ip
        )

        static = self.records.lookup(qname, qtype)
        if static is not None:
            logger.info("Found static record for %s (Type %s)", qname, _type_name(qtype))
            reply.header.aa = 1
            self._add_answers(
                reply, qname, qtype, static, self.settings.static_answer_ttl
            )
            return reply
        if self.records.has_name(qname):
            logger.debug(
                "Static name %s has no %s records; trying cache", qname, _type_name(qtype)
            )

        key = cache_key(qname, qtype)
        cached = self._cache_get(key)
        if cached is not None:
            logger.info("Found cached record for %s (Type %s)", qname, _type_name(qtype))
            self._add_answers(
                reply,
                qname,
                qtype,
                cached.split(self.settings.cache_delimiter),
                self.settings.cache_answer_ttl,
            )
            return reply

        return self._forward(request, reply, qname, qtype, key)

    def _add_answers(
        self,
        reply: DNSRecord,
        qname: str,
        qtype: int,
        records: Iterable[str],
        ttl: int,
    ) -> None:
        for rr in match_records(qname, qtype, records, ttl):
            reply.add_answer(rr)

    def _cache_get(self, key: str) -> Optional[str]:
        try:
            return self.cache.get(key)
        except CacheError as exc:
            logger.warning("Error checking cache for %s: %s", key, exc)
            return None

    def _cache_store(self, key: str, answers: Iterable[RR]) -> None:
        value = self.settings.cache_delimiter.join(rr.toZone() for rr in answers)
        try:
            self.cache.set(key, value, self.settings.cache_ttl)
        except CacheError as exc:
            logger.warning("Error caching response for %s: %s", key, exc)
            return
        logger.debug("Cached upstream response for %s", key)

    def _forward(
        self,
        request: DNSRecord,
        reply: DNSRecord,
        qname: str,
        qtype: int,
        key: str,
    ) -> DNSRecord:
        logger.info(
            "Querying upstream server %s for %s (Type %s)",
            self.upstream.address,
            qname,
            _type_name(qtype),
        )
        try:
            upstream_reply = self.upstream.exchange(request)
        except UpstreamError as exc:
            logger.warning("Error querying upstream DNS server: %s", exc)
            reply.header.rcode = RCODE.SERVFAIL
            return reply

        rcode = upstream_reply.header.rcode
        if rcode != RCODE.NOERROR:
            # NXDOMAIN, REFUSED, SERVFAIL... are relayed as-is without records.
            logger.info(
                "Upstream server returned RCODE %s for %s (Type %s)",
                RCODE.get(rcode, str(rcode)),
                qname,
                _type_name(qtype),
            )
            reply.header.rcode = rcode
            return reply

        if upstream_reply.rr:
            reply.rr = list(upstream_reply.rr)
            self._cache_store(key, upstream_reply.rr)
        elif upstream_reply.auth:
            # Delegation: nothing to cache.
            reply.auth = list(upstream_reply.auth)
        return reply
