"""Answer filtering for static and cached record strings.

Brief:
  Parses zone-format record strings and keeps only those that answer the
  question: the owner name equals the query name, or either the query type
  or the record type is CNAME. Kept records are re-stamped with the caller's
  TTL. Upstream answers never pass through here.

Inputs:
  - Query name/type and an ordered sequence of record strings.

Outputs:
  - Ordered list of dnslib RR objects.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from dnslib import QTYPE, RR

from ..records import normalize_name

logger = logging.getLogger("tierdns.matcher")


def parse_records(records: Iterable[str]) -> List[RR]:
    """Brief: Parse zone-format record strings, skipping unparseable ones.

    Inputs:
      - records: Iterable of strings such as 'example.com. 60 IN A 192.0.2.1'.

    Outputs:
      - list[RR]: Parsed records in input order. A string that fails to parse
        (or yields no record) is logged and skipped.
    """

    parsed: List[RR] = []
    for text in records:
        if not text or not str(text).strip():
            continue
        try:
            rrs = RR.fromZone(str(text))
        except Exception as exc:  # dnslib raises a mix of DNSError/ValueError/...
            logger.warning("Error parsing record string %r: %s", text, exc)
            continue
        if not rrs:
            logger.warning("Record string %r produced no records", text)
            continue
        parsed.extend(rrs)
    return parsed


def record_matches(rr: RR, qname: str, qtype: int) -> bool:
    """Brief: Inclusion rule for a single record.

    Inputs:
      - rr: Parsed record.
      - qname: Normalized query name.
      - qtype: Query type code.

    Outputs:
      - bool: True when the owner matches the query name, the query asks for
        CNAME, or the record itself is a CNAME.

    Example:
      >>> rr = RR.fromZone("a.example. 60 IN A 192.0.2.1")[0]
      >>> record_matches(rr, "a.example.", QTYPE.A)
      True
      >>> record_matches(rr, "b.example.", QTYPE.A)
      False
    """

    return (
        normalize_name(rr.rname) == normalize_name(qname)
        or int(qtype) == QTYPE.CNAME
        or rr.rtype == QTYPE.CNAME
    )


def match_records(
    qname: str, qtype: int, records: Iterable[str], ttl: int
) -> List[RR]:
    """Build the answer section for a static or cached hit.

    Inputs:
      - qname: Query name (normalized or not).
      - qtype: Query type code.
      - records: Ordered record strings from the record store or cache.
      - ttl: TTL stamped onto every included record.
    Outputs:
      - list[RR]: Included records, in original relative order.

    Records failing record_matches() are logged and dropped. When the answer
    holds a CNAME for the query name and the query was not for CNAME, the
    alias is logged but not followed.
    """
    name = normalize_name(qname)
    qtype = int(qtype)
    qtype_name = QTYPE.get(qtype, str(qtype))

    answer: List[RR] = []
    for rr in parse_records(records):
        if record_matches(rr, name, qtype):
            rr.ttl = int(ttl)
            answer.append(rr)
        else:
            logger.info(
                "Skipping record %s %s as it does not match query %s (Type %s)",
                rr.rname,
                QTYPE.get(rr.rtype, str(rr.rtype)),
                name,
                qtype_name,
            )

    if qtype != QTYPE.CNAME:
        alias = find_unfollowed_cname(answer, name)
        if alias is not None:
            logger.info(
                "CNAME for %s found: %s; alias chain is not followed",
                name,
                alias.rdata,
            )
    return answer


def find_unfollowed_cname(answer: Iterable[RR], qname: str) -> Optional[RR]:
    """Brief: Return the first CNAME owned by qname in answer, if any.

    Inputs:
      - answer: Records already selected for the answer section.
      - qname: Query name.

    Outputs:
      - RR | None: The alias record, or None.
    """

    name = normalize_name(qname)
    for rr in answer:
        if rr.rtype == QTYPE.CNAME and normalize_name(rr.rname) == name:
            return rr
    return None
