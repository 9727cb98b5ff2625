"""Static authoritative records served ahead of the cache and upstream.

Brief:
  RecordStore is an immutable (name, qtype) -> record-string index built once
  at startup from the ``records:`` config section. Each stored string is a
  complete zone-file line so that static answers flow through the same
  matcher as cached answers.

Inputs:
  - Mapping of ``{name: {TYPE: [value, ...]}}``.

Outputs:
  - RecordStore instances.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

from dnslib import QTYPE

logger = logging.getLogger("tierdns.records")

# Sample zone served when no records are configured explicitly.
DEFAULT_RECORDS: Dict[str, Dict[str, list]] = {
    "example.com.": {
        "A": ["93.184.216.34"],
        "AAAA": ["2606:2800:220:1:248:1893:25c8:1946"],
        "MX": ["10 mail.example.com."],
        "TXT": ['"v=spf1 include:_spf.example.com ~all"'],
        "NS": ["ns1.example.com.", "ns2.example.com."],
        "PTR": ["ptr.example.com."],
    },
    "sub.example.com.": {"A": ["192.0.2.1"]},
    "mail.example.com.": {"A": ["198.51.100.1"]},
    "www.example.com.": {"CNAME": ["example.com."]},
    "example.org.": {
        "A": ["192.0.2.0"],
        "TXT": ['"Another example domain"'],
        "SRV": ["10 0 80 http.example.org."],
    },
    "service._tcp.example.com.": {"SRV": ["10 0 80 server1.example.com."]},
    "server1.example.com.": {"A": ["192.0.2.10"]},
    "1.0.0.127.in-addr.arpa.": {"PTR": ["localhost."]},
}


def normalize_name(name: object) -> str:
    """Brief: Canonicalize a domain name to lowercase FQDN form.

    Inputs:
      - name: str or dnslib DNSLabel.

    Outputs:
      - str: Lowercase name with exactly one trailing dot ('.' for the root).

    Example:
      >>> normalize_name("WWW.Example.COM")
      'www.example.com.'
    """

    text = str(name).strip().lower().rstrip(".")
    return text + "."


def parse_qtype(value: Union[str, int]) -> int:
    """Brief: Resolve a record type mnemonic or numeric code to its code.

    Inputs:
      - value: 'A', 'mx', 28, '28' or 'TYPE65'.

    Outputs:
      - int: 16-bit record type code.

    Raises:
      - ValueError: unknown mnemonic or out-of-range code.
    """

    if isinstance(value, bool):
        raise ValueError(f"invalid record type {value!r}")
    if isinstance(value, int):
        code = value
    else:
        text = str(value).strip().upper()
        if text.isdigit():
            code = int(text)
        elif text.startswith("TYPE") and text[4:].isdigit():
            code = int(text[4:])
        else:
            found = QTYPE.reverse.get(text)
            if found is None:
                raise ValueError(f"unknown record type {value!r}")
            code = int(found)
    if not 0 < code < 65536:
        raise ValueError(f"record type out of range: {value!r}")
    return code


class RecordStore:
    """Read-only index of locally authoritative records.

    Brief:
      Built once and shared by every request handler without locking. There
      is no mutation API; reloading means constructing a new store.

    Inputs:
      - records: Mapping ``{name: {qtype: [value, ...]}}``. Type keys may be
        mnemonics or numeric codes, values are record data strings.
      - ttl: TTL written into the rendered zone lines (answers are re-stamped
        by the resolver, so this is informational).

    Outputs:
      - RecordStore instance.

    Example:
      >>> store = RecordStore({"example.com": {"A": ["192.0.2.1"]}})
      >>> store.lookup("EXAMPLE.com.", 1)
      ('example.com. 60 IN A 192.0.2.1',)
    """

    def __init__(
        self, records: Optional[Mapping[str, Mapping[Any, Any]]] = None, ttl: int = 60
    ) -> None:
        built: Dict[str, Dict[int, Tuple[str, ...]]] = {}
        for raw_name, by_type in (records or {}).items():
            if not isinstance(by_type, Mapping):
                raise ValueError(
                    f"records for {raw_name!r} must be a mapping of type -> values"
                )
            name = normalize_name(raw_name)
            per_name = built.setdefault(name, {})
            for raw_type, values in by_type.items():
                qtype = parse_qtype(raw_type)
                if isinstance(values, (str, bytes)):
                    values = [values]
                type_name = QTYPE.get(qtype, f"TYPE{qtype}")
                lines = tuple(
                    f"{name} {int(ttl)} IN {type_name} {str(value).strip()}"
                    for value in values
                )
                if not lines:
                    continue
                per_name[qtype] = per_name.get(qtype, ()) + lines

        self._records: Mapping[str, Mapping[int, Tuple[str, ...]]] = MappingProxyType(
            {name: MappingProxyType(types) for name, types in built.items()}
        )
        logger.debug(
            "Record store built with %d names, %d rrsets",
            len(self._records),
            sum(len(t) for t in self._records.values()),
        )

    @classmethod
    def default(cls) -> "RecordStore":
        """Brief: Build the bundled sample zone.

        Inputs:
          - None.

        Outputs:
          - RecordStore populated from DEFAULT_RECORDS.
        """

        return cls(DEFAULT_RECORDS)

    def lookup(self, name: str, qtype: int) -> Optional[Tuple[str, ...]]:
        """Brief: Return the record strings for (name, qtype), or None.

        Inputs:
          - name: Query name in any case, with or without trailing dot.
          - qtype: Record type code.

        Outputs:
          - tuple[str, ...] | None: Zone-file lines in configured order.
        """

        by_type = self._records.get(normalize_name(name))
        if by_type is None:
            return None
        return by_type.get(int(qtype))

    def has_name(self, name: str) -> bool:
        return normalize_name(name) in self._records

    def names(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)
