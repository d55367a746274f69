#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Client IP resolution from the peer address and proxy headers.

Every source on the request that may name the client (the socket peer,
X-Forwarded-For, X-Real-IP, CF-Connecting-IP, X-Cluster-Client-IP and the
RFC 7239 Forwarded header) yields zero or more candidates. Candidates are
classified by address range, de-duplicated in extraction order and one of
them is picked as the primary client address.

Nothing in here performs I/O or keeps state between calls.
"""

from __future__ import annotations
import re
import logging
import ipaddress
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

# ----------------------------- Errors -----------------------------

class NoAddressDetected(Exception):
    """No source on the request produced a usable IP literal."""

class InvalidAddress(ValueError):
    pass

# ----------------------------- Origins -----------------------------

ORIGIN_SOCKET = "socket"
ORIGIN_FORWARDED_FOR = "forwarded-for"
ORIGIN_REAL_IP = "real-ip"
ORIGIN_CF_CONNECTING_IP = "cf-connecting-ip"
ORIGIN_CLUSTER_CLIENT_IP = "cluster-client-ip"
ORIGIN_FORWARDED = "forwarded-rfc7239"

SOCKET_CONFIDENCE = 70
FORWARDED_CONFIDENCE = 75

# Single-valued headers in extraction order: (header, origin, confidence)
SINGLE_IP_HEADERS: Tuple[Tuple[str, str, int], ...] = (
    ("X-Real-IP", ORIGIN_REAL_IP, 85),
    # Only trustworthy behind Cloudflare; nothing here checks that the peer is one of its edges.
    ("CF-Connecting-IP", ORIGIN_CF_CONNECTING_IP, 95),
    ("X-Cluster-Client-IP", ORIGIN_CLUSTER_CLIENT_IP, 80),
)

# ----------------------------- Address ranges -----------------------------

CLASS_PUBLIC = "public"
CLASS_PRIVATE = "private"
CLASS_RESERVED = "reserved"
CLASS_LOOPBACK = "loopback"
CLASS_MULTICAST = "multicast"
CLASS_BROADCAST = "broadcast"

CLASSIFICATIONS = (CLASS_PUBLIC, CLASS_PRIVATE, CLASS_RESERVED, CLASS_LOOPBACK, CLASS_MULTICAST, CLASS_BROADCAST)


@dataclass(frozen=True)
class AddressRange:
    cidr: str
    type: str
    description: str

    @property
    def network(self) -> ipaddress._BaseNetwork:
        return ipaddress.ip_network(self.cidr)

    def to_dict(self) -> Dict[str, str]:
        net = self.network
        return {"cidr": self.cidr, "start": str(net.network_address), "end": str(net.broadcast_address),
                "type": self.type, "description": self.description}


# Precedence order: the first containing range decides the classification.
ADDRESS_RANGES: Tuple[AddressRange, ...] = (
    AddressRange("127.0.0.0/8", CLASS_LOOPBACK, "RFC 1122 - Loopback"),
    AddressRange("::1/128", CLASS_LOOPBACK, "RFC 4291 - Loopback"),
    AddressRange("10.0.0.0/8", CLASS_PRIVATE, "RFC 1918 - Class A"),
    AddressRange("172.16.0.0/12", CLASS_PRIVATE, "RFC 1918 - Class B"),
    AddressRange("192.168.0.0/16", CLASS_PRIVATE, "RFC 1918 - Class C"),
    AddressRange("fc00::/7", CLASS_PRIVATE, "RFC 4193 - Unique Local"),
    AddressRange("fe80::/10", CLASS_PRIVATE, "RFC 4291 - Link Local"),
    AddressRange("0.0.0.0/8", CLASS_RESERVED, "RFC 1122 - This network"),
    AddressRange("169.254.0.0/16", CLASS_RESERVED, "RFC 3927 - Link Local"),
    AddressRange("240.0.0.0/4", CLASS_RESERVED, "RFC 1112 - Reserved"),
    AddressRange("255.255.255.255/32", CLASS_RESERVED, "RFC 919 - Limited broadcast"),
    AddressRange("::/128", CLASS_RESERVED, "RFC 4291 - Unspecified"),
    AddressRange("::ffff:0:0/96", CLASS_RESERVED, "RFC 4291 - IPv4 Mapped"),
    AddressRange("2001:db8::/32", CLASS_RESERVED, "RFC 3849 - Documentation"),
    AddressRange("224.0.0.0/4", CLASS_MULTICAST, "RFC 5771 - Multicast"),
    AddressRange("ff00::/8", CLASS_MULTICAST, "RFC 4291 - Multicast"),
    # Shadowed by the reserved /32 above; kept so the table names every classification.
    AddressRange("255.255.255.255/32", CLASS_BROADCAST, "RFC 919 - Broadcast"),
)

_RANGES_BY_VERSION: Dict[int, Tuple[Tuple[ipaddress._BaseNetwork, AddressRange], ...]] = {
    v: tuple((r.network, r) for r in ADDRESS_RANGES if r.network.version == v) for v in (4, 6)
}

# ----------------------------- IP helpers -----------------------------

_RE_FORWARDED_PAIR = re.compile(r"(?P<k>[a-zA-Z]+)=((?P<q>\"[^\"]*\")|(?P<t>[^;,\s]+))")


def parse_address(token: Optional[str]) -> Optional[ipaddress._BaseAddress]:
    """Parse a bare IP literal; anything else (ports, brackets, names) gives None."""
    if not token: return None
    try:
        return ipaddress.ip_address(token.strip())
    except ValueError:
        return None


def find_range(ip: ipaddress._BaseAddress) -> Optional[AddressRange]:
    for net, rng in _RANGES_BY_VERSION[ip.version]:
        if ip in net: return rng
    return None


def classify_address(ip: ipaddress._BaseAddress) -> str:
    rng = find_range(ip)
    return rng.type if rng else CLASS_PUBLIC


def classify(text: str) -> str:
    ip = parse_address(text)
    if ip is None:
        raise InvalidAddress(f"Invalid IP address: {text}")
    return classify_address(ip)

# ----------------------------- Records -----------------------------

@dataclass(frozen=True)
class CandidateAddress:
    address: str
    version: int
    classification: str
    origin: str
    confidence: int

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "version": self.version, "type": self.classification,
                "source": self.origin, "confidence": self.confidence}


@dataclass(frozen=True)
class ResolvedConnection:
    candidates: Tuple[CandidateAddress, ...]
    primary: Optional[CandidateAddress]

    def to_dict(self) -> Dict[str, Any]:
        return {"primaryIP": self.primary.to_dict() if self.primary else None,
                "allDetectedIPs": [c.to_dict() for c in self.candidates]}


def make_candidate(token: Optional[str], origin: str, confidence: int) -> Optional[CandidateAddress]:
    ip = parse_address(token)
    if ip is None:
        if token: logger.debug("dropping unparseable %s value %r", origin, token)
        return None
    return CandidateAddress(address=ip.compressed, version=ip.version,
                            classification=classify_address(ip), origin=origin, confidence=confidence)

# ----------------------------- Header parsing -----------------------------

def forwarded_for_confidence(index: int) -> int:
    """Confidence of the X-Forwarded-For entry at 0-based ``index``."""
    if index == 0: return 90
    return max(50 - 10 * index, 10)


def parse_forwarded_for_values(val: Optional[str]) -> List[str]:
    """Return the ``for=`` value of every element of an RFC 7239 Forwarded header.

    Quotes and brackets are removed and a trailing ``:port`` is dropped when
    what precedes it is an IP literal, so ``for="[2001:db8::1]:8080"`` gives
    ``2001:db8::1``. Values that still aren't IP literals (``unknown``,
    obfuscated ``_hidden`` identifiers) are returned as-is and fail later
    validation.
    """
    out: List[str] = []
    if not val: return out
    for element in val.split(','):
        # First for= of the element wins
        v = next((m.group('q') or m.group('t') for m in _RE_FORWARDED_PAIR.finditer(element)
                  if m.group('k').lower() == 'for'), None)
        if not v: continue
        v = v.strip().strip('"')
        if v.startswith('[') and ']' in v:
            host, _, rest = v[1:].partition(']')
            if not rest or (rest.startswith(':') and rest[1:].isdigit()): v = host
        elif parse_address(v) is None and ':' in v:
            host, port = v.rsplit(':', 1)
            if port.isdigit() and parse_address(host) is not None: v = host
        out.append(v.replace('[', '').replace(']', ''))
    return out

# ----------------------------- Extraction -----------------------------

def extract_candidates(remote_addr: Optional[str], headers: Mapping[str, str]) -> List[CandidateAddress]:
    """All candidates in extraction order, duplicates included."""
    found: List[Optional[CandidateAddress]] = [make_candidate(remote_addr, ORIGIN_SOCKET, SOCKET_CONFIDENCE)]

    xff = headers.get("X-Forwarded-For") or ""
    if xff:
        for idx, item in enumerate(xff.split(',')):
            found.append(make_candidate(item, ORIGIN_FORWARDED_FOR, forwarded_for_confidence(idx)))

    for hdr, origin, confidence in SINGLE_IP_HEADERS:
        found.append(make_candidate(headers.get(hdr), origin, confidence))

    for v in parse_forwarded_for_values(headers.get("Forwarded")):
        found.append(make_candidate(v, ORIGIN_FORWARDED, FORWARDED_CONFIDENCE))

    return [c for c in found if c is not None]


def deduplicate(candidates: Iterable[CandidateAddress]) -> List[CandidateAddress]:
    seen = set(); out: List[CandidateAddress] = []
    for c in candidates:
        if c.address in seen: continue
        seen.add(c.address); out.append(c)
    return out


def select_primary(candidates: List[CandidateAddress]) -> CandidateAddress:
    """Highest-confidence public candidate, else highest-confidence overall.

    Ties keep extraction order. Raises NoAddressDetected on an empty list.
    """
    if not candidates:
        raise NoAddressDetected("No valid IP address detected")
    if len(candidates) == 1: return candidates[0]
    ranked = sorted(candidates, key=lambda c: c.confidence, reverse=True)
    public = [c for c in ranked if c.classification == CLASS_PUBLIC]
    return public[0] if public else ranked[0]


def resolve_connection(remote_addr: Optional[str], headers: Mapping[str, str]) -> ResolvedConnection:
    candidates = deduplicate(extract_candidates(remote_addr, headers))
    primary = select_primary(candidates)
    return ResolvedConnection(candidates=tuple(candidates), primary=primary)
