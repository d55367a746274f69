#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Best-effort enrichment of a resolved client address.

Geolocation and network ownership come from a small static table (or a
MaxMind database when GEOIP_MMDB is configured), security flags are simple
heuristics over that data and the request's proxy headers, the fingerprint
is a user-agent rule table, and DNS data comes from live lookups. Lookup
failures never raise; they leave the corresponding fields empty.
"""

from __future__ import annotations
import time
import socket
import logging
import ipaddress
from types import MappingProxyType
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

import dns.exception
import dns.resolver
import dns.reversename
import geoip2.database
import geoip2.errors

from resolver import CLASS_PUBLIC, classify_address, parse_address
from settings import Config

logger = logging.getLogger(__name__)

# ----------------------------- Static tables -----------------------------

@dataclass(frozen=True)
class GeoRange:
    cidr: str
    country: str
    country_code: str
    region: str
    city: str
    latitude: float
    longitude: float
    timezone: str
    isp: str
    organization: str
    asn: int
    asn_organization: str
    connection_type: str

    @property
    def network(self) -> ipaddress._BaseNetwork:
        return ipaddress.ip_network(self.cidr)


GEOIP_RANGES: Tuple[GeoRange, ...] = (
    GeoRange("8.8.8.8/32", "United States", "US", "California", "Mountain View", 37.4056, -122.0775,
             "America/Los_Angeles", "Google LLC", "Google Public DNS", 15169, "Google LLC", "hosting"),
    GeoRange("8.8.4.4/32", "United States", "US", "California", "Mountain View", 37.4056, -122.0775,
             "America/Los_Angeles", "Google LLC", "Google Public DNS", 15169, "Google LLC", "hosting"),
    GeoRange("1.1.1.1/32", "United States", "US", "California", "San Francisco", 37.7749, -122.4194,
             "America/Los_Angeles", "Cloudflare Inc", "Cloudflare Public DNS", 13335, "Cloudflare Inc", "hosting"),
    GeoRange("1.0.0.1/32", "United States", "US", "California", "San Francisco", 37.7749, -122.4194,
             "America/Los_Angeles", "Cloudflare Inc", "Cloudflare Public DNS", 13335, "Cloudflare Inc", "hosting"),
    GeoRange("208.67.222.222/32", "United States", "US", "California", "San Francisco", 37.7749, -122.4194,
             "America/Los_Angeles", "Cisco OpenDNS LLC", "OpenDNS", 36692, "Cisco OpenDNS LLC", "hosting"),
    GeoRange("52.0.0.0/8", "United States", "US", "Virginia", "Ashburn", 39.0469, -77.4903,
             "America/New_York", "Amazon.com Inc", "Amazon Web Services", 16509, "Amazon.com Inc", "hosting"),
    GeoRange("40.0.0.0/8", "United States", "US", "Washington", "Redmond", 47.674, -122.1215,
             "America/Los_Angeles", "Microsoft Corporation", "Microsoft Azure", 8075, "Microsoft Corporation", "hosting"),
    GeoRange("185.0.0.0/8", "Germany", "DE", "North Rhine-Westphalia", "Düsseldorf", 51.2217, 6.7762,
             "Europe/Berlin", "Various European ISPs", "RIPE NCC", 0, "RIPE NCC", "business"),
    GeoRange("103.0.0.0/8", "Singapore", "SG", "Central Singapore", "Singapore", 1.3521, 103.8198,
             "Asia/Singapore", "Various Asian ISPs", "APNIC", 0, "APNIC", "business"),
    GeoRange("142.0.0.0/8", "Canada", "CA", "Ontario", "Toronto", 43.6532, -79.3832,
             "America/Toronto", "Various Canadian ISPs", "ARIN", 0, "ARIN", "residential"),
    GeoRange("1.128.0.0/11", "Australia", "AU", "New South Wales", "Sydney", -33.8688, 151.2093,
             "Australia/Sydney", "Telstra Corporation", "Telstra Internet", 1221, "Telstra Corporation", "residential"),
    GeoRange("81.0.0.0/8", "United Kingdom", "GB", "England", "London", 51.5074, -0.1278,
             "Europe/London", "BT Group", "British Telecom", 2856, "BT Group", "residential"),
    GeoRange("126.0.0.0/8", "Japan", "JP", "Tokyo", "Tokyo", 35.6762, 139.6503,
             "Asia/Tokyo", "NTT Communications", "NTT Communications Corporation", 4713, "NTT Communications", "business"),
    GeoRange("200.0.0.0/8", "Brazil", "BR", "São Paulo", "São Paulo", -23.5505, -46.6333,
             "America/Sao_Paulo", "Various Brazilian ISPs", "LACNIC", 0, "LACNIC", "residential"),
    GeoRange("117.0.0.0/8", "India", "IN", "Maharashtra", "Mumbai", 19.076, 72.8777,
             "Asia/Kolkata", "Bharti Airtel", "Bharti Airtel Limited", 9498, "Bharti Airtel Limited", "mobile"),
)

_GEO_NETWORKS = tuple((r.network, r) for r in GEOIP_RANGES)

COUNTRY_INFO: Mapping[str, Mapping[str, Any]] = MappingProxyType({
    "US": MappingProxyType({"name": "United States", "continent": "North America", "currency": "USD", "calling_code": "+1"}),
    "DE": MappingProxyType({"name": "Germany", "continent": "Europe", "currency": "EUR", "calling_code": "+49"}),
    "SG": MappingProxyType({"name": "Singapore", "continent": "Asia", "currency": "SGD", "calling_code": "+65"}),
    "CA": MappingProxyType({"name": "Canada", "continent": "North America", "currency": "CAD", "calling_code": "+1"}),
    "AU": MappingProxyType({"name": "Australia", "continent": "Oceania", "currency": "AUD", "calling_code": "+61"}),
    "GB": MappingProxyType({"name": "United Kingdom", "continent": "Europe", "currency": "GBP", "calling_code": "+44"}),
    "JP": MappingProxyType({"name": "Japan", "continent": "Asia", "currency": "JPY", "calling_code": "+81"}),
    "BR": MappingProxyType({"name": "Brazil", "continent": "South America", "currency": "BRL", "calling_code": "+55"}),
    "IN": MappingProxyType({"name": "India", "continent": "Asia", "currency": "INR", "calling_code": "+91"}),
})

# Coarse registry blocks by first IPv4 octet: (low, high, country code, region)
REGIONAL_BLOCKS: Tuple[Tuple[int, int, str, str], ...] = (
    (1, 2, "SG", "Asia"),
    (80, 95, "DE", "Europe"),
    (3, 126, "US", "North America"),
    (128, 191, "US", "North America"),
)

PROXY_SIGNAL_HEADERS = (
    "Via", "Forwarded", "X-Forwarded-Host", "X-Forwarded-Proto", "X-Forwarded-Port", "Proxy-Authorization",
)

VPN_KEYWORDS = ("vpn", "proxy", "tunnel", "private")

# ----------------------------- Records -----------------------------

@dataclass(frozen=True)
class GeoLocation:
    country: str = "Unknown"
    country_code: str = "XX"
    region: str = "Unknown"
    city: str = "Unknown"
    latitude: float = 0.0
    longitude: float = 0.0
    timezone: str = "UTC"
    accuracy: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"country": self.country, "countryCode": self.country_code, "region": self.region,
                "city": self.city, "latitude": self.latitude, "longitude": self.longitude,
                "timezone": self.timezone, "accuracy": self.accuracy}


@dataclass(frozen=True)
class NetworkInfo:
    isp: str = "Unknown ISP"
    organization: str = "Unknown Organization"
    asn: int = 0
    asn_organization: str = "Unknown"
    connection_type: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {"isp": self.isp, "organization": self.organization, "asn": self.asn,
                "asnOrganization": self.asn_organization, "connectionType": self.connection_type}


@dataclass(frozen=True)
class SecurityInfo:
    is_proxy: bool
    is_vpn: bool
    is_tor: bool
    is_threat: bool
    threat_types: Tuple[str, ...]
    risk_score: int
    reputation: str
    proxy_signals: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"isProxy": self.is_proxy, "isVPN": self.is_vpn, "isTor": self.is_tor,
                "isThreat": self.is_threat, "threatTypes": list(self.threat_types),
                "riskScore": self.risk_score, "reputation": self.reputation,
                "proxySignals": list(self.proxy_signals)}

# ----------------------------- Geolocation -----------------------------

def find_geo_range(address: str) -> Optional[GeoRange]:
    ip = parse_address(address)
    if ip is None or ip.version != 4: return None
    for net, rng in _GEO_NETWORKS:
        if ip in net: return rng
    first_octet = int(ip.packed[0])
    for low, high, code, region in REGIONAL_BLOCKS:
        if low <= first_octet <= high:
            info = COUNTRY_INFO.get(code, {})
            return GeoRange("0.0.0.0/0", info.get("name", "Unknown"), code, region, "Unknown", 0.0, 0.0,
                            "UTC", "Unknown ISP", "Regional Internet Registry", 0, "Unknown", "unknown")
    return None


def location_accuracy(rng) -> int:
    """Completeness score for a GeoRange or GeoLocation."""
    accuracy = 50
    if rng.latitude and rng.longitude: accuracy += 20
    if rng.city and rng.city != "Unknown": accuracy += 15
    if rng.region and rng.region != "Unknown": accuracy += 10
    if rng.timezone and rng.timezone != "UTC": accuracy += 5
    return min(accuracy, 100)


def _mmdb_lookup(address: str) -> Optional[Tuple[GeoLocation, NetworkInfo]]:
    if not Config.GEOIP_MMDB: return None
    try:
        with geoip2.database.Reader(Config.GEOIP_MMDB) as reader:
            city = reader.city(address)
            asn = None
            # City-only databases raise TypeError for asn()
            try: asn = reader.asn(address)
            except (TypeError, geoip2.errors.GeoIP2Error): pass
    except geoip2.errors.AddressNotFoundError:
        logger.debug("%s not present in %s", address, Config.GEOIP_MMDB)
        return None
    except Exception as exc:
        logger.warning("GeoIP database lookup failed for %s: %s", address, exc)
        return None
    geo = GeoLocation(country=city.country.name or "Unknown", country_code=city.country.iso_code or "XX",
                      region=city.subdivisions.most_specific.name or "Unknown", city=city.city.name or "Unknown",
                      latitude=city.location.latitude or 0.0, longitude=city.location.longitude or 0.0,
                      timezone=city.location.time_zone or "UTC")
    org = asn.autonomous_system_organization if asn else None
    net = NetworkInfo(isp=org or "Unknown ISP", organization=org or "Unknown Organization",
                      asn=(asn.autonomous_system_number if asn else None) or 0,
                      asn_organization=org or "Unknown")
    return replace(geo, accuracy=location_accuracy(geo)), net


def geolocate(address: str) -> Tuple[GeoLocation, NetworkInfo]:
    ip = parse_address(address)
    if ip is None:
        raise ValueError(f"Invalid IP address: {address}")
    if classify_address(ip) != CLASS_PUBLIC:
        return GeoLocation(), NetworkInfo()
    found = _mmdb_lookup(ip.compressed)
    if found: return found
    rng = find_geo_range(ip.compressed)
    if rng is None:
        return GeoLocation(), NetworkInfo()
    geo = GeoLocation(country=rng.country, country_code=rng.country_code, region=rng.region, city=rng.city,
                      latitude=rng.latitude, longitude=rng.longitude, timezone=rng.timezone,
                      accuracy=location_accuracy(rng))
    net = NetworkInfo(isp=rng.isp, organization=rng.organization, asn=rng.asn,
                      asn_organization=rng.asn_organization, connection_type=rng.connection_type)
    return geo, net

# ----------------------------- Security -----------------------------

def reputation_for(risk: int) -> str:
    if risk >= 70: return "malicious"
    if risk >= 40: return "suspicious"
    if risk >= 20: return "neutral"
    return "good"


def assess_security(network: NetworkInfo, headers: Optional[Mapping[str, str]] = None) -> SecurityInfo:
    """Heuristic flags from ownership data and the request's proxy headers.

    There is no exit-node list, so ``is_tor`` is always False.
    """
    signals = tuple(h for h in PROXY_SIGNAL_HEADERS if headers and headers.get(h))
    hosting = network.connection_type == "hosting"
    is_proxy = hosting or bool(signals)
    org = network.organization.lower()
    is_vpn = any(k in org for k in VPN_KEYWORDS)
    is_tor = False
    risk = 0
    risk += 30 if is_proxy else 0
    risk += 20 if is_vpn else 0
    risk += 50 if is_tor else 0
    risk += 10 if hosting else 0
    risk = min(risk, 100)
    threats = tuple(name for name, hit in (("proxy", is_proxy), ("vpn", is_vpn), ("tor", is_tor)) if hit)
    return SecurityInfo(is_proxy=is_proxy, is_vpn=is_vpn, is_tor=is_tor, is_threat=bool(threats),
                        threat_types=threats, risk_score=risk, reputation=reputation_for(risk),
                        proxy_signals=signals)

# ----------------------------- Fingerprint -----------------------------

# (patterns, label, confidence delta), evaluated in order against the lowercased
# User-Agent; the first rule with any matching pattern wins. Chromium-based
# browsers also advertise "chrome" and "safari", hence Edge/Opera go first.
UaRule = Tuple[Tuple[str, ...], str, int]

BROWSER_RULES: Tuple[UaRule, ...] = (
    (("edg",), "Edge", 20),
    (("opera", "opr/"), "Opera", 15),
    (("chrome",), "Chrome", 20),
    (("firefox",), "Firefox", 20),
    (("safari",), "Safari", 20),
    (("curl",), "cURL", 25),
    (("wget",), "Wget", 25),
    (("python-requests",), "python-requests", 25),
    (("bot", "crawler", "spider"), "Bot/Crawler", 30),
)

OS_RULES: Tuple[UaRule, ...] = (
    (("windows nt 10.0",), "Windows 10/11", 15),
    (("windows nt 6.3",), "Windows 8.1", 15),
    (("windows nt 6.1",), "Windows 7", 15),
    (("windows",), "Windows", 10),
    (("iphone os", "ipad; cpu os"), "iOS", 15),
    (("mac os x", "macos"), "macOS", 15),
    (("android",), "Android", 15),
    (("ubuntu",), "Ubuntu Linux", 15),
    (("centos",), "CentOS Linux", 15),
    (("linux",), "Linux", 10),
)

BOT_MARKERS = ("bot", "crawler", "spider", "curl", "wget", "python-requests")


def match_rule(ua: str, rules: Tuple[UaRule, ...]) -> Tuple[Optional[str], int]:
    for patterns, label, delta in rules:
        if any(p in ua for p in patterns): return label, delta
    return None, 0


def device_type(ua: str, os_guess: Optional[str]) -> str:
    os_l = (os_guess or "").lower()
    if any(m in ua for m in BOT_MARKERS): return "bot"
    if "mobile" in ua or "iphone" in ua: return "mobile"
    if "tablet" in ua or "ipad" in ua or "android" in ua: return "tablet"
    if "linux" in os_l and any(m in ua for m in ("server", "centos", "ubuntu")): return "server"
    if any(m in os_l for m in ("windows", "macos", "linux")): return "desktop"
    return "unknown"


@dataclass(frozen=True)
class Fingerprint:
    user_agent: str
    browser: Optional[str]
    os: Optional[str]
    device_type: str
    confidence: int
    secure: bool = False
    dnt: bool = False
    upgrade_insecure_requests: bool = False
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    sec_fetch_site: Optional[str] = None
    sec_fetch_mode: Optional[str] = None
    sec_fetch_dest: Optional[str] = None
    sec_fetch_user: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"userAgent": self.user_agent, "browserGuess": self.browser, "osGuess": self.os,
                "deviceType": self.device_type, "confidence": self.confidence, "secure": self.secure,
                "dnt": self.dnt, "upgradeInsecureRequests": self.upgrade_insecure_requests,
                "acceptLanguage": self.accept_language, "acceptEncoding": self.accept_encoding,
                "secFetch": {"site": self.sec_fetch_site, "mode": self.sec_fetch_mode,
                             "dest": self.sec_fetch_dest, "user": self.sec_fetch_user}}


def fingerprint_request(headers: Mapping[str, str], secure: bool = False) -> Fingerprint:
    user_agent = headers.get("User-Agent") or ""
    ua = user_agent.lower()
    browser, b_delta = match_rule(ua, BROWSER_RULES)
    os_guess, o_delta = match_rule(ua, OS_RULES)
    confidence = min(50 + b_delta + o_delta, 100) if ua else 0
    return Fingerprint(user_agent=user_agent, browser=browser, os=os_guess,
                       device_type=device_type(ua, os_guess), confidence=confidence, secure=secure,
                       dnt=headers.get("DNT") == "1",
                       upgrade_insecure_requests=headers.get("Upgrade-Insecure-Requests") == "1",
                       accept_language=headers.get("Accept-Language"),
                       accept_encoding=headers.get("Accept-Encoding"),
                       sec_fetch_site=headers.get("Sec-Fetch-Site"), sec_fetch_mode=headers.get("Sec-Fetch-Mode"),
                       sec_fetch_dest=headers.get("Sec-Fetch-Dest"), sec_fetch_user=headers.get("Sec-Fetch-User"))

# ----------------------------- DNS -----------------------------

def reverse_dns(ip: str, timeout_ms: int = 500) -> Optional[str]:
    addr = parse_address(ip)
    if addr is None or classify_address(addr) != CLASS_PUBLIC:
        return None
    def _lookup():
        try:
            return socket.gethostbyaddr(addr.exploded)[0]
        except OSError:
            return None
    ex = ThreadPoolExecutor(max_workers=1)
    try:
        return ex.submit(_lookup).result(timeout=timeout_ms / 1000.0)
    except FutureTimeout:
        logger.debug("reverse DNS for %s timed out after %sms", ip, timeout_ms)
        return None
    finally:
        ex.shutdown(wait=False)


@dataclass(frozen=True)
class DnsRecord:
    type: str
    value: str
    ttl: Optional[int] = None


@dataclass(frozen=True)
class DnsAnalysis:
    ip_address: str
    hostname: Optional[str]
    verified: bool
    forward_match: bool
    records: Tuple[DnsRecord, ...] = ()
    response_time_ms: float = 0.0
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"ipAddress": self.ip_address,
                "reverseDNS": {"hostname": self.hostname, "verified": self.verified, "forwardMatch": self.forward_match},
                "dnsRecords": [{"type": r.type, "value": r.value, "ttl": r.ttl} for r in self.records],
                "responseTime": self.response_time_ms, "errors": list(self.errors)}


RECORD_TYPES = ("A", "AAAA", "MX", "TXT", "NS", "CNAME")


def _resolve(resolver: dns.resolver.Resolver, qname, rtype: str) -> List[DnsRecord]:
    try:
        answer = resolver.resolve(qname, rtype)
    except dns.exception.DNSException as exc:
        logger.debug("%s lookup for %s failed: %s", rtype, qname, exc)
        return []
    ttl = answer.rrset.ttl if answer.rrset is not None else None
    return [DnsRecord(type=rtype, value=r.to_text().rstrip('.'), ttl=ttl) for r in answer]


def analyze_dns(address: str, timeout: Optional[float] = None) -> DnsAnalysis:
    """PTR lookup, forward confirmation and the PTR host's common records."""
    ip = parse_address(address)
    if ip is None:
        raise ValueError(f"Invalid IP address: {address}")
    t0 = time.time()
    try:
        resolver = dns.resolver.Resolver()
    except dns.exception.DNSException as exc:
        logger.warning("no usable resolver configuration: %s", exc)
        return DnsAnalysis(ip_address=ip.compressed, hostname=None, verified=False, forward_match=False,
                           errors=(f"resolver unavailable: {exc}",))
    resolver.lifetime = timeout if timeout is not None else Config.DNS_TIMEOUT_SECONDS
    ptr = _resolve(resolver, dns.reversename.from_address(ip.compressed), "PTR")
    hostname = ptr[0].value if ptr else None
    records: List[DnsRecord] = []
    forward_match = False
    if hostname:
        for rtype in RECORD_TYPES:
            records.extend(_resolve(resolver, hostname, rtype))
        fwd_type = "A" if ip.version == 4 else "AAAA"
        forward = {parse_address(r.value) for r in records if r.type == fwd_type}
        forward_match = ip in forward
    logger.info("DNS analysis of %s: hostname=%s forward_match=%s", ip.compressed, hostname, forward_match)
    return DnsAnalysis(ip_address=ip.compressed, hostname=hostname, verified=bool(hostname),
                       forward_match=forward_match, records=tuple(records),
                       response_time_ms=round((time.time() - t0) * 1000, 2))
