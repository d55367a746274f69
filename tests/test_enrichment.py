"""
Tests for enrichment.py - geolocation table, security heuristics, fingerprinting and DNS
"""
import pytest
import dns.exception

import enrichment
from enrichment import (
    GEOIP_RANGES,
    NetworkInfo,
    analyze_dns,
    assess_security,
    fingerprint_request,
    find_geo_range,
    geolocate,
    reputation_for,
    reverse_dns,
)


def test_geo_table_is_read_only():
    assert isinstance(GEOIP_RANGES, tuple)
    with pytest.raises(TypeError):
        enrichment.COUNTRY_INFO["XX"] = {}


def test_known_resolver_location():
    geo, net = geolocate("8.8.8.8")
    assert geo.country_code == "US"
    assert geo.city == "Mountain View"
    assert geo.accuracy == 100
    assert net.asn == 15169
    assert net.connection_type == "hosting"


def test_block_lookup():
    geo, net = geolocate("81.2.69.160")
    assert geo.country == "United Kingdom"
    assert net.organization == "British Telecom"


def test_regional_fallback():
    rng = find_geo_range("88.1.2.3")
    assert rng.country_code == "DE"
    assert rng.region == "Europe"
    geo, _ = geolocate("23.1.2.3")
    assert geo.country_code == "US"
    assert geo.accuracy == 60


def test_non_public_addresses_are_unknown():
    geo, net = geolocate("192.168.1.1")
    assert geo.country_code == "XX"
    assert geo.accuracy == 0
    assert net.isp == "Unknown ISP"


def test_geolocate_rejects_garbage():
    with pytest.raises(ValueError):
        geolocate("example.com")


def test_security_for_hosting_network():
    sec = assess_security(NetworkInfo(organization="Amazon Web Services", connection_type="hosting"))
    assert sec.is_proxy is True
    assert sec.is_vpn is False
    assert sec.is_tor is False
    assert sec.risk_score == 40
    assert sec.reputation == "suspicious"
    assert sec.threat_types == ("proxy",)


def test_security_flags_vpn_and_proxy_headers():
    sec = assess_security(NetworkInfo(organization="Acme VPN Tunnel"), {"Via": "1.1 squid"})
    assert sec.is_vpn is True
    assert sec.is_proxy is True
    assert sec.proxy_signals == ("Via",)
    assert sec.risk_score == 50
    assert sec.is_threat is True


def test_security_for_plain_residential():
    sec = assess_security(NetworkInfo(connection_type="residential"), {})
    assert sec.risk_score == 0
    assert sec.reputation == "good"
    assert sec.is_threat is False


@pytest.mark.parametrize("risk,label", [(0, "good"), (20, "neutral"), (40, "suspicious"), (70, "malicious")])
def test_reputation_thresholds(risk, label):
    assert reputation_for(risk) == label


CHROME_WIN = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36")
EDGE_WIN = CHROME_WIN + " Edg/120.0.0.0"
SAFARI_IPHONE = ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
                 "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1")
FIREFOX_UBUNTU = "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.mark.parametrize("ua,browser,os_guess,device,confidence", [
    (CHROME_WIN, "Chrome", "Windows 10/11", "desktop", 85),
    (EDGE_WIN, "Edge", "Windows 10/11", "desktop", 85),
    (SAFARI_IPHONE, "Safari", "iOS", "mobile", 85),
    (FIREFOX_UBUNTU, "Firefox", "Ubuntu Linux", "server", 85),
    ("curl/8.4.0", "cURL", None, "bot", 75),
])
def test_fingerprint_rules(ua, browser, os_guess, device, confidence):
    fp = fingerprint_request({"User-Agent": ua})
    assert fp.browser == browser
    assert fp.os == os_guess
    assert fp.device_type == device
    assert fp.confidence == confidence


def test_fingerprint_without_user_agent():
    fp = fingerprint_request({"DNT": "1", "Sec-Fetch-Mode": "navigate"})
    assert fp.confidence == 0
    assert fp.browser is None
    assert fp.device_type == "unknown"
    assert fp.dnt is True
    assert fp.to_dict()["secFetch"]["mode"] == "navigate"


def test_reverse_dns_skips_non_public():
    assert reverse_dns("10.0.0.1") is None
    assert reverse_dns("garbage") is None


def test_reverse_dns_uses_socket(monkeypatch):
    monkeypatch.setattr(enrichment.socket, "gethostbyaddr", lambda ip: ("dns.google", [], [ip]))
    assert reverse_dns("8.8.8.8") == "dns.google"


class _FakeRdata:
    def __init__(self, text):
        self.text = text

    def to_text(self):
        return self.text


class _FakeAnswer(list):
    class rrset:
        ttl = 300


class _FakeResolver:
    zone = {
        "PTR": ["dns.google."],
        "A": ["8.8.8.8", "8.8.4.4"],
        "AAAA": ["2001:4860:4860::8888"],
    }

    def __init__(self):
        self.lifetime = None

    def resolve(self, qname, rtype):
        if rtype not in self.zone:
            raise dns.exception.DNSException("no answer")
        return _FakeAnswer(_FakeRdata(v) for v in self.zone[rtype])


def test_analyze_dns_forward_confirmed(monkeypatch):
    monkeypatch.setattr(enrichment.dns.resolver, "Resolver", _FakeResolver)
    result = analyze_dns("8.8.8.8", timeout=1.0)
    assert result.hostname == "dns.google"
    assert result.verified is True
    assert result.forward_match is True
    assert {r.type for r in result.records} == {"A", "AAAA"}
    assert all(r.ttl == 300 for r in result.records)


def test_analyze_dns_without_ptr(monkeypatch):
    class _Empty(_FakeResolver):
        zone = {}
    monkeypatch.setattr(enrichment.dns.resolver, "Resolver", _Empty)
    result = analyze_dns("198.51.100.1")
    assert result.hostname is None
    assert result.verified is False
    assert result.records == ()
