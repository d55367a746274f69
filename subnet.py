#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""IPv4 subnet arithmetic and per-address details."""

from __future__ import annotations
import re
import logging
import ipaddress
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

from resolver import classify_address, find_range, parse_address

logger = logging.getLogger(__name__)

_FULL = 0xFFFFFFFF

# "24" or "/24", ASCII digits only
_RE_PREFIX = re.compile(r"/?(\d{1,2})", re.ASCII)


class SubnetError(ValueError):
    pass

# ----------------------------- Mask conversions -----------------------------

def cidr_to_mask(prefix: int) -> str:
    if isinstance(prefix, bool) or not isinstance(prefix, int) or not 0 <= prefix <= 32:
        raise SubnetError(f"CIDR prefix must be between 0 and 32, got {prefix!r}")
    bits = (_FULL << (32 - prefix)) & _FULL
    return str(ipaddress.IPv4Address(bits))


def mask_to_cidr(mask: str) -> int:
    try:
        bits = int(ipaddress.IPv4Address(mask.strip()))
    except (ValueError, AttributeError):
        raise SubnetError(f"Invalid subnet mask: {mask!r}") from None
    prefix = 32 - ((~bits & _FULL).bit_length())
    if (_FULL << (32 - prefix)) & _FULL != bits:
        raise SubnetError(f"Subnet mask is not contiguous: {mask}")
    return prefix


def parse_mask(mask: str) -> Tuple[str, int]:
    """Accept ``255.255.255.0``, ``/24`` or ``24``; return (dotted mask, prefix)."""
    m = (mask or "").strip()
    if not m:
        raise SubnetError("Subnet mask is required")
    if '.' in m and '/' not in m:
        prefix = mask_to_cidr(m)
        return cidr_to_mask(prefix), prefix
    match = _RE_PREFIX.fullmatch(m)
    if match is None:
        raise SubnetError(f"Invalid subnet mask or CIDR prefix: {mask!r}")
    prefix = int(match.group(1))
    return cidr_to_mask(prefix), prefix

# ----------------------------- Subnet calculation -----------------------------

@dataclass(frozen=True)
class SubnetInfo:
    network: str
    broadcast: str
    first_host: str
    last_host: str
    total_hosts: int
    usable_hosts: int
    subnet_mask: str
    prefix_length: int
    cidr: str

    def to_dict(self) -> Dict[str, Any]:
        return {"network": self.network, "broadcast": self.broadcast, "firstHost": self.first_host,
                "lastHost": self.last_host, "totalHosts": self.total_hosts, "usableHosts": self.usable_hosts,
                "subnetMask": self.subnet_mask, "prefixLength": self.prefix_length, "cidr": self.cidr}


def calculate_subnet(address: str, mask: str) -> SubnetInfo:
    ip = parse_address(address)
    if ip is None or ip.version != 4:
        raise SubnetError(f"Invalid IPv4 address: {address!r}")
    dotted, prefix = parse_mask(mask)
    net = ipaddress.IPv4Network(f"{ip}/{prefix}", strict=False)
    total = net.num_addresses
    if total <= 2:
        first, last = net.network_address, net.broadcast_address
    else:
        first, last = net.network_address + 1, net.broadcast_address - 1
    return SubnetInfo(network=str(net.network_address), broadcast=str(net.broadcast_address),
                      first_host=str(first), last_host=str(last), total_hosts=total,
                      usable_hosts=max(total - 2, 0), subnet_mask=dotted, prefix_length=prefix,
                      cidr=net.with_prefixlen)

# ----------------------------- Address details -----------------------------

@dataclass(frozen=True)
class IpDetails:
    address: str
    version: int
    type: str
    range: Optional[Dict[str, str]]
    subnet: str
    cidr: str
    binary: Optional[str] = None
    decimal: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if not (v is None and k in ("binary", "decimal"))}


def ip_details(address: str) -> IpDetails:
    """Classification and range of ``address`` plus a default /24 (IPv4) or /64 (IPv6) subnet."""
    ip = parse_address(address)
    if ip is None:
        raise SubnetError(f"Invalid IP address: {address!r}")
    rng = find_range(ip)
    if ip.version == 4:
        net = ipaddress.IPv4Network(f"{ip}/24", strict=False)
        return IpDetails(address=ip.compressed, version=4, type=classify_address(ip),
                         range=rng.to_dict() if rng else None,
                         subnet=str(net.network_address), cidr=net.with_prefixlen,
                         binary='.'.join(f"{b:08b}" for b in ip.packed), decimal=int(ip))
    net = ipaddress.IPv6Network(f"{ip.exploded}/64", strict=False)
    return IpDetails(address=ip.compressed, version=6, type=classify_address(ip),
                     range=rng.to_dict() if rng else None,
                     subnet=str(net.network_address), cidr=net.with_prefixlen)
