"""
Tests for subnet.py - mask conversions, subnet calculation and address details
"""
import pytest

from subnet import SubnetError, calculate_subnet, cidr_to_mask, ip_details, mask_to_cidr, parse_mask


def test_mask_conversions_are_inverse():
    """prefix -> mask -> prefix is the identity for every IPv4 prefix"""
    for prefix in range(33):
        assert mask_to_cidr(cidr_to_mask(prefix)) == prefix


@pytest.mark.parametrize("prefix,mask", [
    (0, "0.0.0.0"),
    (8, "255.0.0.0"),
    (20, "255.255.240.0"),
    (24, "255.255.255.0"),
    (31, "255.255.255.254"),
    (32, "255.255.255.255"),
])
def test_cidr_to_mask(prefix, mask):
    assert cidr_to_mask(prefix) == mask


@pytest.mark.parametrize("prefix", [-1, 33, 64])
def test_cidr_out_of_range(prefix):
    with pytest.raises(SubnetError):
        cidr_to_mask(prefix)


@pytest.mark.parametrize("mask", ["255.0.255.0", "255.255.255.1", "256.0.0.0", "abc", "ffff::"])
def test_malformed_masks_rejected(mask):
    with pytest.raises(SubnetError):
        mask_to_cidr(mask)


def test_parse_mask_forms():
    assert parse_mask("255.255.255.0") == ("255.255.255.0", 24)
    assert parse_mask("/16") == ("255.255.0.0", 16)
    assert parse_mask("30") == ("255.255.255.252", 30)
    with pytest.raises(SubnetError):
        parse_mask("/x")
    with pytest.raises(SubnetError):
        parse_mask("")


@pytest.mark.parametrize("mask", ["abc/24", "10.0.0.0/24", "junk.x/8", "24/", "//24", "/124", "²", "/²", "2 4"])
def test_parse_mask_rejects_malformed(mask):
    """Only a dotted mask, N or /N is accepted; nothing is coerced"""
    with pytest.raises(SubnetError):
        parse_mask(mask)


def test_calculate_subnet_class_c():
    info = calculate_subnet("192.168.1.100", "255.255.255.0")
    assert info.network == "192.168.1.0"
    assert info.broadcast == "192.168.1.255"
    assert info.first_host == "192.168.1.1"
    assert info.last_host == "192.168.1.254"
    assert info.total_hosts == 256
    assert info.usable_hosts == 254
    assert info.cidr == "192.168.1.0/24"


def test_calculate_subnet_with_prefix():
    info = calculate_subnet("10.20.30.40", "/20")
    assert info.network == "10.20.16.0"
    assert info.broadcast == "10.20.31.255"
    assert info.subnet_mask == "255.255.240.0"
    assert info.usable_hosts == 4094


@pytest.mark.parametrize("mask,total,usable", [("31", 2, 0), ("32", 1, 0)])
def test_point_to_point_and_host_routes(mask, total, usable):
    info = calculate_subnet("203.0.113.7", mask)
    assert info.total_hosts == total
    assert info.usable_hosts == usable
    assert info.first_host == info.network
    assert info.last_host == info.broadcast


def test_calculate_subnet_rejects_bad_input():
    with pytest.raises(SubnetError):
        calculate_subnet("not-an-ip", "24")
    with pytest.raises(SubnetError):
        calculate_subnet("2001:db8::1", "64")
    with pytest.raises(SubnetError):
        calculate_subnet("10.0.0.1", "33")


def test_ipv4_details():
    d = ip_details("192.168.1.100")
    assert d.version == 4
    assert d.type == "private"
    assert d.range["cidr"] == "192.168.0.0/16"
    assert d.binary == "11000000.10101000.00000001.01100100"
    assert d.decimal == 3232235876
    assert d.subnet == "192.168.1.0"
    assert d.cidr == "192.168.1.0/24"


def test_ipv6_details():
    d = ip_details("2001:db8:1:2:3:4:5:6")
    assert d.type == "reserved"
    assert d.range["description"] == "RFC 3849 - Documentation"
    assert d.cidr == "2001:db8:1:2::/64"
    assert "binary" not in d.to_dict()


def test_public_address_has_no_range():
    assert ip_details("8.8.8.8").range is None
