from ipaddress import ip_address, ip_network

import pytest

from ipgate.core import (
    Credential,
    Decision,
    first_match,
    is_private_blocked,
    match_credentials,
    parse_address,
    parse_credentials,
    parse_networks,
)


def test_parse_address_unmaps_ipv4_in_ipv6():
    assert parse_address("::ffff:203.0.113.7") == ip_address("203.0.113.7")
    assert parse_address(" 2001:db8::1 ") == ip_address("2001:db8::1")


def test_parse_address_rejects_garbage():
    with pytest.raises(ValueError):
        parse_address("not-an-ip")


def test_parse_networks_is_lenient_about_host_bits():
    nets = parse_networks("10.0.0.1/8, ,192.0.2.4,2001:db8::/32")
    assert nets == (
        ip_network("10.0.0.0/8"),
        ip_network("192.0.2.4/32"),
        ip_network("2001:db8::/32"),
    )
    assert parse_networks("") == ()


def test_parse_networks_rejects_malformed():
    with pytest.raises(ValueError):
        parse_networks("10.0.0.0/33")


def test_parse_credentials_splits_on_first_colon():
    creds = parse_credentials("alice:secret,bob:pa:ss,")
    assert creds == (Credential("alice", "secret"), Credential("bob", "pa:ss"))

    with pytest.raises(ValueError):
        parse_credentials("alice")


def test_credential_repr_hides_secret():
    assert repr(Credential("alice", "hunter2")) == "Credential(name='alice', secret='***')"


def test_private_ranges():
    for ip in ["127.0.0.1", "::1", "10.1.2.3", "172.16.0.1", "192.168.1.1",
               "169.254.0.1", "fe80::1", "224.0.0.251", "ff02::1", "fd00::1"]:
        assert is_private_blocked(ip_address(ip)) is True, ip

    # documentation ranges are not private here
    for ip in ["203.0.113.7", "198.51.100.5", "8.8.8.8", "2001:4860::8888", "224.0.1.1"]:
        assert is_private_blocked(ip_address(ip)) is False, ip


def test_first_match_reports_first_range_and_skips_other_family():
    nets = parse_networks("2001:db8::/32,10.0.0.0/8,10.1.0.0/16")
    assert first_match(ip_address("10.1.2.3"), nets) == ip_network("10.0.0.0/8")
    assert first_match(ip_address("192.0.2.1"), nets) is None


def test_match_credentials_requires_exact_pair():
    creds = (Credential("alice", "secret"),)
    assert match_credentials(Credential("alice", "secret"), creds) == creds[0]
    assert match_credentials(Credential("alice", "Secret"), creds) is None
    assert match_credentials(Credential("Alice", "secret"), creds) is None
    assert match_credentials(None, creds) is None


def test_decision_constructors():
    assert Decision.allow("static allow", "10.0.0.0/8") == Decision(True, "static allow", "10.0.0.0/8")
    assert Decision.deny("banned").allowed is False
