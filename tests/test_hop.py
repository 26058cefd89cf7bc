from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tunnelchain.errors import InvalidHopError
from tunnelchain.hop import Hop, parse_hop, parse_hops, split_host_port


def test_parse_hop_user_host_port():
    hop = parse_hop("alice@bastion.example.com:2222")
    assert hop.user == "alice"
    assert hop.host == "bastion.example.com"
    assert hop.port == 2222
    assert hop.host_port == "bastion.example.com:2222"
    assert str(hop) == "alice@bastion.example.com:2222"


def test_parse_hop_defaults_port_to_22():
    hop = parse_hop("alice@bastion")
    assert hop.port == 22
    assert hop.host_port == "bastion:22"


@patch("tunnelchain.hop.getpass.getuser", return_value="carol")
def test_parse_hop_defaults_user_to_current_user(mock_getuser):
    hop = parse_hop("bastion:2200")
    assert hop.user == "carol"
    assert hop.port == 2200
    mock_getuser.assert_called_once()


@patch("tunnelchain.hop.getpass.getuser", side_effect=OSError("no user"))
def test_parse_hop_fails_when_user_cannot_be_detected(mock_getuser):
    with pytest.raises(InvalidHopError, match="missing user"):
        parse_hop("bastion:22")


def test_parse_hop_ipv6_literal():
    hop = parse_hop("alice@[::1]:2222")
    assert hop.host == "::1"
    assert hop.port == 2222
    assert hop.host_port == "[::1]:2222"


@pytest.mark.parametrize(
    "spec",
    ["@bastion:22", "alice@bastion:", "alice@bastion:ssh", "alice@bastion:70000", "a@b@c:22", "alice@::1:22", ""],
)
def test_parse_hop_rejects_bad_specs(spec):
    with pytest.raises(InvalidHopError):
        parse_hop(spec)


def test_invalid_hop_error_is_a_value_error():
    with pytest.raises(ValueError):
        parse_hop("alice@bastion:0")


def test_parse_hops_keeps_order_and_skips_empty():
    hops = parse_hops(["alice@one:22", "", "bob@two:2222"])
    assert [str(h) for h in hops] == ["alice@one:22", "bob@two:2222"]


def test_parse_hops_propagates_first_error():
    with pytest.raises(InvalidHopError):
        parse_hops(["alice@one:22", "bob@two:nope"])


def test_hop_is_immutable():
    hop = parse_hop("alice@one:22")
    with pytest.raises(ValidationError):
        hop.port = 23


def test_hop_model_fields_and_aliases():
    hop = Hop(user="alice", host="one", known_hosts="/tmp/kh", timeout=3)
    assert hop.port == 22
    assert hop.known_hosts_path == "/tmp/kh"
    assert hop.timeout == 3


@patch("tunnelchain.hop.getpass.getuser", return_value="carol")
def test_hop_model_defaults_user(mock_getuser):
    assert Hop(host="one").user == "carol"


def test_hop_model_rejects_bad_port():
    with pytest.raises(ValidationError):
        Hop(user="alice", host="one", port=0)


def test_split_host_port():
    assert split_host_port("127.0.0.1:8080") == ("127.0.0.1", 8080)
    assert split_host_port("[::1]:443") == ("::1", 443)
    assert split_host_port(":80") == ("", 80)


@pytest.mark.parametrize("address", ["localhost", "::1:80", "[::1]", "host:http"])
def test_split_host_port_rejects(address):
    with pytest.raises(InvalidHopError):
        split_host_port(address)


def test_port_zero_only_allowed_for_addresses():
    """Hops need a real port, bind and dial addresses may ask for an ephemeral one"""
    with pytest.raises(InvalidHopError, match="out of range"):
        parse_hop("a@b:0")
    assert split_host_port("127.0.0.1:0") == ("127.0.0.1", 0)
    assert split_host_port("[::1]:0") == ("::1", 0)
    with pytest.raises(InvalidHopError):
        split_host_port("127.0.0.1:65536")
