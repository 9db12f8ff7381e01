import ipaddress

import pytest

from vpnkit.port import (
    Port,
    Protocol,
    parse_port,
)

ROUND_TRIP_PORTS = [
    Port(proto=Protocol.TCP, in_ip="192.168.0.1", in_port=8080, out_ip="192.168.0.2", out_port=8081),
    Port(proto=Protocol.TCP, in_ip="192.168.0.1", in_port=8080, out_ip="192.168.0.2", out_port=65000),
    Port(proto=Protocol.UNIX, in_path="/tmp/foo", out_path="/tmp/bar"),
    Port(proto=Protocol.UNIX, in_path=r"\\.\pipe\foo", out_path=r"\\.\pipe\bar"),
]


@pytest.mark.parametrize("port", ROUND_TRIP_PORTS)
def test_parse_round_trip(port):
    parsed = parse_port(port.spec())
    assert parsed.spec() == port.spec()


def test_string():
    p = Port(proto=Protocol.TCP, in_ip="192.168.0.1", in_port=8080, out_ip="192.168.0.2", out_port=8081)
    assert str(p) == "tcp forward from 192.168.0.2:8081 to 192.168.0.1:8080"


def test_annotation():
    p = Port(
        proto=Protocol.TCP,
        in_ip="192.168.0.1",
        in_port=8080,
        out_ip="192.168.0.2",
        out_port=8081,
        annotation="kubernetes",
    )
    assert str(p) == "kubernetes tcp forward from 192.168.0.2:8081 to 192.168.0.1:8080"


def test_unix_string():
    p = Port(proto="unix", out_path="/tmp/bar", in_path="/tmp/foo")
    assert str(p) == "unix forward from /tmp/bar to /tmp/foo"


def test_string_without_ips():
    p = Port(proto=Protocol.UDP, out_port=1, in_port=2)
    assert str(p) == "udp forward from <nil>:1 to <nil>:2"


def test_tcp_spec_value():
    p = Port(proto=Protocol.TCP, in_ip="192.168.0.1", in_port=8080, out_ip="192.168.0.2", out_port=8081)
    assert p.spec() == "tcp:192.168.0.2:8081:tcp:192.168.0.1:8080"


def test_unix_spec_value():
    p = Port(proto=Protocol.UNIX, in_path="/tmp/foo", out_path="/tmp/bar")
    assert p.spec() == "unix:L3RtcC9iYXI=:unix:L3RtcC9mb28="


def test_unknown_protocol_spec():
    p = Port(proto="sctp")
    assert p.proto == "sctp"
    assert p.spec() == "unknown protocol"


def test_parse_fields():
    p = parse_port("udp:10.0.0.1:53:udp:10.0.0.2:5353")
    assert p.proto is Protocol.UDP
    assert p.out_ip == ipaddress.ip_address("10.0.0.1")
    assert p.out_port == 53
    assert p.in_ip == ipaddress.ip_address("10.0.0.2")
    assert p.in_port == 5353


def test_parse_invalid_ip_becomes_none():
    p = parse_port("tcp:notanip:1:tcp:10.0.0.2:2")
    assert p.out_ip is None


@pytest.mark.parametrize(
    "spec",
    [
        "tcp:1.2.3.4:1:udp:1.2.3.4:2",
        "tcp:1.2.3.4:70000:tcp:1.2.3.4:2",
        "tcp:1.2.3.4:-1:tcp:1.2.3.4:2",
        "tcp:1.2.3.4:x:tcp:1.2.3.4:2",
        "unix:!!!:unix:L3RtcC9mb28=",
        "tcp:L3RtcC9iYXI=:unix:L3RtcC9mb28=",
        "nonsense",
        "a:b:c",
    ],
)
def test_parse_errors(spec):
    with pytest.raises(ValueError):
        parse_port(spec)


def test_to_dict_omits_empty():
    p = Port(proto=Protocol.TCP, in_ip="192.168.0.1", in_port=8080, out_ip="192.168.0.2", out_port=8081)
    assert p.to_dict() == {
        "proto": "tcp",
        "out_ip": "192.168.0.2",
        "out_port": 8081,
        "in_ip": "192.168.0.1",
        "in_port": 8080,
    }


def test_unix_to_dict():
    p = Port(proto=Protocol.UNIX, in_path="/tmp/foo", out_path="/tmp/bar")
    assert p.to_dict() == {"proto": "unix", "out_path": "/tmp/bar", "in_path": "/tmp/foo"}


@pytest.mark.parametrize("port", ROUND_TRIP_PORTS)
def test_dict_round_trip(port):
    assert Port.from_dict(port.to_dict()) == port


def test_from_dict_rejects_bad_port_number():
    with pytest.raises(ValueError):
        Port.from_dict({"proto": "tcp", "out_port": 70000})


def test_from_dict_rejects_bad_ip():
    with pytest.raises(ValueError):
        Port.from_dict({"proto": "tcp", "out_ip": "not-an-ip"})


def test_protocol_text():
    assert f"{Protocol.UNIX}" == "unix"
    assert Port(proto="tcp").proto is Protocol.TCP