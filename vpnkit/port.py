"""Descriptions of TCP, UDP and Unix domain socket forwards."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# AF_VSOCK port the control-plane interface listens on.
DEFAULT_CONTROL_VSOCK = 0x1002

# AF_VSOCK port the data-plane interface listens on.
DEFAULT_DATA_VSOCK = 0xF3A4

_DIGITS = re.compile(r"[0-9]+")


class Protocol(str, Enum):
    """Protocol used by an exposed port."""

    TCP = "tcp"
    UDP = "udp"
    UNIX = "unix"

    def __str__(self) -> str:
        return self.value


def _coerce_proto(proto: Protocol | str) -> Protocol | str:
    if isinstance(proto, Protocol):
        return proto
    try:
        return Protocol(proto)
    except ValueError:
        return proto


def _coerce_ip(value: IPAddress | str | None) -> IPAddress | None:
    if value is None or isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    if value == "":
        return None
    return ipaddress.ip_address(value)


def _parse_ip(text: str) -> IPAddress | None:
    """Parse an IP address, giving None when the text is not one."""
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _ip_text(ip: IPAddress | None) -> str:
    if ip is None:
        return "<nil>"
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _parse_port_number(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid port number {text!r}")
    value = int(text)
    if value > 0xFFFF:
        raise ValueError(f"port number {text!r} out of range")
    return value


def _check_port_number(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} must be an integer between 0 and 65535, not {value!r}")
    return value


def _b64decode(text: str) -> str:
    try:
        raw = base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"Failed to base64 decode {text}") from exc
    return raw.decode("utf-8", errors="surrogateescape")


def _b64encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8", errors="surrogateescape")).decode("ascii")


@dataclass
class Port:
    """A UDP or TCP port forward, or a Unix domain socket forward."""

    proto: Protocol | str = ""
    out_ip: IPAddress | None = None
    out_port: int = 0
    out_path: str = ""
    in_ip: IPAddress | None = None
    in_port: int = 0
    in_path: str = ""
    annotation: str = ""

    def __post_init__(self) -> None:
        self.proto = _coerce_proto(self.proto)
        self.out_ip = _coerce_ip(self.out_ip)
        self.in_ip = _coerce_ip(self.in_ip)
        _check_port_number(self.out_port, "out_port")
        _check_port_number(self.in_port, "in_port")

    def __str__(self) -> str:
        annotation = f"{self.annotation} " if self.annotation else ""
        if self.proto == Protocol.UNIX:
            return f"{annotation}{self.proto} forward from {self.out_path} to {self.in_path}"
        return (
            f"{annotation}{self.proto} forward from "
            f"{_ip_text(self.out_ip)}:{self.out_port} to {_ip_text(self.in_ip)}:{self.in_port}"
        )

    def spec(self) -> str:
        """Return the colon-separated form understood by the server."""
        if self.proto in (Protocol.TCP, Protocol.UDP):
            return (
                f"{self.proto}:{_ip_text(self.out_ip)}:{self.out_port}:"
                f"{self.proto}:{_ip_text(self.in_ip)}:{self.in_port}"
            )
        if self.proto == Protocol.UNIX:
            return f"unix:{_b64encode(self.out_path)}:unix:{_b64encode(self.in_path)}"
        return "unknown protocol"

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form, leaving out empty fields."""
        result: dict[str, Any] = {}
        if self.proto:
            result["proto"] = str(self.proto)
        if self.out_ip is not None:
            result["out_ip"] = str(self.out_ip)
        if self.out_port:
            result["out_port"] = self.out_port
        if self.out_path:
            result["out_path"] = self.out_path
        if self.in_ip is not None:
            result["in_ip"] = str(self.in_ip)
        if self.in_port:
            result["in_port"] = self.in_port
        if self.in_path:
            result["in_path"] = self.in_path
        if self.annotation:
            result["annotation"] = self.annotation
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Port:
        """Build a Port from its JSON object form."""
        if not isinstance(data, dict):
            raise ValueError(f"a port must be a JSON object, not {type(data).__name__}")
        return cls(
            proto=data.get("proto") or "",
            out_ip=data.get("out_ip") or None,
            out_port=data.get("out_port", 0),
            out_path=data.get("out_path") or "",
            in_ip=data.get("in_ip") or None,
            in_port=data.get("in_port", 0),
            in_path=data.get("in_path") or "",
            annotation=data.get("annotation") or "",
        )


def parse_port(spec: str) -> Port:
    """Parse a spec of the form produced by Port.spec()."""
    bits = spec.split(":")
    if len(bits) == 6:
        out_proto, out_ip_text, out_port_text, in_proto, in_ip_text, in_port_text = bits
        out_ip = _parse_ip(out_ip_text)
        out_port = _parse_port_number(out_port_text)
        in_ip = _parse_ip(in_ip_text)
        in_port = _parse_port_number(in_port_text)
        if out_proto != in_proto:
            raise ValueError(
                f"Failed to parse port: external proto is {out_proto} "
                f"but internal proto is {in_proto}"
            )
        return Port(proto=out_proto, out_ip=out_ip, out_port=out_port, in_ip=in_ip, in_port=in_port)
    if len(bits) == 4:
        out_proto, out_path_enc, in_proto, in_path_enc = bits
        out_path = _b64decode(out_path_enc)
        in_path = _b64decode(in_path_enc)
        if out_proto != "unix" or in_proto != "unix":
            raise ValueError(
                f"Failed to parse path: external proto is {out_proto} "
                f"and internal proto is {in_proto}"
            )
        return Port(proto=Protocol.UNIX, out_path=out_path, in_path=in_path)
    raise ValueError(f"Failed to parse port spec: {spec}")