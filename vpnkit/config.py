"""Configuration documents for the built-in DHCP server, HTTP proxy and gateway forwards."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, TextIO

from .port import Protocol

_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _encode(obj: Any, indent: int | None = None) -> str:
    """Encode as JSON with HTML-safe escaping and a trailing newline."""
    separators = (",", ": ") if indent is not None else (",", ":")
    text = json.dumps(obj, ensure_ascii=False, indent=indent, separators=separators)
    for char, escaped in _ESCAPES.items():
        text = text.replace(char, escaped)
    return text + "\n"


@dataclass
class DHCPConfiguration:
    """Configures the built-in DHCP server."""

    search_domains: list[str] = field(default_factory=list)
    domain_name: str = ""

    def _as_dict(self) -> dict[str, Any]:
        return {"searchDomains": list(self.search_domains), "domainName": self.domain_name}

    def write(self, stream: TextIO) -> None:
        """Write the configuration as indented JSON."""
        stream.write(_encode(self._as_dict(), indent=2))


@dataclass
class HTTPConfiguration:
    """Configures the built-in HTTP proxy."""

    http: str = ""
    https: str = ""
    exclude: str = ""
    transparent_http_ports: list[int] = field(default_factory=list)
    transparent_https_ports: list[int] = field(default_factory=list)
    allow_enabled: bool = False
    allow: list[str] = field(default_factory=list)
    allow_error_msg: str = ""

    def _as_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.http:
            result["http"] = self.http
        if self.https:
            result["https"] = self.https
        if self.exclude:
            result["exclude"] = self.exclude
        result["transparent_http_ports"] = list(self.transparent_http_ports)
        result["transparent_https_ports"] = list(self.transparent_https_ports)
        result["allow_enabled"] = self.allow_enabled
        result["allow"] = list(self.allow)
        result["allow_error_msg"] = self.allow_error_msg
        return result

    def write(self, stream: TextIO) -> None:
        """Write the configuration as indented JSON."""
        stream.write(_encode(self._as_dict(), indent=2))


@dataclass
class Forward:
    """A forward from the gateway's external port to an internal address."""

    protocol: Protocol | str
    external_port: int
    internal_ip: str
    internal_port: int

    def _as_dict(self) -> dict[str, Any]:
        return {
            "protocol": str(self.protocol),
            "external_port": self.external_port,
            "internal_ip": self.internal_ip,
            "internal_port": self.internal_port,
        }


class GatewayForwards(list):
    """A list of Forward entries."""

    def write(self, stream: TextIO) -> None:
        """Write the forwards as compact JSON."""
        stream.write(_encode([forward._as_dict() for forward in self]))