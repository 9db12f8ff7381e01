"""Transports that carry control and data connections: Unix domain sockets and AF_VSOCK."""

from __future__ import annotations

import os
import re
import socket
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass

# Longest socket path the platform accepts, leaving room for the trailing NUL.
MAX_UNIX_SOCKET_PATH_LEN = (104 if sys.platform == "darwin" else 108) - 1

CID_ANY = 0xFFFFFFFF
CID_HOST = 2

_DIGITS = re.compile(r"[0-9]+")


def _parse_uint32(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid unsigned integer {text!r}")
    value = int(text)
    if value > 0xFFFFFFFF:
        raise ValueError(f"unsigned integer {text!r} out of range")
    return value


class Transport(ABC):
    """Carries the HTTP port control messages."""

    security_descriptor: str = ""

    @abstractmethod
    def dial(self, path: str) -> socket.socket:
        """Connect to the endpoint named by path."""

    @abstractmethod
    def listen(self, path: str) -> socket.socket:
        """Return a listening socket for the endpoint named by path."""

    def set_security_descriptor(self, sddl: str) -> None:
        """Record a security descriptor (SDDL) for named pipes."""
        self.security_descriptor = sddl


def shorten_unix_socket_path(path: str) -> str:
    """Return a path that fits inside a socket address, relative if need be."""
    if len(os.fsencode(path)) <= MAX_UNIX_SOCKET_PATH_LEN:
        return path
    relative = _relative(path)
    if len(os.fsencode(relative)) > MAX_UNIX_SOCKET_PATH_LEN:
        raise ValueError(
            f"absolute and relative socket path {relative} longer than "
            f"{MAX_UNIX_SOCKET_PATH_LEN} characters"
        )
    return relative


def _relative(path: str) -> str:
    # The parent directory must exist; the socket itself need not.
    parent = os.path.realpath(os.path.dirname(path) or ".", strict=True)
    cwd = os.path.realpath(os.getcwd(), strict=True)
    return os.path.join(os.path.relpath(parent, cwd), os.path.basename(path))


class UnixTransport(Transport):
    """Unix domain socket transport."""

    def dial(self, path: str) -> socket.socket:
        shorter = shorten_unix_socket_path(path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(shorter)
        except BaseException:
            sock.close()
            raise
        return sock

    def listen(self, path: str) -> socket.socket:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        shorter = shorten_unix_socket_path(path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(shorter)
            sock.listen()
        except BaseException:
            sock.close()
            raise
        return sock

    def set_security_descriptor(self, sddl: str) -> None:
        """Record the descriptor; Unix domain sockets do not apply it."""
        self.security_descriptor = sddl

    def __str__(self) -> str:
        return "Unix domain socket"


@dataclass(frozen=True)
class VsockAddress:
    """An AF_VSOCK context id and port."""

    cid: int = CID_ANY
    port: int = 0


def parse_vsock_address(path: str) -> VsockAddress:
    """Parse "<port>" or "<cid>/<port>"."""
    bits = path.split("/", 1)
    port_text = bits[-1]
    try:
        port = _parse_uint32(port_text)
    except ValueError:
        raise ValueError(f"cannot parse {port_text} as service GUID or AF_VSOCK port") from None
    if len(bits) == 1:
        return VsockAddress(cid=CID_ANY, port=port)
    try:
        cid = _parse_uint32(bits[0])
    except ValueError:
        raise ValueError(
            "unable to parse the <vm>/ as either a GUID or AF_VSOCK port number"
        ) from None
    return VsockAddress(cid=cid, port=port)


def _vsock_socket() -> socket.socket:
    family = getattr(socket, "AF_VSOCK", None)
    if family is None:
        raise OSError("AF_VSOCK is not supported on this platform")
    return socket.socket(family, socket.SOCK_STREAM)


class VsockTransport(Transport):
    """Linux AF_VSOCK transport."""

    def dial(self, path: str) -> socket.socket:
        addr = parse_vsock_address(path)
        cid = CID_HOST if addr.cid == CID_ANY else addr.cid
        sock = _vsock_socket()
        try:
            sock.connect((cid, addr.port))
        except BaseException:
            sock.close()
            raise
        return sock

    def listen(self, path: str) -> socket.socket:
        addr = parse_vsock_address(path)
        sock = _vsock_socket()
        try:
            sock.bind((CID_ANY, addr.port))
            sock.listen()
        except BaseException:
            sock.close()
            raise
        return sock

    def set_security_descriptor(self, sddl: str) -> None:
        """Record the descriptor; AF_VSOCK sockets do not apply it."""
        self.security_descriptor = sddl

    def __str__(self) -> str:
        return "Linux AF_VSOCK"


def choose(path: str) -> Transport:
    """Pick AF_VSOCK when path names a vsock address, otherwise a Unix domain socket."""
    try:
        parse_vsock_address(path)
    except ValueError:
        return UnixTransport()
    return VsockTransport()