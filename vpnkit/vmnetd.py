"""Client side of the privileged helper protocol used to bind low TCP and UDP ports."""

from __future__ import annotations

import array
import errno
import ipaddress
import socket
import struct
from dataclasses import dataclass
from typing import BinaryIO

BIND_IPV4_COMMAND = 6

# Current helper protocol version.
CURRENT_VERSION = 22

VMNETD_SOCKET_PATH = "/var/run/com.docker.vmnetd.sock"

OLD_HELLO = "VMNET"
HELLO = "VMN3T"

_OUTGOING_COMMIT = "0d4854a28a379fbe8341b753ae2eb05fc3446f38"
_VERSION_FIELD_LEN = 4
_MAX_VARINT_LEN64 = 10
_RESULT_BUFFER_LEN = 100


class VmnetdError(OSError):
    """The helper refused or failed a request."""


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            raise EOFError(f"connection closed with {remaining} of {size} bytes unread")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _write_all(stream: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = stream.write(view)
        if written is None:
            written = len(view)
        view = view[written:]


def _put_uvarint(value: int, size: int) -> bytes:
    """Encode value as an unsigned varint in a zero-padded field of size bytes."""
    if value < 0:
        raise ValueError("a varint must not be negative")
    encoded = bytearray()
    while value >= 0x80:
        encoded.append((value & 0x7F) | 0x80)
        value >>= 7
    encoded.append(value)
    if len(encoded) > size:
        raise ValueError(f"varint needs {len(encoded)} bytes but only {size} are available")
    return bytes(encoded) + bytes(size - len(encoded))


def _uvarint(data: bytes) -> tuple[int, int]:
    """Decode an unsigned varint; the count is 0 if data is too short, negative on overflow."""
    value = 0
    shift = 0
    for index, byte in enumerate(data):
        if index == _MAX_VARINT_LEN64:
            return 0, -(index + 1)
        if byte < 0x80:
            if index == _MAX_VARINT_LEN64 - 1 and byte > 1:
                return 0, -(index + 1)
            return value | (byte << shift), index + 1
        value |= (byte & 0x7F) << shift
        shift += 7
    return 0, 0


@dataclass(frozen=True)
class HandshakeMessage:
    """The version exchange that opens a helper connection."""

    hello: str
    version: int
    commit: str

    @classmethod
    def outgoing(cls) -> HandshakeMessage:
        """Return the message this client sends."""
        return cls(hello=HELLO, version=CURRENT_VERSION, commit=_OUTGOING_COMMIT)


def write_init_message(stream: BinaryIO, msg: HandshakeMessage) -> None:
    """Write a handshake message."""
    _write_all(stream, msg.hello.encode("latin-1"))
    _write_all(stream, _put_uvarint(msg.version, _VERSION_FIELD_LEN))
    _write_all(stream, msg.commit.encode("latin-1"))


def read_init_message(stream: BinaryIO) -> HandshakeMessage:
    """Read a handshake message; old peers send only their hello."""
    hello = _read_exact(stream, 5).decode("latin-1")
    if hello == OLD_HELLO:
        return HandshakeMessage(hello=hello, version=0, commit="")
    version, count = _uvarint(_read_exact(stream, _VERSION_FIELD_LEN))
    if count <= 0:
        raise ValueError("Could not parse version")
    commit = _read_exact(stream, 40).decode("latin-1")
    return HandshakeMessage(hello=hello, version=version & 0xFFFFFFFF, commit=commit)


def write_command(stream: BinaryIO, command: int) -> None:
    """Write a one-byte command code."""
    _write_all(stream, struct.pack("<B", command & 0xFF))


def read_command(stream: BinaryIO) -> int:
    """Read a one-byte command code."""
    return _read_exact(stream, 1)[0]


@dataclass(frozen=True)
class BindIpv4:
    """A request to bind a (probably privileged) TCP or UDP port."""

    ip: ipaddress.IPv4Address
    port: int
    tcp: bool

    def __post_init__(self) -> None:
        if not isinstance(self.ip, ipaddress.IPv4Address):
            object.__setattr__(self, "ip", ipaddress.IPv4Address(self.ip))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port must be between 0 and 65535, not {self.port}")


def write_bind_ipv4(stream: BinaryIO, bind: BindIpv4) -> None:
    """Write a bind request: the address byte-reversed, the port, then 0 for TCP or 1 for UDP."""
    _write_all(stream, bind.ip.packed[::-1])
    _write_all(stream, struct.pack("<H", bind.port))
    _write_all(stream, struct.pack("<B", 0 if bind.tcp else 1))


def read_bind_ipv4(stream: BinaryIO) -> BindIpv4:
    """Read a bind request."""
    ip = ipaddress.IPv4Address(_read_exact(stream, 4)[::-1])
    (port,) = struct.unpack("<H", _read_exact(stream, 2))
    (kind,) = _read_exact(stream, 1)
    if kind == 0:
        tcp = True
    elif kind == 1:
        tcp = False
    else:
        raise ValueError("unknown stream/tcp value")
    return BindIpv4(ip=ip, port=port, tcp=tcp)


_RESULT_ERRORS = {
    48: "port is already allocated.",
    49: "bind: cannot assign requested address.",
    1: "command failed",
}


def read_result(sock: socket.socket) -> int:
    """Receive the result of a bind request and return the file descriptor it carries."""
    try:
        data, ancdata, _flags, _addr = sock.recvmsg(_RESULT_BUFFER_LEN, socket.CMSG_SPACE(4))
    except OSError as exc:
        raise VmnetdError(f"failed to receive message: {exc}") from exc
    fds = array.array("i")
    for level, kind, payload in ancdata:
        if level == socket.SOL_SOCKET and kind == socket.SCM_RIGHTS:
            fds.frombytes(payload[: len(payload) - len(payload) % fds.itemsize])

    def discard() -> None:
        for fd in fds:
            socket.close(fd)

    if not data:
        discard()
        raise VmnetdError("failed to read result: EOF")
    code = data[0]
    if code != 0:
        discard()
        raise VmnetdError(_RESULT_ERRORS.get(code, "failed to unmarshal command result"))
    if len(ancdata) != 1:
        discard()
        raise VmnetdError("no file descriptor")
    if len(fds) != 1:
        discard()
        raise VmnetdError("array of fds was empty")
    return fds[0]


def _perform_client(stream: BinaryIO, command: int) -> None:
    try:
        write_init_message(stream, HandshakeMessage.outgoing())
    except OSError as exc:
        raise VmnetdError(f"cannot send handshake message: {exc}") from exc
    read_init_message(stream)
    write_command(stream, command)


def send_command(code: int) -> socket.socket:
    """Connect to the helper, complete the handshake and send a command code."""
    path = VMNETD_SOCKET_PATH
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
    except OSError as exc:
        sock.close()
        raise VmnetdError(f"failed to connect to {path}: is vmnetd running?: {exc}") from exc
    try:
        with sock.makefile("rwb", buffering=0) as stream:
            _perform_client(stream, code)
    except (OSError, EOFError, ValueError) as exc:
        sock.close()
        raise VmnetdError(f"handshake failed: {exc}") from exc
    return sock


def listen_vmnet(ip: ipaddress.IPv4Address | str, port: int, tcp: bool) -> int:
    """Ask the helper to bind ip and port, returning the bound socket's file descriptor."""
    request = BindIpv4(ip=ipaddress.IPv4Address(ip), port=port, tcp=tcp)
    with send_command(BIND_IPV4_COMMAND) as sock:
        with sock.makefile("wb", buffering=0) as stream:
            write_bind_ipv4(stream, request)
        return read_result(sock)


def listen_tcp_vmnet(ip: ipaddress.IPv4Address | str, port: int) -> socket.socket:
    """Return a listening TCP socket bound by the helper."""
    return socket.socket(fileno=listen_vmnet(ip, port, True))


def listen_udp_vmnet(ip: ipaddress.IPv4Address | str, port: int) -> socket.socket:
    """Return a UDP socket bound by the helper."""
    return socket.socket(fileno=listen_vmnet(ip, port, False))


def is_permission_denied(err: BaseException) -> bool:
    """Return True if err reports that permission was denied."""
    if isinstance(err, PermissionError):
        return True
    if isinstance(err, OSError) and err.errno in (errno.EACCES, errno.EPERM):
        return True
    return str(err).lower().endswith("permission denied")