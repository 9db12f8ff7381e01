"""Client for the vmnet protocol, which carries Ethernet frames to and from the server."""

from __future__ import annotations

import ipaddress
import socket
import struct
import threading
from dataclasses import dataclass, field
from typing import Any, BinaryIO
from uuid import UUID

from .frames import (
    ETHERTYPE_IPV4,
    DhcpRequest,
    EthernetFrame,
    Ipv4,
    Udpv4,
    is_broadcast_mac,
    mac_equal,
    parse_ethernet_frame,
    parse_ipv4,
    parse_udpv4,
)

_BROADCAST_MAC = b"\xff" * 6
_BROADCAST_IP = b"\xff\xff\xff\xff"
_UNKNOWN_IP = b"\x00\x00\x00\x00"
_VIF_PADDING = 1 + 256 - 6 - 2 - 2


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
    stream.flush()


def _byte_list(data: bytes) -> str:
    return "[" + " ".join(str(b) for b in data) + "]"


@dataclass(frozen=True)
class InitMessage:
    """The version exchange sent by each side when a connection opens."""

    magic: bytes
    version: int
    commit: bytes

    def __post_init__(self) -> None:
        if len(self.magic) != 5:
            raise ValueError("magic must be 5 bytes")
        if len(self.commit) != 40:
            raise ValueError("commit must be 40 bytes")

    def __str__(self) -> str:
        return f"magic={_byte_list(self.magic)} version={self.version} commit={_byte_list(self.commit)}"

    def to_bytes(self) -> bytes:
        """Return the marshalled message."""
        return bytes(self.magic) + struct.pack("<I", self.version) + bytes(self.commit)

    @classmethod
    def read(cls, stream: BinaryIO) -> InitMessage:
        """Read a message from stream."""
        magic = _read_exact(stream, 5)
        (version,) = struct.unpack("<I", _read_exact(stream, 4))
        commit = _read_exact(stream, 40)
        return cls(magic, version, commit)


def default_init_message() -> InitMessage:
    """Return the init message this client sends."""
    return InitMessage(b"VMN3T", 22, b"0123456789012345678901234567890123456789")


@dataclass(frozen=True)
class EthernetRequest:
    """Asks for a network connection with a given uuid and optional IPv4 address."""

    uuid: UUID
    ip: ipaddress.IPv4Address | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.uuid, UUID):
            object.__setattr__(self, "uuid", UUID(str(self.uuid)))
        if self.ip is not None and not isinstance(self.ip, ipaddress.IPv4Address):
            object.__setattr__(self, "ip", ipaddress.IPv4Address(self.ip))

    def to_bytes(self) -> bytes:
        """Return the marshalled request."""
        kind = 1 if self.ip is None else 8
        ip = 0 if self.ip is None else int(self.ip)
        # The protocol is little endian throughout, addresses included.
        return struct.pack("<B", kind) + str(self.uuid).encode("ascii") + struct.pack("<I", ip)


@dataclass
class Vif:
    """A connected Ethernet device."""

    mtu: int
    max_packet_size: int
    client_mac: bytes
    ip: ipaddress.IPv4Address | None
    stream: BinaryIO = field(repr=False)
    _write_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def write(self, packet: bytes) -> None:
        """Send one packet."""
        with self._write_lock:
            _write_all(self.stream, struct.pack("<H", len(packet) & 0xFFFF) + bytes(packet))

    def read(self) -> bytes:
        """Receive the next packet."""
        (length,) = struct.unpack("<H", _read_exact(self.stream, 2))
        return _read_exact(self.stream, length)

    def _discover_frame(self) -> bytes:
        udp = Udpv4(src=68, dst=67, data=DhcpRequest(self.client_mac).to_bytes())
        ip = Ipv4(dst=_BROADCAST_IP, src=_UNKNOWN_IP, data=udp.to_bytes())
        return EthernetFrame(_BROADCAST_MAC, self.client_mac, ETHERTYPE_IPV4, ip.to_bytes()).to_bytes()

    def _offered_ip(self, response: bytes) -> ipaddress.IPv4Address | None:
        try:
            frame = parse_ethernet_frame(response)
            if not is_broadcast_mac(frame.dst) and not mac_equal(frame.dst, self.client_mac):
                return None
            udp = parse_udpv4(parse_ipv4(frame.data).data)
        except ValueError:
            return None
        if udp.src != 67 or udp.dst != 68:
            return None
        data = udp.data
        if len(data) < 243 or data[0] != 2:
            return None
        if data[4:8] != b"\x01\x00\x00\x00":
            return None
        return ipaddress.IPv4Address(data[16:20])

    def dhcp(self) -> ipaddress.IPv4Address:
        """Broadcast DHCP discovers every second until an offer arrives; return the offered IP."""
        frame = self._discover_frame()
        finished = threading.Event()

        def broadcast() -> None:
            while not finished.is_set():
                try:
                    self.write(frame)
                except OSError:
                    return
                finished.wait(1.0)

        sender = threading.Thread(target=broadcast, name="vmnet-dhcp", daemon=True)
        sender.start()
        try:
            while True:
                ip = self._offered_ip(self.read())
                if ip is not None:
                    return ip
        finally:
            finished.set()


class Vmnet:
    """A vmnet protocol connection."""

    def __init__(self, stream: BinaryIO, sock: socket.socket | None = None) -> None:
        self._stream = stream
        self._sock = sock
        self.remote_version: InitMessage | None = None

    @classmethod
    def connect(cls, path: str) -> Vmnet:
        """Connect to the Unix domain socket at path and exchange versions."""
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(path)
            vmnet = cls(sock.makefile("rwb", buffering=0), sock)
            vmnet._negotiate()
        except BaseException:
            sock.close()
            raise
        return vmnet

    def _negotiate(self) -> None:
        _write_all(self._stream, default_init_message().to_bytes())
        self.remote_version = InitMessage.read(self._stream)

    def close(self) -> None:
        """Close the connection."""
        self._stream.close()
        if self._sock is not None:
            self._sock.close()

    def __enter__(self) -> Vmnet:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _read_vif(self) -> Vif:
        mtu, max_packet_size = struct.unpack("<HH", _read_exact(self._stream, 4))
        mac = _read_exact(self._stream, 6)
        _read_exact(self._stream, _VIF_PADDING)
        return Vif(mtu, max_packet_size, mac, None, self._stream)

    def _request(self, request: EthernetRequest) -> Vif:
        _write_all(self._stream, request.to_bytes())
        (response_type,) = _read_exact(self._stream, 1)
        if response_type == 1:
            return self._read_vif()
        (length,) = _read_exact(self._stream, 1)
        message = _read_exact(self._stream, length)
        raise ConnectionError(message.decode("utf-8", errors="replace"))

    def connect_vif(self, uuid: UUID) -> Vif:
        """Connect an interface with the given uuid and obtain its IP by DHCP."""
        vif = self._request(EthernetRequest(uuid))
        vif.ip = vif.dhcp()
        return vif

    def connect_vif_ip(self, uuid: UUID, ip: ipaddress.IPv4Address | str) -> Vif:
        """Connect an interface with the given uuid and IP; fails if the IP is in use."""
        request = EthernetRequest(uuid, ipaddress.IPv4Address(ip))
        vif = self._request(request)
        vif.ip = request.ip
        return vif