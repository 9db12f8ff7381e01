"""Minimal Ethernet, IPv4, UDP and DHCP framing, plus a pcap stream writer."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO

ETHERTYPE_IPV4 = 0x0800

_PCAP_MAGIC = 0xA1B2C3D4
_PCAP_MAJOR = 2
_PCAP_MINOR = 4
_PCAP_SNAPLEN = 1500
_PCAP_LINKTYPE_ETHERNET = 1


@dataclass
class EthernetFrame:
    """An Ethernet frame."""

    dst: bytes
    src: bytes
    type: int
    data: bytes = b""

    def to_bytes(self) -> bytes:
        """Return the marshalled frame."""
        return bytes(self.dst) + bytes(self.src) + struct.pack(">H", self.type) + bytes(self.data)


def parse_ethernet_frame(frame: bytes) -> EthernetFrame:
    """Parse an Ethernet frame."""
    if len(frame) < 6 + 6 + 2:
        raise ValueError("Ethernet frame is too small")
    (ethertype,) = struct.unpack_from(">H", frame, 12)
    return EthernetFrame(dst=bytes(frame[0:6]), src=bytes(frame[6:12]), type=ethertype, data=bytes(frame[14:]))


@dataclass
class Ipv4:
    """An IPv4 packet; the checksum is left to offload."""

    dst: bytes
    src: bytes
    data: bytes = b""
    checksum: int = 0

    def header_bytes(self) -> bytes:
        """Return the marshalled header of a broadcast UDP packet carrying data."""
        length = len(self.data) + 20
        return bytes(
            [
                0x45,  # version + IHL
                0x00,  # DSCP + ECN
                (length >> 8) & 0xFF,
                length & 0xFF,
                0x7F, 0x61,  # identification
                0x00, 0x00,  # flags + fragment offset
                0x40,  # TTL
                0x11,  # protocol: UDP
                (self.checksum >> 8) & 0xFF,
                self.checksum & 0xFF,
                0x00, 0x00, 0x00, 0x00,  # source
                0xFF, 0xFF, 0xFF, 0xFF,  # destination
            ]
        )

    def to_bytes(self) -> bytes:
        """Return the marshalled packet."""
        return self.header_bytes() + bytes(self.data)


def parse_ipv4(packet: bytes) -> Ipv4:
    """Parse an IPv4 packet."""
    if len(packet) < 20:
        raise ValueError("IPv4 packet too small")
    ihl = (packet[0] & 0xF) * 4
    if len(packet) < ihl:
        raise ValueError("IPv4 packet too small")
    return Ipv4(dst=bytes(packet[12:16]), src=bytes(packet[16:20]), data=bytes(packet[ihl:]), checksum=0)


@dataclass
class Udpv4:
    """A UDP datagram."""

    src: int
    dst: int
    data: bytes = b""
    checksum: int = 0

    def to_bytes(self) -> bytes:
        """Return the marshalled datagram."""
        length = (8 + len(self.data)) & 0xFFFF
        return struct.pack(">HHHH", self.src, self.dst, length, self.checksum) + bytes(self.data)


def parse_udpv4(packet: bytes) -> Udpv4:
    """Parse a UDP datagram."""
    if len(packet) < 8:
        raise ValueError("UDPv4 is too short")
    src, dst, _length, checksum = struct.unpack_from(">HHHH", packet, 0)
    return Udpv4(src=src, dst=dst, data=bytes(packet[8:]), checksum=checksum)


@dataclass
class DhcpRequest:
    """A DHCP discover message for a client MAC address."""

    mac: bytes

    def __post_init__(self) -> None:
        self.mac = bytes(self.mac)
        if len(self.mac) != 6:
            raise ValueError("MAC address must be 6 bytes")

    def to_bytes(self) -> bytes:
        """Return the marshalled request."""
        head = bytes(
            [
                0x01,  # OP
                0x01,  # HTYPE
                0x06,  # HLEN
                0x00,  # HOPS
                0x01, 0x00, 0x00, 0x00,  # XID
                0x00, 0x00,  # SECS
                0x80, 0x00,  # FLAGS
                0x00, 0x00, 0x00, 0x00,  # CIADDR
                0x00, 0x00, 0x00, 0x00,  # YIADDR
                0x00, 0x00, 0x00, 0x00,  # SIADDR
                0x00, 0x00, 0x00, 0x00,  # GIADDR
            ]
        )
        tail = bytes(
            [
                0x63, 0x82, 0x53, 0x63,  # magic cookie
                0x35, 0x01, 0x01,  # DHCP discover
                0xFF,  # end mark
            ]
        )
        return head + self.mac + bytes(202) + tail


class PcapWriter:
    """Writes a pcap-formatted stream of Ethernet packets."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.snaplen = _PCAP_SNAPLEN
        stream.write(
            struct.pack(
                "<IHHIIII",
                _PCAP_MAGIC,
                _PCAP_MAJOR,
                _PCAP_MINOR,
                0,  # GMT to local correction
                0,  # accuracy of timestamps
                self.snaplen,
                _PCAP_LINKTYPE_ETHERNET,
            )
        )

    def write(self, packet: bytes) -> None:
        """Append a packet with its record header, truncated to the snap length."""
        stamp = datetime.now()
        captured = bytes(packet[: self.snaplen])
        self._stream.write(
            struct.pack("<IIII", stamp.second, stamp.microsecond, len(captured), len(packet))
        )
        self._stream.write(captured)


def is_broadcast_mac(mac: bytes) -> bool:
    """Return True if every byte of mac is 0xff."""
    return all(b == 0xFF for b in mac)


def mac_equal(a: bytes, b: bytes) -> bool:
    """Return True if b starts with every byte of a."""
    return bytes(b[: len(a)]) == bytes(a)