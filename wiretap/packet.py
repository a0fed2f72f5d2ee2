"""Packet model and decoding of link, network and transport headers."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class LinkType(IntEnum):
    NULL = 0
    ETHERNET = 1
    RAW = 101
    LINUX_SLL = 113
    IPV4 = 228
    IPV6 = 229


class Protocol(IntEnum):
    """IP protocol numbers, plus a value outside that range for ARP."""

    ICMP = 1
    TCP = 6
    UDP = 17
    ICMPV6 = 58
    ARP = 0x100


def protocol_name(value: int) -> str:
    try:
        return Protocol(value).name
    except ValueError:
        return f"Proto({value})"


_FLAG_ORDER = ("FIN", "SYN", "RST", "PSH", "ACK", "URG", "ECE", "CWR")


@dataclass
class TCPFlags:
    syn: bool = False
    ack: bool = False
    fin: bool = False
    rst: bool = False
    psh: bool = False
    urg: bool = False
    ece: bool = False
    cwr: bool = False
    ns: bool = False

    def to_uint8(self) -> int:
        """Flags as the low byte of the TCP flags field (NS excluded)."""
        return sum(
            1 << bit
            for bit, name in enumerate(_FLAG_ORDER)
            if getattr(self, name.lower())
        )

    def __str__(self) -> str:
        names = [name for name in _FLAG_ORDER if getattr(self, name.lower())]
        if self.ns:
            names.append("NS")
        return ",".join(names)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Packet:
    timestamp: datetime = _EPOCH
    length: int = 0
    captured_len: int = 0
    original_len: int = 0
    data: bytes = b""
    index: int = 0
    file_offset: int = -1
    src_ip: IPAddress | None = None
    dst_ip: IPAddress | None = None
    src_port: int = 0
    dst_port: int = 0
    protocol: int = 0
    ttl: int = 0
    tcp_flags: TCPFlags = field(default_factory=TCPFlags)
    seq_num: int = 0
    ack_num: int = 0
    payload: bytes = b""
    app_info: str = ""
    application_protocol: str = ""

    @property
    def protocol_name(self) -> str:
        return protocol_name(self.protocol)

    def flow_key(self) -> tuple:
        """Direction-independent key of the packet's conversation."""

        def endpoint(ip: IPAddress | None, port: int) -> tuple:
            if ip is None:
                return (0, b"", port)
            return (ip.version, ip.packed, port)

        a = endpoint(self.src_ip, self.src_port)
        b = endpoint(self.dst_ip, self.dst_port)
        low, high = sorted((a, b))
        return (self.protocol, low, high)


def _ip(raw: bytes) -> IPAddress | None:
    if len(raw) == 4:
        return ipaddress.IPv4Address(raw)
    if len(raw) == 16:
        return ipaddress.IPv6Address(raw)
    return None


def _decode_arp(pkt: Packet, data: bytes) -> None:
    pkt.protocol = Protocol.ARP
    if len(data) < 8:
        return
    hw_size, prot_size = data[4], data[5]
    op = struct.unpack("!H", data[6:8])[0]
    pos = 8 + hw_size
    src = data[pos:pos + prot_size]
    pos += prot_size + hw_size
    dst = data[pos:pos + prot_size]
    if len(src) == prot_size:
        pkt.src_ip = _ip(src)
    if len(dst) == prot_size:
        pkt.dst_ip = _ip(dst)
    if op == 1:
        pkt.app_info = "ARP Request"
    elif op == 2:
        pkt.app_info = "ARP Reply"


def _decode_transport(pkt: Packet, proto: int, data: bytes, ipv6: bool) -> None:
    if proto == Protocol.TCP and len(data) >= 20:
        sport, dport, seq, ack, off_ns, flags = struct.unpack("!HHIIBB", data[:14])
        header_len = (off_ns >> 4) * 4
        if header_len < 20 or header_len > len(data):
            return
        pkt.src_port, pkt.dst_port = sport, dport
        pkt.protocol = Protocol.TCP
        pkt.seq_num, pkt.ack_num = seq, ack
        pkt.tcp_flags = TCPFlags(
            fin=bool(flags & 0x01), syn=bool(flags & 0x02), rst=bool(flags & 0x04),
            psh=bool(flags & 0x08), ack=bool(flags & 0x10), urg=bool(flags & 0x20),
            ece=bool(flags & 0x40), cwr=bool(flags & 0x80), ns=bool(off_ns & 0x01),
        )
        pkt.payload = bytes(data[header_len:])
    elif proto == Protocol.UDP and len(data) >= 8:
        sport, dport = struct.unpack("!HH", data[:4])
        pkt.src_port, pkt.dst_port = sport, dport
        pkt.protocol = Protocol.UDP
        pkt.payload = bytes(data[8:])
    elif proto == Protocol.ICMP and not ipv6 and len(data) >= 8:
        pkt.protocol = Protocol.ICMP
        pkt.app_info = f"ICMP type={data[0]} code={data[1]}"
        pkt.payload = bytes(data[8:])
    elif proto == Protocol.ICMPV6 and len(data) >= 4:
        pkt.protocol = Protocol.ICMPV6
        pkt.app_info = f"ICMPv6 type={data[0]} code={data[1]}"
        pkt.payload = bytes(data[4:])


def _decode_ipv4(pkt: Packet, data: bytes) -> None:
    if len(data) < 20:
        return
    ihl = (data[0] & 0x0F) * 4
    if ihl < 20 or len(data) < ihl:
        return
    total = struct.unpack("!H", data[2:4])[0]
    frag = struct.unpack("!H", data[6:8])[0] & 0x1FFF
    pkt.ttl = data[8]
    pkt.protocol = data[9]
    pkt.src_ip = ipaddress.IPv4Address(data[12:16])
    pkt.dst_ip = ipaddress.IPv4Address(data[16:20])
    end = total if ihl <= total <= len(data) else len(data)
    if frag == 0:
        _decode_transport(pkt, data[9], data[ihl:end], ipv6=False)


_IPV6_EXTENSIONS = {0, 43, 60}


def _decode_ipv6(pkt: Packet, data: bytes) -> None:
    if len(data) < 40:
        return
    payload_len = struct.unpack("!H", data[4:6])[0]
    next_header = data[6]
    pkt.protocol = next_header
    pkt.ttl = data[7]
    pkt.src_ip = ipaddress.IPv6Address(data[8:24])
    pkt.dst_ip = ipaddress.IPv6Address(data[24:40])
    end = 40 + payload_len if 0 < payload_len and 40 + payload_len <= len(data) else len(data)
    body = data[40:end]
    while next_header in _IPV6_EXTENSIONS:
        if len(body) < 8:
            return
        length = (body[1] + 1) * 8
        next_header = body[0]
        body = body[length:]
    _decode_transport(pkt, next_header, body, ipv6=True)


def _decode_ethertype(pkt: Packet, ethertype: int, data: bytes) -> None:
    while ethertype in (0x8100, 0x88A8) and len(data) >= 4:
        ethertype = struct.unpack("!H", data[2:4])[0]
        data = data[4:]
    if ethertype == 0x0800:
        _decode_ipv4(pkt, data)
    elif ethertype == 0x86DD:
        _decode_ipv6(pkt, data)
    elif ethertype == 0x0806:
        _decode_arp(pkt, data)


def _decode_ip(pkt: Packet, data: bytes) -> None:
    if not data:
        return
    version = data[0] >> 4
    if version == 4:
        _decode_ipv4(pkt, data)
    elif version == 6:
        _decode_ipv6(pkt, data)


def parse_packet(
    data: bytes,
    link_type: int = LinkType.ETHERNET,
    timestamp: datetime | None = None,
    captured_len: int = 0,
    original_len: int = 0,
) -> Packet:
    """Decode a captured frame into a :class:`Packet`.

    Zero lengths fall back to the length of ``data``. Undecodable layers
    leave the remaining fields at their defaults.
    """
    raw = bytes(data)
    captured = captured_len or len(raw)
    original = original_len or len(raw)
    pkt = Packet(
        timestamp=timestamp if timestamp is not None else _EPOCH,
        length=original,
        captured_len=captured,
        original_len=original,
        data=raw,
    )
    if link_type == LinkType.ETHERNET:
        if len(raw) >= 14:
            _decode_ethertype(pkt, struct.unpack("!H", raw[12:14])[0], raw[14:])
    elif link_type == LinkType.LINUX_SLL:
        if len(raw) >= 16:
            _decode_ethertype(pkt, struct.unpack("!H", raw[14:16])[0], raw[16:])
    elif link_type == LinkType.NULL:
        if len(raw) >= 4:
            family = struct.unpack("<I", raw[:4])[0]
            if family > 0xFFFF:
                family = struct.unpack(">I", raw[:4])[0]
            if family == 2:
                _decode_ipv4(pkt, raw[4:])
            elif family in (24, 28, 30):
                _decode_ipv6(pkt, raw[4:])
    elif link_type in (LinkType.RAW, LinkType.IPV4, LinkType.IPV6):
        _decode_ip(pkt, raw)
    return pkt