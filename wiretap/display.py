"""Text formatting of packets and interfaces, and protocol filtering."""

from __future__ import annotations

from typing import Iterable, Optional

from .packet import IPAddress, Packet, Protocol

_INTERFACE_FLAGS = (
    (0x1, "UP"),
    (0x2, "BROADCAST"),
    (0x8, "LOOPBACK"),
    (0x10, "P2P"),
    (0x40, "RUNNING"),
    (0x100, "PROMISC"),
    (0x1000, "MULTICAST"),
)


def format_addr(ip: Optional[IPAddress], port: int) -> str:
    """``ip:port``, the bare address when the port is 0, ``?`` without one."""
    if ip is None:
        return "?"
    if port > 0:
        return f"{ip}:{port}"
    return str(ip)


def format_basic_info(packet: Packet) -> str:
    """Short info column for a packet that was not dissected."""
    if packet.protocol == Protocol.TCP:
        return str(packet.tcp_flags)
    if packet.protocol == Protocol.UDP:
        return f"Len={len(packet.payload)}"
    if packet.protocol == Protocol.ICMP:
        return "ICMP"
    return ""


def format_interface_flags(flags: int) -> str:
    """Names of the set interface flags joined by ``|``, or ``-``."""
    parts = [name for bit, name in _INTERFACE_FLAGS if flags & bit]
    return "|".join(parts) if parts else "-"


def hex_dump(data: bytes) -> str:
    """Offset, hex and ASCII columns, 16 bytes per line."""
    lines = []
    for start in range(0, len(data), 16):
        chunk = data[start:start + 16]
        cells = []
        for pos in range(16):
            cell = f"{chunk[pos]:02x} " if pos < len(chunk) else "   "
            if pos == 7:
                cell += " "
            cells.append(cell)
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"    {start:04x}  {''.join(cells)} |{text}|")
    return "\n".join(lines)


def packet_matches_protocols(packet: Packet, filters: Optional[Iterable[str]]) -> bool:
    """Whether the packet matches any of the protocol names.

    Application names (http, http2/h2, tls, dns, grpc, websocket/ws) are
    checked against the packet's application protocol; any other name
    against its transport protocol. No filters match everything.
    """
    wanted = list(filters or [])
    if not wanted:
        return True
    app = packet.application_protocol.lower()
    transport = packet.protocol_name.lower()
    for raw in wanted:
        name = raw.strip().lower()
        if name == "http":
            matched = app.startswith("http/") or app == "http"
        elif name in ("http2", "h2"):
            matched = "http/2" in app
        elif name in ("tls", "dns", "grpc"):
            matched = app.startswith(name)
        elif name in ("websocket", "ws"):
            matched = app.startswith("websocket")
        else:
            matched = transport == name
        if matched:
            return True
    return False