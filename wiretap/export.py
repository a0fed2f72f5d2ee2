"""Export of decoded packets to JSON, JSON Lines and CSV."""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional, TextIO, Union

from .display import packet_matches_protocols
from .packet import Packet
from .pcapfile import PacketIterator, PcapReader

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

CSV_HEADER = (
    "number",
    "timestamp",
    "src_ip",
    "dst_ip",
    "src_port",
    "dst_port",
    "protocol",
    "length",
    "tcp_flags",
)


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    JSONL = "jsonl"

    @classmethod
    def parse(cls, value: Union[str, "ExportFormat"]) -> "ExportFormat":
        """Format from a case-insensitive name; unknown names raise ValueError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"unsupported format: {value} (use json, csv, or jsonl)") from None


@dataclass
class ExportPacket:
    """One packet as it appears in exported output."""

    number: int
    timestamp: str
    timestamp_ns: int
    src_ip: str
    dst_ip: str
    src_port: int
    dst_port: int
    protocol: str
    length: int
    captured_len: int
    tcp_flags: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Mapping for JSON output; zero ports and empty flags are left out."""
        result: dict[str, Any] = {
            "number": self.number,
            "timestamp": self.timestamp,
            "timestamp_ns": self.timestamp_ns,
            "src_ip": self.src_ip,
            "dst_ip": self.dst_ip,
        }
        if self.src_port:
            result["src_port"] = self.src_port
        if self.dst_port:
            result["dst_port"] = self.dst_port
        result["protocol"] = self.protocol
        result["length"] = self.length
        result["captured_len"] = self.captured_len
        if self.tcp_flags:
            result["tcp_flags"] = self.tcp_flags
        return result

    def csv_row(self) -> list[str]:
        return [
            str(self.number),
            self.timestamp,
            self.src_ip,
            self.dst_ip,
            str(self.src_port),
            str(self.dst_port),
            self.protocol,
            str(self.length),
            self.tcp_flags,
        ]


def _aware(ts: datetime) -> datetime:
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts


def _format_timestamp(ts: datetime) -> str:
    ts = _aware(ts)
    text = ts.strftime("%Y-%m-%dT%H:%M:%S.%f")
    offset = ts.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def _unix_nanoseconds(ts: datetime) -> int:
    return (_aware(ts) - _EPOCH) // timedelta(microseconds=1) * 1000


def to_export_packet(packet: Packet, number: int) -> ExportPacket:
    """Export record of a decoded packet with the given packet number."""
    flags = str(packet.tcp_flags) if packet.tcp_flags.to_uint8() != 0 else ""
    return ExportPacket(
        number=number,
        timestamp=_format_timestamp(packet.timestamp),
        timestamp_ns=_unix_nanoseconds(packet.timestamp),
        src_ip="" if packet.src_ip is None else str(packet.src_ip),
        dst_ip="" if packet.dst_ip is None else str(packet.dst_ip),
        src_port=packet.src_port,
        dst_port=packet.dst_port,
        protocol=packet.protocol_name,
        length=packet.original_len,
        captured_len=packet.captured_len,
        tcp_flags=flags,
    )


def export_packets(
    reader: PcapReader,
    stream: TextIO,
    fmt: Union[str, ExportFormat] = ExportFormat.JSON,
    count: int = 0,
    protocols: Optional[Iterable[str]] = None,
    pretty: bool = False,
) -> int:
    """Write the reader's packets to ``stream``; returns how many were exported.

    Packets keep their number in the file even when others are filtered out.
    A positive ``count`` stops after that many exported packets.
    """
    export_format = ExportFormat.parse(fmt)
    wanted = list(protocols or [])
    collected: list[ExportPacket] = []
    exported = 0

    for packet in PacketIterator(reader):
        if not packet_matches_protocols(packet, wanted):
            continue
        record = to_export_packet(packet, packet.index)
        if export_format is ExportFormat.JSONL:
            stream.write(json.dumps(record.to_dict(), separators=(",", ":"), ensure_ascii=False))
            stream.write("\n")
        else:
            collected.append(record)
        exported += 1
        if count > 0 and exported >= count:
            break

    if export_format is ExportFormat.JSON:
        items = [record.to_dict() for record in collected]
        if pretty:
            stream.write(json.dumps(items, indent=2, ensure_ascii=False))
        else:
            stream.write(json.dumps(items, separators=(",", ":"), ensure_ascii=False))
        stream.write("\n")
    elif export_format is ExportFormat.CSV:
        writer = csv.writer(stream, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        writer.writerows(record.csv_row() for record in collected)

    return exported