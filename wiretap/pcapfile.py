"""Reading and writing of pcap and pcapng capture files."""

from __future__ import annotations

import errno
import os
import stat
import struct
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Callable, Iterator, Optional, Tuple

from .packet import LinkType, Packet, parse_packet

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_PCAP_MAGIC_US = 0xA1B2C3D4
_PCAP_MAGIC_NS = 0xA1B23C4D
_NG_SHB = 0x0A0D0D0A
_NG_BOM = 0x1A2B3C4D
_NG_IDB = 0x00000001
_NG_OPB = 0x00000002
_NG_SPB = 0x00000003
_NG_EPB = 0x00000006
_NG_PACKET_BLOCKS = (_NG_OPB, _NG_SPB, _NG_EPB)


class InvalidPcapFileError(ValueError):
    """The file is not a readable pcap or pcapng capture."""


@dataclass
class CaptureInfo:
    """Per-packet metadata stored in a capture file."""

    timestamp: datetime
    capture_length: int
    length: int
    interface_index: int = 0


Record = Tuple[CaptureInfo, bytes]


def _link_type(value: int) -> int:
    try:
        return LinkType(value)
    except ValueError:
        return value


def _from_nanoseconds(ns: int) -> datetime:
    return _EPOCH + timedelta(microseconds=ns // 1000)


def _read_exact(handle: BinaryIO, size: int, what: str) -> bytes:
    data = handle.read(size)
    if len(data) < size:
        raise InvalidPcapFileError(f"truncated {what}")
    return data


class _ClassicSource:
    def __init__(self, handle: BinaryIO, header: bytes) -> None:
        if len(header) < 24:
            raise InvalidPcapFileError("file too short for a pcap header")
        for order in ("<", ">"):
            magic = struct.unpack(order + "I", header[:4])[0]
            if magic in (_PCAP_MAGIC_US, _PCAP_MAGIC_NS):
                break
        else:
            raise InvalidPcapFileError("unknown pcap magic number")
        self._handle = handle
        self._order = order
        self._nanos = magic == _PCAP_MAGIC_NS
        fields = struct.unpack(order + "IHHiIII", header[:24])
        self.snaplen = fields[5]
        self.link_type = fields[6] & 0x0FFFFFFF

    def next(self) -> Optional[Record]:
        header = self._handle.read(16)
        if not header:
            return None
        if len(header) < 16:
            raise InvalidPcapFileError("truncated packet record header")
        sec, frac, incl, orig = struct.unpack(self._order + "IIII", header)
        data = _read_exact(self._handle, incl, "packet data")
        ns = sec * 10**9 + (frac if self._nanos else frac * 1000)
        return CaptureInfo(_from_nanoseconds(ns), incl, orig), data


@dataclass
class _NgInterface:
    link_type: int
    snaplen: int
    resolution: int = 10**6
    offset: int = 0


class _NgSource:
    def __init__(self, handle: BinaryIO) -> None:
        self._handle = handle
        self._order = "<"
        self._interfaces: list[_NgInterface] = []
        header = handle.read(8)
        if len(header) < 8 or struct.unpack("<I", header[:4])[0] != _NG_SHB:
            raise InvalidPcapFileError("missing pcapng section header")
        self._start_section(header)
        while not self._interfaces:
            block = self._read_block()
            if block is None:
                raise InvalidPcapFileError("pcapng file has no interface description")
            btype, body = block
            if btype in _NG_PACKET_BLOCKS:
                raise InvalidPcapFileError("packet block before interface description")
            if btype == _NG_IDB:
                self._add_interface(body)
        self.link_type = self._interfaces[0].link_type

    def _start_section(self, header: bytes) -> None:
        bom = _read_exact(self._handle, 4, "section header")
        if struct.unpack("<I", bom)[0] == _NG_BOM:
            self._order = "<"
        elif struct.unpack(">I", bom)[0] == _NG_BOM:
            self._order = ">"
        else:
            raise InvalidPcapFileError("invalid pcapng byte-order magic")
        length = struct.unpack(self._order + "I", header[4:8])[0]
        if length < 28 or length % 4:
            raise InvalidPcapFileError("invalid section header length")
        _read_exact(self._handle, length - 12, "section header")
        self._interfaces = []

    def _read_block(self) -> Optional[Tuple[int, bytes]]:
        while True:
            header = self._handle.read(8)
            if not header:
                return None
            if len(header) < 8:
                raise InvalidPcapFileError("truncated block header")
            btype = struct.unpack(self._order + "I", header[:4])[0]
            if btype == _NG_SHB:
                self._start_section(header)
                continue
            length = struct.unpack(self._order + "I", header[4:8])[0]
            if length < 12 or length % 4:
                raise InvalidPcapFileError("invalid block length")
            rest = _read_exact(self._handle, length - 8, "block")
            return btype, rest[:-4]

    def _add_interface(self, body: bytes) -> None:
        if len(body) < 8:
            raise InvalidPcapFileError("truncated interface description")
        link, _, snaplen = struct.unpack(self._order + "HHI", body[:8])
        iface = _NgInterface(link_type=link, snaplen=snaplen)
        options = body[8:]
        while len(options) >= 4:
            code, size = struct.unpack(self._order + "HH", options[:4])
            if code == 0:
                break
            value = options[4:4 + size]
            if code == 9 and value:
                exponent = value[0]
                iface.resolution = 2 ** (exponent & 0x7F) if exponent & 0x80 else 10**exponent
            elif code == 14 and len(value) >= 8:
                iface.offset = struct.unpack(self._order + "q", value[:8])[0]
            options = options[4 + size + (-size % 4):]
        self._interfaces.append(iface)

    def _interface(self, index: int) -> _NgInterface:
        if index >= len(self._interfaces):
            raise InvalidPcapFileError(f"packet refers to unknown interface {index}")
        return self._interfaces[index]

    def _timestamp(self, iface: _NgInterface, ticks: int) -> datetime:
        ns = ticks * 10**9 // iface.resolution + iface.offset * 10**9
        return _from_nanoseconds(ns)

    def next(self) -> Optional[Record]:
        while True:
            block = self._read_block()
            if block is None:
                return None
            btype, body = block
            if btype == _NG_IDB:
                self._add_interface(body)
            elif btype == _NG_EPB:
                if len(body) < 20:
                    raise InvalidPcapFileError("truncated enhanced packet block")
                index, high, low, caplen, origlen = struct.unpack(self._order + "IIIII", body[:20])
                return self._record(index, (high << 32) | low, caplen, origlen, body[20:])
            elif btype == _NG_OPB:
                if len(body) < 20:
                    raise InvalidPcapFileError("truncated packet block")
                index, _, high, low, caplen, origlen = struct.unpack(self._order + "HHIIII", body[:20])
                return self._record(index, (high << 32) | low, caplen, origlen, body[20:])
            elif btype == _NG_SPB:
                if len(body) < 4:
                    raise InvalidPcapFileError("truncated simple packet block")
                origlen = struct.unpack(self._order + "I", body[:4])[0]
                snaplen = self._interface(0).snaplen
                caplen = min(origlen, snaplen) if snaplen else origlen
                data = body[4:4 + caplen]
                if len(data) < caplen:
                    raise InvalidPcapFileError("truncated packet data")
                return CaptureInfo(_EPOCH, caplen, origlen), data

    def _record(self, index: int, ticks: int, caplen: int, origlen: int, rest: bytes) -> Record:
        iface = self._interface(index)
        data = rest[:caplen]
        if len(data) < caplen:
            raise InvalidPcapFileError("truncated packet data")
        return CaptureInfo(self._timestamp(iface, ticks), caplen, origlen, index), data


class PcapReader:
    """Sequential reader of a pcap or pcapng file.

    The format is chosen by the ``.pcapng`` extension; other files are read
    as classic pcap, falling back to pcapng when the content says so.
    """

    def __init__(self, path: str) -> None:
        info = os.stat(path)
        if stat.S_ISDIR(info.st_mode):
            raise IsADirectoryError(errno.EISDIR, "path is a directory", path)
        self.path = path
        self.is_pcapng = os.path.splitext(path)[1].lower() == ".pcapng"
        self._file: BinaryIO = open(path, "rb")
        try:
            self._source = self._open_source()
        except BaseException:
            self._file.close()
            raise

    def _open_source(self):
        if self.is_pcapng:
            return _NgSource(self._file)
        header = self._file.read(24)
        try:
            return _ClassicSource(self._file, header)
        except InvalidPcapFileError:
            self._file.seek(0)
            try:
                return _NgSource(self._file)
            except InvalidPcapFileError:
                raise InvalidPcapFileError(f"failed to open pcap: {self.path}") from None

    @property
    def link_type(self) -> int:
        return _link_type(self._source.link_type)

    def read_packet(self) -> Optional[Record]:
        """Next ``(CaptureInfo, data)`` pair, or ``None`` at end of file."""
        if self._file.closed:
            raise ValueError("reader is closed")
        return self._source.next()

    def _to_packet(self, info: CaptureInfo, data: bytes, index: int) -> Packet:
        pkt = parse_packet(data, self.link_type, info.timestamp, info.capture_length, info.length)
        pkt.index = index
        return pkt

    def read_all(self, handler: Optional[Callable[[Packet], None]]) -> int:
        """Decode every remaining packet and pass it to ``handler``.

        Exceptions raised by the handler stop reading and propagate.
        Returns the number of packets read.
        """
        index = 0
        while (record := self.read_packet()) is not None:
            index += 1
            pkt = self._to_packet(*record, index)
            pkt.file_offset = -1
            if handler is not None:
                handler(pkt)
        return index

    def read_all_with_offset(self, handler: Callable[[Packet, int], None]) -> int:
        """Like :meth:`read_all`; offsets are not tracked and are always -1."""
        return self.read_all(lambda pkt: handler(pkt, -1))

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "PcapReader":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def open_pcap(path: str) -> PcapReader:
    """Open a pcap or pcapng file for reading."""
    return PcapReader(path)


class PacketIterator:
    """Iterates over the decoded packets of a reader, counting them."""

    def __init__(self, reader: PcapReader) -> None:
        self.reader = reader
        self.count = 0

    def __iter__(self) -> Iterator[Packet]:
        return self

    def __next__(self) -> Packet:
        record = self.reader.read_packet()
        if record is None:
            raise StopIteration
        self.count += 1
        return self.reader._to_packet(*record, self.count)


class PcapWriter:
    """Writes packets to a stream in classic pcap format (microseconds)."""

    def __init__(self, stream: BinaryIO, link_type: int = LinkType.ETHERNET, snaplen: int = 65535) -> None:
        self._stream = stream
        self._lock = threading.Lock()
        self._count = 0
        stream.write(struct.pack("<IHHiIII", _PCAP_MAGIC_US, 2, 4, 0, 0, snaplen, int(link_type)))

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def write_packet(self, info: CaptureInfo, data: bytes) -> None:
        if info.capture_length != len(data):
            raise ValueError(
                f"capture length {info.capture_length} does not match data length {len(data)}"
            )
        if info.capture_length > info.length:
            raise ValueError(
                f"invalid capture info: capture length {info.capture_length} exceeds length {info.length}"
            )
        ts = info.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        micros = (ts - _EPOCH) // timedelta(microseconds=1)
        sec, usec = divmod(micros, 10**6)
        with self._lock:
            self._stream.write(struct.pack("<IIII", sec, usec, info.capture_length, info.length))
            self._stream.write(bytes(data))
            self._count += 1

    def close(self) -> None:
        with self._lock:
            self._stream.close()


@dataclass
class PcapFileInfo:
    path: str
    file_size: int
    packet_count: int
    link_type: int


def get_file_info(path: str) -> PcapFileInfo:
    """Size, link type and packet count of a capture file (reads it fully)."""
    with open_pcap(path) as reader:
        link_type = reader.link_type
        file_size = os.stat(path).st_size
        count = 0
        while reader.read_packet() is not None:
            count += 1
    return PcapFileInfo(path=path, file_size=file_size, packet_count=count, link_type=link_type)