"""Live packet capture from network interfaces."""

from __future__ import annotations

import dataclasses
import ipaddress
import socket
import struct
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .packet import LinkType, Packet, parse_packet

try:
    import fcntl
except ImportError:  # not available on every platform
    fcntl = None


class CaptureError(Exception):
    """Live capture could not be set up or controlled."""


class CaptureRunningError(CaptureError):
    """The capture is already running."""


class CaptureNotRunningError(CaptureError):
    """The capture is not running."""


class InvalidInterfaceError(CaptureError):
    """No interface of that name exists."""


LivePacketHandler = Callable[[Packet], None]


@dataclass
class CaptureOptions:
    """Settings of a live capture; ``timeout`` is in seconds, ``None`` blocks."""

    interface: str = ""
    promiscuous: bool = True
    snaplen: int = 65535
    timeout: Optional[float] = None
    bpf_filter: str = ""
    tls_decrypt: bool = False
    tls_keylog_file: str = ""
    grpc_proto_dirs: list[str] = field(default_factory=list)
    grpc_proto_files: list[str] = field(default_factory=list)


def default_capture_options() -> CaptureOptions:
    """Promiscuous capture of up to 65535 bytes per packet, blocking reads."""
    return CaptureOptions()


@dataclass
class CaptureStats:
    packets_received: int = 0
    packets_dropped: int = 0
    packets_if_dropped: int = 0
    bytes_received: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass
class InterfaceAddress:
    ip: str
    netmask: str


@dataclass
class Interface:
    name: str
    description: str = ""
    addresses: list[InterfaceAddress] = field(default_factory=list)
    flags: int = 0


_ETH_P_ALL = 0x0003
_SOL_PACKET = 263
_PACKET_ADD_MEMBERSHIP = 1
_PACKET_MR_PROMISC = 1
_PACKET_STATISTICS = 6
_POLL_INTERVAL = 0.2
_SIOCGIFADDR = 0x8915
_SIOCGIFNETMASK = 0x891B


class _RawSocketSource:
    """Frames read from a raw packet socket bound to one interface."""

    link_type = LinkType.ETHERNET

    def __init__(self, interface: str, snaplen: int, promiscuous: bool, timeout: Optional[float]) -> None:
        family = getattr(socket, "AF_PACKET", None)
        if family is None:
            raise OSError("raw packet sockets are not available on this platform")
        self._snaplen = snaplen if snaplen > 0 else 65535
        self._sock = socket.socket(family, socket.SOCK_RAW, socket.htons(_ETH_P_ALL))
        try:
            self._sock.bind((interface, 0))
            if promiscuous:
                index = socket.if_nametoindex(interface)
                mreq = struct.pack("iHH8s", index, _PACKET_MR_PROMISC, 0, b"")
                self._sock.setsockopt(_SOL_PACKET, _PACKET_ADD_MEMBERSHIP, mreq)
            if timeout is None or timeout <= 0:
                poll = _POLL_INTERVAL
            else:
                poll = min(timeout, _POLL_INTERVAL)
            self._sock.settimeout(poll)
        except BaseException:
            self._sock.close()
            raise
        self._buffer = bytearray(self._snaplen)

    def recv(self) -> Optional[tuple[bytes, int]]:
        try:
            size = self._sock.recv_into(self._buffer, self._snaplen, socket.MSG_TRUNC)
        except socket.timeout:
            return None
        captured = min(size, self._snaplen)
        return bytes(self._buffer[:captured]), size

    def stats(self) -> tuple[int, int]:
        try:
            raw = self._sock.getsockopt(_SOL_PACKET, _PACKET_STATISTICS, 8)
        except OSError:
            return 0, 0
        _, drops = struct.unpack("II", raw)
        return drops, 0

    def close(self) -> None:
        self._sock.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Capture:
    """Reads packets from an interface in a background thread.

    ``opener(interface, snaplen, promiscuous, timeout)`` returns a source
    with ``recv()`` (``(data, original_len)``, ``None`` on timeout, raising
    ``EOFError`` when exhausted) and ``close()``; optionally ``link_type``,
    ``set_filter(expr)`` and ``stats()``.
    """

    def __init__(self, options: Optional[CaptureOptions] = None, opener=None) -> None:
        self.options = options if options is not None else default_capture_options()
        self._opener = opener if opener is not None else _RawSocketSource
        self._lock = threading.Lock()
        self._handler: Optional[LivePacketHandler] = None
        self._source = None
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stats = CaptureStats()

    def set_handler(self, handler: Optional[LivePacketHandler]) -> None:
        with self._lock:
            self._handler = handler

    def start(self) -> None:
        """Open the interface and begin capturing in the background."""
        with self._lock:
            if self._running:
                raise CaptureRunningError("capture already running")
            opts = self.options
            try:
                source = self._opener(opts.interface, opts.snaplen, opts.promiscuous, opts.timeout)
            except (OSError, ValueError) as exc:
                raise CaptureError(f"open interface {opts.interface}: {exc}") from exc
            if opts.bpf_filter:
                set_filter = getattr(source, "set_filter", None)
                if set_filter is None:
                    source.close()
                    raise CaptureError("set BPF filter: not supported by this capture source")
                try:
                    set_filter(opts.bpf_filter)
                except (OSError, ValueError) as exc:
                    source.close()
                    raise CaptureError(f"set BPF filter: {exc}") from exc
            self._source = source
            self._running = True
            self._stats = CaptureStats(start_time=_now())
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop, args=(source, self._stop_event), daemon=True
            )
            self._thread.start()

    def _loop(self, source, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                record = source.recv()
            except (EOFError, OSError):
                return
            if record is None:
                continue
            data, original_len = record
            self._handle(data, _now(), original_len)

    def _handle(self, data: bytes, timestamp: datetime, original_len: int) -> None:
        with self._lock:
            handler = self._handler
            self._stats.packets_received += 1
            self._stats.bytes_received += len(data)
            link_type = getattr(self._source, "link_type", LinkType.ETHERNET)
        if handler is None:
            return
        handler(parse_packet(data, link_type, timestamp, len(data), original_len))

    def process_packet(self, data: bytes, timestamp: datetime) -> None:
        """Count a captured frame and pass the decoded packet to the handler."""
        self._handle(data, timestamp, 0)

    def stop(self) -> None:
        """Stop capturing, wait for the reader thread and close the source."""
        with self._lock:
            if not self._running:
                raise CaptureNotRunningError("capture not running")
            self._stop_event.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            source = self._source
            if source is not None:
                stats = getattr(source, "stats", None)
                if stats is not None:
                    dropped, if_dropped = stats()
                    self._stats.packets_dropped = dropped
                    self._stats.packets_if_dropped = if_dropped
                source.close()
                self._source = None
            self._running = False
            self._thread = None
            self._stats.end_time = _now()

    def stats(self) -> CaptureStats:
        with self._lock:
            return dataclasses.replace(self._stats)

    def is_running(self) -> bool:
        with self._lock:
            return self._running


def _interface_flags(name: str) -> int:
    try:
        with open(f"/sys/class/net/{name}/flags", encoding="ascii") as handle:
            return int(handle.read().strip(), 16)
    except (OSError, ValueError):
        return 0


def _ipv4_addresses(name: str) -> list[InterfaceAddress]:
    if fcntl is None or not sys.platform.startswith("linux"):
        return []
    request = struct.pack("256s", name.encode()[:15])
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            addr = fcntl.ioctl(sock.fileno(), _SIOCGIFADDR, request)
            mask = fcntl.ioctl(sock.fileno(), _SIOCGIFNETMASK, request)
    except OSError:
        return []
    return [InterfaceAddress(ip=socket.inet_ntoa(addr[20:24]), netmask=socket.inet_ntoa(mask[20:24]))]


def _ipv6_addresses() -> dict[str, list[InterfaceAddress]]:
    result: dict[str, list[InterfaceAddress]] = {}
    try:
        with open("/proc/net/if_inet6", encoding="ascii") as handle:
            lines = handle.read().splitlines()
    except OSError:
        return result
    for line in lines:
        parts = line.split()
        if len(parts) < 6:
            continue
        try:
            address = ipaddress.IPv6Address(int(parts[0], 16))
            prefix = int(parts[2], 16)
            netmask = ipaddress.IPv6Network((0, prefix)).netmask
        except ValueError:
            continue
        result.setdefault(parts[5], []).append(InterfaceAddress(ip=str(address), netmask=str(netmask)))
    return result


def list_interfaces() -> list[Interface]:
    """All network interfaces of the host."""
    try:
        entries = socket.if_nameindex()
    except (AttributeError, OSError) as exc:
        raise CaptureError(f"find interfaces: {exc}") from exc
    ipv6 = _ipv6_addresses()
    return [
        Interface(
            name=name,
            addresses=_ipv4_addresses(name) + ipv6.get(name, []),
            flags=_interface_flags(name),
        )
        for _, name in entries
    ]


def find_interface_by_name(name: str) -> Interface:
    for iface in list_interfaces():
        if iface.name == name:
            return iface
    raise InvalidInterfaceError(f"invalid interface: {name}")