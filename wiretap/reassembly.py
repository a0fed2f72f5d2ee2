"""TCP stream reassembly and per-connection payload collection."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .packet import Packet

_SEQ_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class Flow:
    """A pair of endpoints, network (addresses) or transport (ports)."""

    src: Any
    dst: Any

    def __str__(self) -> str:
        return f"{self.src}->{self.dst}"


def stream_key(net_flow: Flow, trans_flow: Flow) -> str:
    """Unique key for a unidirectional stream."""
    return f"{net_flow}:{trans_flow}"


StreamHandler = Callable[["TCPStream"], None]


class TCPStream:
    """One direction of a TCP connection, fed in order by an assembler."""

    def __init__(self, net_flow: Flow, trans_flow: Flow) -> None:
        self.net_flow = net_flow
        self.trans_flow = trans_flow
        self._cond = threading.Condition()
        self._pending = bytearray()
        self._data = bytearray()
        self._complete = False
        self._closed = False

    def feed(self, payload: bytes) -> None:
        """Append in-order data for readers."""
        if not payload:
            return
        with self._cond:
            if self._complete:
                raise ValueError("stream reassembly is complete")
            self._pending.extend(payload)
            self._cond.notify_all()

    def _finish(self) -> None:
        with self._cond:
            self._complete = True
            self._cond.notify_all()

    @property
    def complete(self) -> bool:
        with self._cond:
            return self._complete

    def read(self, size: int = -1) -> bytes:
        """Read reassembled data, blocking until some is available.

        A negative size reads until reassembly is complete. Returns ``b""``
        once the stream is complete and drained.
        """
        with self._cond:
            if size == 0:
                return b""
            if size < 0:
                self._cond.wait_for(lambda: self._complete)
                chunk = bytes(self._pending)
                self._pending.clear()
            else:
                self._cond.wait_for(lambda: self._pending or self._complete)
                chunk = bytes(self._pending[:size])
                del self._pending[:size]
            self._data.extend(chunk)
            return chunk

    @property
    def data(self) -> bytes:
        """All data read from the stream so far."""
        with self._cond:
            return bytes(self._data)

    @property
    def byte_count(self) -> int:
        with self._cond:
            return len(self._data)

    def close(self) -> None:
        with self._cond:
            self._closed = True

    @property
    def is_closed(self) -> bool:
        with self._cond:
            return self._closed


class StreamFactory:
    """Creates and tracks streams; the handler runs in its own thread."""

    def __init__(self, handler: Optional[StreamHandler] = None) -> None:
        self._handler = handler
        self._lock = threading.Lock()
        self._streams: dict[str, TCPStream] = {}

    def new(self, net_flow: Flow, trans_flow: Flow) -> TCPStream:
        stream = TCPStream(net_flow, trans_flow)
        with self._lock:
            self._streams[stream_key(net_flow, trans_flow)] = stream
        if self._handler is not None:
            threading.Thread(target=self._handler, args=(stream,), daemon=True).start()
        return stream

    def get_stream(self, net_flow: Flow, trans_flow: Flow) -> Optional[TCPStream]:
        with self._lock:
            return self._streams.get(stream_key(net_flow, trans_flow))

    def all_streams(self) -> list[TCPStream]:
        with self._lock:
            return list(self._streams.values())


def _seq_diff(a: int, b: int) -> int:
    diff = (a - b) & _SEQ_MASK
    return diff - (1 << 32) if diff >= 1 << 31 else diff


@dataclass
class _HalfConnection:
    stream: TCPStream
    next_seq: int
    last_seen: datetime
    segments: dict[int, bytes] = field(default_factory=dict)


class Assembler:
    """Orders TCP segments by sequence number and feeds them to streams.

    The first segment seen on a direction fixes its starting sequence
    number. Out-of-order segments wait until the gap is filled or the
    direction is flushed, when gaps are skipped.
    """

    def __init__(self, handler: Optional[StreamHandler] = None) -> None:
        self._factory = StreamFactory(handler)
        self._lock = threading.Lock()
        self._halves: dict[tuple[Flow, Flow], _HalfConnection] = {}

    def assemble(self, net_flow: Flow, trans_flow: Flow, seq: int, payload: bytes, timestamp: datetime) -> None:
        seq &= _SEQ_MASK
        with self._lock:
            key = (net_flow, trans_flow)
            half = self._halves.get(key)
            if half is None:
                half = _HalfConnection(self._factory.new(net_flow, trans_flow), seq, timestamp)
                self._halves[key] = half
            elif timestamp > half.last_seen:
                half.last_seen = timestamp
            if payload:
                self._add(half, seq, bytes(payload))

    def _add(self, half: _HalfConnection, seq: int, payload: bytes) -> None:
        offset = _seq_diff(seq, half.next_seq)
        if offset > 0:
            existing = half.segments.get(seq)
            if existing is None or len(payload) > len(existing):
                half.segments[seq] = payload
            return
        if -offset < len(payload):
            self._deliver(half, payload[-offset:])
        self._drain(half)

    @staticmethod
    def _deliver(half: _HalfConnection, payload: bytes) -> None:
        half.stream.feed(payload)
        half.next_seq = (half.next_seq + len(payload)) & _SEQ_MASK

    def _drain(self, half: _HalfConnection) -> None:
        while True:
            ready = [s for s in half.segments if _seq_diff(s, half.next_seq) <= 0]
            if not ready:
                return
            for seq in sorted(ready, key=lambda s: _seq_diff(s, half.next_seq)):
                payload = half.segments.pop(seq)
                overlap = -_seq_diff(seq, half.next_seq)
                if overlap < len(payload):
                    self._deliver(half, payload[overlap:])

    def _flush(self, half: _HalfConnection) -> None:
        self._drain(half)
        while half.segments:
            half.next_seq = min(half.segments, key=lambda s: _seq_diff(s, half.next_seq))
            self._drain(half)
        half.stream._finish()

    def flush_older_than(self, timestamp: datetime) -> int:
        """Flush and close directions idle since before ``timestamp``."""
        with self._lock:
            old = [key for key, half in self._halves.items() if half.last_seen < timestamp]
            for key in old:
                self._flush(self._halves.pop(key))
            return len(old)

    def flush_all(self) -> int:
        """Flush and close every direction; returns how many were closed."""
        with self._lock:
            halves = list(self._halves.values())
            self._halves.clear()
            for half in halves:
                self._flush(half)
            return len(halves)

    def get_stream(self, net_flow: Flow, trans_flow: Flow) -> Optional[TCPStream]:
        return self._factory.get_stream(net_flow, trans_flow)

    def all_streams(self) -> list[TCPStream]:
        return self._factory.all_streams()


@dataclass
class ReassembledConnection:
    """Payload collected for both directions of a connection."""

    key: tuple
    protocol: int
    client_ip: Any
    client_port: int
    server_ip: Any
    server_port: int
    client_data: bytearray = field(default_factory=bytearray)
    server_data: bytearray = field(default_factory=bytearray)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class ConnectionReassembler:
    """Collects payload per connection, split by direction."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._connections: dict[tuple, ReassembledConnection] = {}

    def add_data(self, packet: Packet, payload: bytes, is_client_to_server: bool) -> None:
        key = packet.flow_key()
        with self._lock:
            conn = self._connections.get(key)
            if conn is None:
                if is_client_to_server:
                    client = (packet.src_ip, packet.src_port)
                    server = (packet.dst_ip, packet.dst_port)
                else:
                    client = (packet.dst_ip, packet.dst_port)
                    server = (packet.src_ip, packet.src_port)
                conn = ReassembledConnection(key, packet.protocol, *client, *server)
                self._connections[key] = conn
        with conn._lock:
            target = conn.client_data if is_client_to_server else conn.server_data
            target.extend(payload)

    def get_connection(self, key: tuple) -> Optional[ReassembledConnection]:
        with self._lock:
            return self._connections.get(key)

    def all(self) -> list[ReassembledConnection]:
        with self._lock:
            return list(self._connections.values())