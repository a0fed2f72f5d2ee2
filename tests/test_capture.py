import struct
import threading
from datetime import datetime, timezone

import pytest

from wiretap.capture import (
    Capture,
    CaptureError,
    CaptureNotRunningError,
    CaptureOptions,
    CaptureRunningError,
    InvalidInterfaceError,
    default_capture_options,
    find_interface_by_name,
    list_interfaces,
)
from wiretap.packet import LinkType, Protocol


def build_tcp_frame(payload=b""):
    eth = bytes.fromhex("020000000002020000000001") + b"\x08\x00"
    total = 40 + len(payload)
    ip = struct.pack(
        "!BBHHHBBH4s4s", 0x45, 0, total, 0, 0, 64, 6, 0,
        bytes([192, 168, 1, 10]), bytes([192, 168, 1, 20]),
    )
    tcp = struct.pack("!HHIIBBHHH", 12345, 80, 1, 0, 5 << 4, 0x12, 65535, 0, 0)
    return eth + ip + tcp + payload


class NoFilterSource:
    """A packet source that cannot apply a capture filter."""

    link_type = LinkType.ETHERNET

    def __init__(self, frames, exhaust=False):
        self.frames = list(frames)
        self.exhaust = exhaust
        self.closed = False

    def recv(self):
        if self.frames:
            frame = self.frames.pop(0)
            return frame, len(frame)
        if self.exhaust:
            raise EOFError
        threading.Event().wait(0.01)
        return None

    def stats(self):
        return 3, 1

    def close(self):
        self.closed = True


class FakeSource(NoFilterSource):
    """A packet source that records the filters it was given."""

    def __init__(self, frames, exhaust=False):
        super().__init__(frames, exhaust)
        self.filters = []

    def set_filter(self, expr):
        self.filters.append(expr)


def test_default_capture_options():
    opts = default_capture_options()
    assert opts.promiscuous is True
    assert opts.snaplen == 65535
    assert opts.timeout is None


def test_new_capture_uses_defaults():
    c = Capture()
    assert c.options == default_capture_options()
    assert c.options.promiscuous is True


def test_new_capture_with_options():
    opts = CaptureOptions(interface="eth0", promiscuous=False, snaplen=1500, timeout=1.0, bpf_filter="tcp port 80")
    c = Capture(opts)
    assert c.options.interface == "eth0"
    assert c.options.promiscuous is False
    assert c.options.snaplen == 1500
    assert c.options.bpf_filter == "tcp port 80"


def test_not_running_initially():
    assert Capture().is_running() is False


def test_initial_stats_are_zero():
    stats = Capture().stats()
    assert stats.packets_received == 0
    assert stats.bytes_received == 0


def test_stop_when_not_running():
    with pytest.raises(CaptureNotRunningError):
        Capture().stop()


def test_process_packet_calls_handler():
    frame = build_tcp_frame(b"payload")
    seen = []
    c = Capture()
    c.set_handler(seen.append)
    c.process_packet(frame, datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert len(seen) == 1
    assert seen[0].protocol == Protocol.TCP
    assert seen[0].payload == b"payload"
    stats = c.stats()
    assert stats.packets_received == 1
    assert stats.bytes_received == len(frame)


def test_process_packet_without_handler_counts():
    c = Capture()
    c.process_packet(build_tcp_frame(), datetime.now(timezone.utc))
    assert c.stats().packets_received == 1


def test_start_invalid_interface_default_opener():
    c = Capture(CaptureOptions(interface="invalid0", snaplen=65535, promiscuous=False))
    with pytest.raises(CaptureError):
        c.start()
    assert c.is_running() is False


def test_start_opener_error_is_wrapped():
    def opener(*args):
        raise OSError("no such device")

    c = Capture(CaptureOptions(interface="dummy0"), opener=opener)
    with pytest.raises(CaptureError, match="open interface dummy0"):
        c.start()


def test_start_and_stop_with_fake_source():
    source = FakeSource([build_tcp_frame(b"payload")])
    calls = []

    def opener(interface, snaplen, promisc, timeout):
        calls.append((interface, snaplen, promisc, timeout))
        return source

    got = threading.Event()
    packets = []

    def handler(pkt):
        packets.append(pkt)
        got.set()

    c = Capture(CaptureOptions(interface="dummy0", promiscuous=False, timeout=0.001, bpf_filter="tcp"), opener=opener)
    c.set_handler(handler)
    c.start()
    assert c.is_running() is True
    assert got.wait(2)
    c.stop()
    assert c.is_running() is False
    assert source.closed is True
    assert source.filters == ["tcp"]
    assert calls == [("dummy0", 65535, False, 0.001)]
    assert packets[0].src_port == 12345
    stats = c.stats()
    assert stats.packets_received == 1
    assert stats.packets_dropped == 3
    assert stats.packets_if_dropped == 1
    assert stats.end_time >= stats.start_time


def test_start_twice_raises():
    c = Capture(opener=lambda *a: FakeSource([]))
    c.start()
    try:
        with pytest.raises(CaptureRunningError):
            c.start()
    finally:
        c.stop()
    assert c.is_running() is False


def test_filter_unsupported_by_source():
    source = NoFilterSource([])
    c = Capture(CaptureOptions(bpf_filter="tcp"), opener=lambda *a: source)
    with pytest.raises(CaptureError, match="BPF"):
        c.start()
    assert source.closed is True


def test_exhausted_source_then_stop():
    source = FakeSource([build_tcp_frame()], exhaust=True)
    c = Capture(opener=lambda *a: source)
    c.start()
    c.stop()
    assert c.stats().packets_received == 1


def test_find_interface_not_found():
    with pytest.raises(InvalidInterfaceError):
        find_interface_by_name("nonexistent0")


def test_find_each_listed_interface():
    for iface in list_interfaces():
        assert find_interface_by_name(iface.name).name == iface.name