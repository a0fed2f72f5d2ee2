import ipaddress
import threading
from datetime import datetime, timedelta, timezone

import pytest

from wiretap.packet import Packet, Protocol
from wiretap.reassembly import (
    Assembler,
    ConnectionReassembler,
    Flow,
    StreamFactory,
    TCPStream,
    stream_key,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
NET = Flow(ipaddress.IPv4Address("10.0.0.1"), ipaddress.IPv4Address("10.0.0.2"))
TRANS = Flow(80, 1)


def test_stream_key():
    net = Flow(ipaddress.IPv4Address("192.168.1.1"), ipaddress.IPv4Address("192.168.1.2"))
    assert stream_key(net, Flow(8080, 1)) == "192.168.1.1->192.168.1.2:8080->1"


def test_stream_factory_handler_and_lookup():
    called = threading.Event()
    seen = []

    def handler(stream):
        seen.append(stream)
        called.set()

    factory = StreamFactory(handler)
    stream = factory.new(NET, TRANS)
    assert called.wait(1.0)
    assert seen == [stream]
    assert factory.get_stream(NET, TRANS) is stream
    assert factory.all_streams() == [stream]
    assert factory.get_stream(NET, Flow(1, 80)) is None

    assert not stream.is_closed
    stream.close()
    assert stream.is_closed


def test_stream_read_tracks_data():
    stream = TCPStream(NET, TRANS)
    stream.feed(b"hello world")
    assert stream.read(5) == b"hello"
    assert stream.byte_count == 5
    assert stream.data == b"hello"
    stream._finish()
    assert stream.read() == b" world"
    assert stream.read(3) == b""
    assert stream.data == b"hello world"


def test_feed_after_complete_fails():
    stream = TCPStream(NET, TRANS)
    stream._finish()
    with pytest.raises(ValueError):
        stream.feed(b"late")


def test_assembler_in_order():
    asm = Assembler()
    asm.assemble(NET, TRANS, 100, b"abc", T0)
    asm.assemble(NET, TRANS, 103, b"def", T0)
    assert asm.flush_all() == 1
    assert asm.get_stream(NET, TRANS).read() == b"abcdef"


def test_assembler_out_of_order_and_retransmission():
    asm = Assembler()
    asm.assemble(NET, TRANS, 1, b"hello ", T0)
    asm.assemble(NET, TRANS, 13, b"!", T0)
    asm.assemble(NET, TRANS, 7, b"world", T0)
    asm.assemble(NET, TRANS, 4, b"lo wo", T0)
    asm.flush_all()
    assert asm.get_stream(NET, TRANS).read() == b"hello world!"


def test_assembler_skips_gaps_on_flush():
    asm = Assembler()
    asm.assemble(NET, TRANS, 1, b"ab", T0)
    asm.assemble(NET, TRANS, 10, b"yz", T0)
    stream = asm.get_stream(NET, TRANS)
    assert stream.read(10) == b"ab"
    asm.flush_all()
    assert stream.read() == b"yz"


def test_assembler_sequence_wraparound():
    asm = Assembler()
    asm.assemble(NET, TRANS, 0xFFFFFFFE, b"ab", T0)
    asm.assemble(NET, TRANS, 0, b"cd", T0)
    asm.flush_all()
    assert asm.get_stream(NET, TRANS).read() == b"abcd"


def test_flush_older_than_closes_only_idle():
    asm = Assembler()
    other = Flow(443, 2)
    asm.assemble(NET, TRANS, 1, b"old", T0)
    asm.assemble(NET, other, 1, b"new", T0 + timedelta(seconds=10))
    assert asm.flush_older_than(T0 + timedelta(seconds=5)) == 1
    assert asm.get_stream(NET, TRANS).complete
    assert not asm.get_stream(NET, other).complete
    assert len(asm.all_streams()) == 2


def test_handler_reads_whole_stream():
    done = threading.Event()
    results = []

    def handler(stream):
        results.append(stream.read())
        done.set()

    asm = Assembler(handler)
    asm.assemble(NET, TRANS, 5, b"ping", T0)
    asm.assemble(NET, TRANS, 9, b"pong", T0)
    flushed = asm.flush_all()
    assert flushed == 1
    assert done.wait(1.0)
    assert results == [b"pingpong"]
    stream = asm.get_stream(NET, TRANS)
    assert stream.data == b"pingpong"
    assert stream.byte_count == 8


def test_connection_reassembler():
    reassembler = ConnectionReassembler()
    pkt = Packet(
        index=1,
        timestamp=T0,
        src_ip=ipaddress.IPv4Address("10.0.0.1"),
        dst_ip=ipaddress.IPv4Address("10.0.0.2"),
        src_port=1234,
        dst_port=80,
        protocol=Protocol.TCP,
        captured_len=4,
    )
    reassembler.add_data(pkt, b"ping", True)
    reassembler.add_data(pkt, b"pong", False)

    conn = reassembler.get_connection(pkt.flow_key())
    assert conn is not None
    assert conn.client_data == b"ping"
    assert conn.server_data == b"pong"
    assert (conn.client_port, conn.server_port) == (1234, 80)
    assert len(reassembler.all()) == 1


def test_connection_reassembler_groups_both_directions():
    reassembler = ConnectionReassembler()
    a = ipaddress.IPv4Address("10.0.0.1")
    b = ipaddress.IPv4Address("10.0.0.2")
    reply = Packet(src_ip=b, dst_ip=a, src_port=80, dst_port=1234, protocol=Protocol.TCP)
    request = Packet(src_ip=a, dst_ip=b, src_port=1234, dst_port=80, protocol=Protocol.TCP)
    reassembler.add_data(reply, b"200", False)
    reassembler.add_data(request, b"GET", True)
    assert len(reassembler.all()) == 1
    conn = reassembler.get_connection(request.flow_key())
    assert conn.client_ip == a
    assert conn.client_data == b"GET"
    assert conn.server_data == b"200"
    assert reassembler.get_connection(("missing",)) is None