"""Command-line interface of the packet analyzer."""

from __future__ import annotations

import argparse
import contextlib
import ipaddress
import os
import signal
import sys
import threading
import time
from typing import Callable, Iterable, Optional, Sequence

import yaml

from .capture import (
    Capture,
    CaptureError,
    CaptureNotRunningError,
    CaptureOptions,
    list_interfaces,
)
from .config import (
    Config,
    _parse_duration,
    default_config,
    default_config_path,
    load,
    load_from_file,
    set_global,
)
from .display import (
    format_addr,
    format_basic_info,
    format_interface_flags,
    hex_dump,
    packet_matches_protocols,
)
from .export import ExportFormat, export_packets
from .packet import LinkType, Packet
from .pcapfile import CaptureInfo, PacketIterator, PcapWriter, open_pcap

_DESCRIPTION = """\
A command-line network packet analyzer.

It can capture live network traffic, read pcap files, and display
packet information.

Examples:
  wiretap interfaces
  wiretap capture -i en0 -w capture.pcap
  wiretap read capture.pcap
  wiretap export capture.pcap -o packets.json -f json
"""


def _duration(text: str) -> float:
    try:
        return _parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _split(values: Optional[Iterable[str]]) -> list[str]:
    """Flatten repeated, comma-separated option values."""
    return [part.strip() for value in values or [] for part in value.split(",") if part.strip()]


def _render_table(rows: Sequence[Sequence[str]]) -> list[str]:
    """Align all cells but the last of each row, two spaces apart."""
    widths: dict[int, int] = {}
    for row in rows:
        for pos, cell in enumerate(row[:-1]):
            widths[pos] = max(widths.get(pos, 0), len(cell))
    return [
        "".join(cell.ljust(widths[pos] + 2) for pos, cell in enumerate(row[:-1])) + (row[-1] if row else "")
        for row in rows
    ]


def _format_duration(seconds: float) -> str:
    millis = round(seconds * 1000)
    if millis == 0:
        return "0s"
    if millis < 1000:
        return f"{millis}ms"
    text = f"{millis / 1000:.3f}".rstrip("0").rstrip(".")
    return f"{text}s"


def resolve_config_path(output: Optional[str], config_file: Optional[str]) -> str:
    """The explicit output path, else the --config file, else the default path."""
    if output:
        return output
    if config_file:
        return config_file
    return default_config_path()


def write_default_config(path: str, force: bool) -> None:
    """Write the default configuration as YAML; refuses to overwrite unless forced."""
    if not force and os.path.exists(path):
        raise FileExistsError(f"config file already exists: {path} (use --force to overwrite)")
    data = yaml.safe_dump(default_config().to_dict(), sort_keys=False)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, mode=0o755, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(data)
    print(f"Wrote config to {path}")


def _init_config(config_file: Optional[str], log_level: Optional[str]) -> Config:
    try:
        cfg = load_from_file(config_file) if config_file else load()
    except (OSError, ValueError, yaml.YAMLError):
        cfg = default_config()
    if log_level is not None:
        cfg.logging.level = log_level
    set_global(cfg)
    return cfg


def _run_config(args: argparse.Namespace, cfg: Config) -> int:
    path = resolve_config_path(args.output, args.config)
    if args.path:
        print(path)
        return 0
    if args.init:
        write_default_config(path, args.force)
        return 0
    print(yaml.safe_dump(cfg.to_dict(), sort_keys=False))
    return 0


def _parse_ip(text: str, which: str):
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        raise ValueError(f"invalid {which} IP: {text}") from None


def _run_read(args: argparse.Namespace, cfg: Config) -> int:
    src_ip = _parse_ip(args.src_ip, "source") if args.src_ip else None
    dst_ip = _parse_ip(args.dst_ip, "destination") if args.dst_ip else None
    protocols = _split(args.protocol)

    with open_pcap(args.file) as reader:
        if args.summary:
            link = reader.link_type
            print(f"File: {args.file}")
            print(f"Link type: {getattr(link, 'name', link)}")
            print()

        pending: list[list[str]] = [
            ["No.", "Time", "Source", "Destination", "Protocol", "Length", "Info"],
            ["---", "----", "------", "-----------", "--------", "------", "----"],
        ]

        def flush() -> None:
            for line in _render_table(pending):
                print(line)
            pending.clear()

        iterator = PacketIterator(reader)
        displayed = 0
        first_time = None
        for pkt in iterator:
            if pkt.index <= args.skip:
                continue
            if src_ip is not None and pkt.src_ip != src_ip:
                continue
            if dst_ip is not None and pkt.dst_ip != dst_ip:
                continue
            if args.src_port > 0 and pkt.src_port != args.src_port:
                continue
            if args.dst_port > 0 and pkt.dst_port != args.dst_port:
                continue
            if not packet_matches_protocols(pkt, protocols):
                continue

            displayed += 1
            if first_time is None:
                first_time = pkt.timestamp
            relative = (pkt.timestamp - first_time).total_seconds()
            pending.append([
                str(pkt.index),
                f"{relative:.6f}",
                format_addr(pkt.src_ip, pkt.src_port),
                format_addr(pkt.dst_ip, pkt.dst_port),
                pkt.protocol_name,
                str(pkt.captured_len),
                format_basic_info(pkt),
            ])

            if args.hex and pkt.payload:
                flush()
                print(hex_dump(pkt.payload))
                print()

            if args.count > 0 and displayed >= args.count:
                break

        flush()
        print(f"\nDisplayed {displayed} of {iterator.count} packets")
    return 0


def _run_export(args: argparse.Namespace, cfg: Config) -> int:
    fmt = ExportFormat.parse(args.format)
    with open_pcap(args.file) as reader, open(args.output, "w", encoding="utf-8", newline="") as out:
        exported = export_packets(reader, out, fmt, args.count, _split(args.protocol), args.pretty)
    print(f"Exported {exported} packets to {args.output}")
    return 0


def _run_interfaces(args: argparse.Namespace, cfg: Config) -> int:
    interfaces = list_interfaces()
    if not interfaces:
        print("No network interfaces found")
        return 0

    if args.detail:
        rows = [["Name", "Description", "Flags", "Addresses"], ["----", "-----------", "-----", "---------"]]
    else:
        rows = [["Name", "Description", "Addresses"], ["----", "-----------", "---------"]]

    for iface in interfaces:
        if args.up and not iface.flags & 0x1:
            continue
        addresses = ", ".join(addr.ip for addr in iface.addresses) or "-"
        description = iface.description or "-"
        if args.detail:
            rows.append([iface.name, description, format_interface_flags(iface.flags), addresses])
        else:
            rows.append([iface.name, description, addresses])

    for line in _render_table(rows):
        print(line)
    return 0


def _pick_interface() -> str:
    interfaces = list_interfaces()
    if not interfaces:
        raise CaptureError("no network interfaces found")
    for iface in interfaces:
        if iface.name not in ("lo", "lo0"):
            return iface.name
    return interfaces[0].name


def _run_capture(
    args: argparse.Namespace,
    cfg: Config,
    capture_factory: Callable[[CaptureOptions], Capture] = Capture,
) -> int:
    interface = args.interface or ""
    if args.interface is None and cfg.capture.interface:
        interface = cfg.capture.interface
    snaplen = args.snaplen if args.snaplen is not None else cfg.capture.snaplen
    promiscuous = args.promisc if args.promisc is not None else cfg.capture.promiscuous
    read_timeout = cfg.capture.timeout if cfg.capture.timeout > 0 else 1.0

    decrypt = args.decrypt
    if decrypt and not args.keylog:
        raise ValueError("--decrypt requires --keylog to specify the key log file")
    if args.keylog:
        decrypt = True

    if not interface and args.interface_arg:
        interface = args.interface_arg
    if not interface:
        interface = _pick_interface()

    options = CaptureOptions(
        interface=interface,
        promiscuous=promiscuous,
        snaplen=snaplen,
        timeout=read_timeout,
        bpf_filter=args.filter,
        tls_decrypt=decrypt,
        tls_keylog_file=args.keylog,
        grpc_proto_dirs=_split(args.proto_dir),
        grpc_proto_files=_split(args.proto_file),
    )
    capture = capture_factory(options)

    writer: Optional[PcapWriter] = None
    if args.write:
        writer = PcapWriter(open(args.write, "wb"), LinkType.ETHERNET)

    done = threading.Event()
    lock = threading.Lock()
    counted = 0
    limit = args.count
    verbose = args.verbose

    def handler(pkt: Packet) -> None:
        nonlocal counted
        with lock:
            counted += 1
            number = counted
        if writer is not None:
            try:
                writer.write_packet(CaptureInfo(pkt.timestamp, pkt.captured_len, pkt.length), pkt.data)
            except (OSError, ValueError) as exc:
                print(f"Error writing packet: {exc}", file=sys.stderr)
        if verbose:
            print(f"{number}\t{pkt.timestamp.strftime('%H:%M:%S.%f')}\t{len(pkt.data)} bytes")
        elif number % 100 == 0:
            print(f"\rCaptured {number} packets...", end="", flush=True)
        if limit > 0 and number >= limit:
            done.set()

    print(f"Capturing on interface {interface}")
    if args.filter:
        print(f"Filter: {args.filter}")
    if args.write:
        print(f"Writing to: {args.write}")
    print("Press Ctrl+C to stop")
    print()

    previous_term = None
    in_main = threading.current_thread() is threading.main_thread()
    started = time.monotonic()
    try:
        if in_main:
            previous_term = signal.signal(signal.SIGTERM, lambda *_: done.set())
        capture.set_handler(handler)
        capture.start()
        try:
            done.wait(args.timeout if args.timeout > 0 else None)
        except KeyboardInterrupt:
            print("\nStopping capture...")
        with contextlib.suppress(CaptureNotRunningError):
            capture.stop()
    finally:
        if in_main and previous_term is not None:
            signal.signal(signal.SIGTERM, previous_term)
        if writer is not None:
            writer.close()

    duration = time.monotonic() - started
    with lock:
        total = counted
    print("\n\nCapture complete:")
    print(f"  Packets: {total}")
    print(f"  Duration: {_format_duration(duration)}")
    if total > 0 and duration > 0:
        print(f"  Rate: {total / duration:.2f} packets/sec")
    if args.stats:
        stats = capture.stats()
        print(f"  Received: {stats.packets_received}")
        print(f"  Dropped: {stats.packets_dropped}")
        print(f"  Interface drops: {stats.packets_if_dropped}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """The argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="wiretap",
        description=_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="", help="config file (default is $HOME/.config/wiretap/config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable verbose output")
    parser.add_argument("--log-level", default=None, help="log level (debug, info, warn, error)")
    sub = parser.add_subparsers(dest="command", metavar="command")

    cap = sub.add_parser("capture", help="capture network packets")
    cap.add_argument("interface_arg", nargs="?", default="", metavar="interface")
    cap.add_argument("-i", "--interface", default=None, help="network interface to capture from")
    cap.add_argument("-f", "--filter", default="", help="BPF filter expression")
    cap.add_argument("-w", "--write", default="", help="write packets to file (pcap format)")
    cap.add_argument("-c", "--count", type=int, default=0, help="number of packets to capture (0 = unlimited)")
    cap.add_argument("-s", "--snaplen", type=int, default=None, help="snapshot length (bytes per packet)")
    cap.add_argument("-t", "--timeout", type=_duration, default=0.0, help="capture duration (0 = unlimited)")
    cap.add_argument("--promisc", action=argparse.BooleanOptionalAction, default=None, help="promiscuous mode")
    cap.add_argument("--stats", action="store_true", help="show capture statistics on exit")
    cap.add_argument("--decrypt", action="store_true", help="enable TLS decryption (requires --keylog)")
    cap.add_argument("--keylog", default="", help="path to NSS SSLKEYLOGFILE for TLS decryption")
    cap.add_argument("--proto-dir", action="append", help="directories with descriptor sets for gRPC decoding")
    cap.add_argument("--proto-file", action="append", help="descriptor sets for gRPC decoding")
    cap.set_defaults(handler=_run_capture)

    cfg = sub.add_parser("config", help="view or initialize configuration")
    cfg.add_argument("--init", action="store_true", help="write a default config file")
    cfg.add_argument("--force", action="store_true", help="overwrite existing config file when using --init")
    cfg.add_argument("--path", action="store_true", help="print the default config file path")
    cfg.add_argument("-o", "--output", default="", help="output path for --init")
    cfg.set_defaults(handler=_run_config)

    read = sub.add_parser("read", help="read and analyze a pcap file")
    read.add_argument("file")
    read.add_argument("-c", "--count", type=int, default=0, help="number of packets to display (0 = all)")
    read.add_argument("--skip", type=int, default=0, help="skip first N packets")
    read.add_argument("--hex", action="store_true", help="show hex dump of packet payload")
    read.add_argument("--summary", action=argparse.BooleanOptionalAction, default=True, help="show file summary")
    read.add_argument("--protocol", action="append", help="filter by protocol (http, tls, dns, tcp, udp, icmp, ...)")
    read.add_argument("--src-ip", default="", help="filter by source IP")
    read.add_argument("--dst-ip", default="", help="filter by destination IP")
    read.add_argument("--src-port", type=int, default=0, help="filter by source port")
    read.add_argument("--dst-port", type=int, default=0, help="filter by destination port")
    read.set_defaults(handler=_run_read)

    ifaces = sub.add_parser("interfaces", aliases=["if", "ifaces"], help="list available network interfaces")
    ifaces.add_argument("-V", "--verbose", dest="detail", action="store_true", help="show interface flags")
    ifaces.add_argument("--up", action="store_true", help="show only interfaces that are up")
    ifaces.set_defaults(handler=_run_interfaces)

    export = sub.add_parser("export", help="export packet data to JSON, CSV or JSONL")
    export.add_argument("file")
    export.add_argument("-o", "--output", required=True, help="output file")
    export.add_argument("-f", "--format", default="json", help="output format (json, csv, jsonl)")
    export.add_argument("-c", "--count", type=int, default=0, help="maximum packets to export (0 = all)")
    export.add_argument("--protocol", action="append", help="filter by protocol")
    export.add_argument("--pretty", action="store_true", help="pretty-print JSON output")
    export.set_defaults(handler=_run_export)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command line; returns the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0
    cfg = _init_config(args.config, args.log_level)
    try:
        return args.handler(args, cfg) or 0
    except (CaptureError, OSError, ValueError) as exc:
        print(exc, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())