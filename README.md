# wiretap

A command-line network packet analyzer. It reads pcap and pcapng capture
files, decodes Ethernet, Linux cooked, BSD loopback and raw IP frames
(ARP, IPv4, IPv6, TCP, UDP, ICMP and ICMPv6 headers), filters packets by
protocol, address and port, exports them as JSON, JSON Lines or CSV, and
captures live traffic on Linux.

## Installation

```
pip install .
```

## Command line

```
wiretap --help
```

Global options: `--config FILE`, `-v/--verbose` and `--log-level LEVEL`.

### config

Show the resolved configuration as YAML, print the configuration path, or
write a default configuration file (an existing file is only replaced with
`--force`):

```
wiretap config
wiretap config --path
wiretap config --init --output ./config.yaml
```

### read

List the packets of a capture file in aligned columns (number, relative
time, source, destination, protocol, captured length, info):

```
wiretap read capture.pcap
wiretap read capture.pcap -c 100 --hex
wiretap read capture.pcap --protocol tcp --dst-port 80
wiretap read capture.pcap --skip 10 --src-ip 10.0.0.1 --no-summary
```

`--hex` prints a hex dump of each shown packet's payload.

### export

Write packets to a file as `json`, `jsonl` or `csv`:

```
wiretap export capture.pcap -o packets.json -f json --pretty
wiretap export capture.pcap -o packets.csv -f csv
wiretap export capture.pcap -o tcp.jsonl -f jsonl --protocol tcp -c 1000
```

### interfaces

List the host's network interfaces (aliases `if` and `ifaces`); `-V` adds
the interface flags and `--up` shows only interfaces that are up:

```
wiretap interfaces
wiretap if -V --up
```

### capture

Capture live traffic from an interface, optionally saving it to a pcap
file, until `-c` packets were seen, the `-t` duration (such as `30s` or
`1m30s`) has passed, or Ctrl+C is pressed:

```
wiretap capture -i eth0 -c 1000 -w capture.pcap
wiretap capture eth0 -t 30s --stats
```

Without an interface the first non-loopback one is used. Live capture uses
raw packet sockets, so it works on Linux only and needs the privileges to
open them.

## Configuration

Configuration is YAML and is looked up in `~/.config/wiretap/config.yaml`,
`/etc/wiretap/config.yaml` and `./config.yaml`; `--config` names a file
explicitly. Values not in the file keep their defaults, and a leading `~` in
the index directory and the log file is expanded to the home directory.
The capture section supplies the default interface, snapshot length,
promiscuous mode and read timeout for `wiretap capture`.

## Library use

```python
from wiretap.pcapfile import open_pcap, PacketIterator
from wiretap.display import format_addr, format_basic_info

with open_pcap("capture.pcap") as reader:
    for packet in PacketIterator(reader):
        print(
            packet.index,
            format_addr(packet.src_ip, packet.src_port),
            format_addr(packet.dst_ip, packet.dst_port),
            packet.protocol_name,
            format_basic_info(packet),
        )
```

Exporting a capture to JSON Lines:

```python
from wiretap.pcapfile import open_pcap
from wiretap.export import export_packets

with open_pcap("capture.pcap") as reader, open("out.jsonl", "w") as out:
    exported = export_packets(reader, out, "jsonl", 0, [], False)
print(f"Exported {exported} packets")
```

Modules:

- `wiretap.packet`: the `Packet` model, `TCPFlags`, `Protocol`, `LinkType`
  and `parse_packet`.
- `wiretap.pcapfile`: `open_pcap`, `PcapReader`, `PacketIterator`,
  `PcapWriter` (classic pcap output) and `get_file_info`.
- `wiretap.reassembly`: `Assembler` and `TCPStream` for ordering TCP
  segments, and `ConnectionReassembler` for collecting payload per
  connection and direction.
- `wiretap.capture`: `Capture`, `CaptureOptions`, `CaptureStats`,
  `list_interfaces` and `find_interface_by_name`.
- `wiretap.display`: `format_addr`, `format_basic_info`,
  `format_interface_flags`, `hex_dump` and `packet_matches_protocols`.
- `wiretap.export`: `ExportFormat`, `ExportPacket`, `to_export_packet` and
  `export_packets`.
- `wiretap.config`: the configuration dataclasses, `default_config`, `load`,
  `load_from_file` and `expand_path`.

## What it does not do

- No application-layer dissection: HTTP, HTTP/2, TLS, DNS, gRPC and
  WebSocket contents are not decoded, so protocol filters such as `http` or
  `tls` match only packets whose `application_protocol` was set by the
  caller. Transport filters (`tcp`, `udp`, `icmp`, ...) work on their own.
- No TLS decryption; `capture --decrypt/--keylog` only records the settings.
- No BPF filter expressions for reading or exporting; `capture -f` is
  rejected because the raw-socket capture source cannot apply one.
- No HAR export, no packet index files and no interactive terminal
  interface.

## Tests

```
pip install ".[test]"
pytest
```