"""Network packet analyzer: pcap/pcapng reading, decoding, filtering, export and live capture."""

__version__ = "0.1.0"