"""Configuration loading, defaults and the process-wide configuration."""

from __future__ import annotations

import copy
import dataclasses
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_NAME = "config.yaml"


def _home() -> str:
    try:
        return str(Path.home())
    except (RuntimeError, KeyError):
        return ""


@dataclass
class IndexConfig:
    """Where index files live and when files are indexed automatically."""

    directory: str = ""
    auto_index_threshold: int = 10 * 1024 * 1024


@dataclass
class CaptureConfig:
    """Live capture settings; ``timeout`` is in seconds."""

    snaplen: int = 65535
    promiscuous: bool = True
    timeout: float = 1.0
    interface: str = ""


@dataclass
class TUIConfig:
    theme: str = "dark"
    show_hex: bool = True
    local_time: bool = True
    time_format: str = "relative"
    max_display: int = 0


@dataclass
class HTTPProtocolConfig:
    max_body_size: int = 1024 * 1024
    parse_h2c: bool = True


@dataclass
class TLSProtocolConfig:
    parse_certificates: bool = True
    compute_ja3: bool = True
    decrypt: bool = False
    keylog_file: str = ""


@dataclass
class DNSProtocolConfig:
    resolve_ptr: bool = False


@dataclass
class GRPCProtocolConfig:
    proto_dirs: list[str] = field(default_factory=list)
    proto_files: list[str] = field(default_factory=list)


@dataclass
class ProtocolsConfig:
    http: HTTPProtocolConfig = field(default_factory=HTTPProtocolConfig)
    tls: TLSProtocolConfig = field(default_factory=TLSProtocolConfig)
    dns: DNSProtocolConfig = field(default_factory=DNSProtocolConfig)
    grpc: GRPCProtocolConfig = field(default_factory=GRPCProtocolConfig)


@dataclass
class FilterConfig:
    """Include/exclude lists for domains, IPs and ports."""

    include_domains: list[str] = field(default_factory=list)
    exclude_domains: list[str] = field(default_factory=list)
    include_ips: list[str] = field(default_factory=list)
    exclude_ips: list[str] = field(default_factory=list)
    include_ports: list[str] = field(default_factory=list)
    exclude_ports: list[str] = field(default_factory=list)


@dataclass
class PluginsConfig:
    directory: str = ""
    enabled: list[str] = field(default_factory=list)


@dataclass
class ExportConfig:
    default_format: str = "json"
    pretty_json: bool = True


@dataclass
class LoggingConfig:
    level: str = "info"
    file: str = ""


@dataclass
class Config:
    """All settings of the program."""

    index: IndexConfig = field(default_factory=IndexConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    tui: TUIConfig = field(default_factory=TUIConfig)
    protocols: ProtocolsConfig = field(default_factory=ProtocolsConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    plugins: PluginsConfig = field(default_factory=PluginsConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def ensure_index_dir(self) -> None:
        """Create the index directory if it does not exist."""
        os.makedirs(self.index.directory, mode=0o755, exist_ok=True)

    def index_path(self, pcap_path: str) -> str:
        """Index file path for a capture file: ``<index dir>/<stem>.idx``."""
        base = os.path.basename(pcap_path.rstrip("/")) or "."
        dot = base.rfind(".")
        name = base[:dot] if dot >= 0 else base
        return os.path.join(self.index.directory, name + ".idx")

    def to_dict(self) -> dict[str, Any]:
        """Plain nested mapping suitable for YAML output."""
        return dataclasses.asdict(self)


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def _parse_duration(value: Any) -> float:
    """Seconds from a number or a duration string such as ``1m30s``."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text in ("0", ""):
        return 0.0
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return sign * total


def _convert(current: Any, raw: Any, owner: type, name: str) -> Any:
    """Convert ``raw`` to the kind of value held by ``current``."""
    if dataclasses.is_dataclass(current):
        return _build(type(current), raw)
    if owner is CaptureConfig and name == "timeout":
        return _parse_duration(raw)
    if isinstance(current, bool):
        return raw if isinstance(raw, bool) else str(raw).lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, str):
        return "" if raw is None else str(raw)
    if raw is None:
        return []
    if isinstance(raw, str):
        return [part.strip() for part in raw.split(",") if part.strip()]
    return [str(item) for item in raw]


def _build(cls: type, data: Any) -> Any:
    instance = cls()
    if not isinstance(data, dict):
        return instance
    lowered = {str(k).lower(): v for k, v in data.items()}
    for f in dataclasses.fields(cls):
        if f.name not in lowered:
            continue
        current = getattr(instance, f.name)
        setattr(instance, f.name, _convert(current, lowered[f.name], cls, f.name))
    return instance


def default_config() -> Config:
    """The built-in default configuration."""
    home = _home()
    cfg = Config()
    cfg.index.directory = os.path.join(home, ".cache", "wiretap")
    cfg.plugins.directory = os.path.join(home, ".config", "wiretap", "plugins")
    return cfg


_global: Config | None = None


def global_config() -> Config:
    """The process-wide configuration, created with defaults on first use."""
    global _global
    if _global is None:
        _global = default_config()
    return _global


def set_global(config: Config | None) -> None:
    """Replace the process-wide configuration."""
    global _global
    _global = config


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        key = str(key).lower()
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_path(path: str) -> Config:
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} does not hold a mapping")
    merged = _merge(default_config().to_dict(), data)
    cfg = _build(Config, merged)
    cfg.index.directory = expand_path(cfg.index.directory)
    if cfg.logging.file:
        cfg.logging.file = expand_path(cfg.logging.file)
    set_global(cfg)
    return cfg


def load() -> Config:
    """Load config.yaml from the usual places, or defaults when none exists."""
    search = [
        os.path.join(_home(), ".config", "wiretap"),
        "/etc/wiretap",
        ".",
    ]
    for directory in search:
        candidate = os.path.join(directory, CONFIG_NAME)
        if os.path.isfile(candidate):
            return _load_path(candidate)
    cfg = default_config()
    cfg.index.directory = expand_path(cfg.index.directory)
    set_global(cfg)
    return cfg


def load_from_file(path: str) -> Config:
    """Load configuration from one file; a missing file raises OSError."""
    return _load_path(path)


def default_config_path() -> str:
    return os.path.join(_home(), ".config", "wiretap", CONFIG_NAME)


def expand_path(path: str) -> str:
    """Replace a leading ``~`` with the home directory."""
    if not path or path[0] != "~":
        return path
    home = _home()
    if not home:
        return path
    rest = path[1:].lstrip("/")
    return os.path.normpath(os.path.join(home, rest)) if rest else os.path.normpath(home)