import os

import pytest

from wiretap import config as cfgmod
from wiretap.config import (
    Config,
    IndexConfig,
    default_config,
    default_config_path,
    expand_path,
    global_config,
    load,
    load_from_file,
    set_global,
)


def test_default_config():
    cfg = default_config()
    home = os.path.expanduser("~")
    assert cfg.index.directory == os.path.join(home, ".cache", "wiretap")
    assert cfg.index.auto_index_threshold == 10 * 1024 * 1024
    assert cfg.capture.promiscuous is True
    assert cfg.capture.snaplen == 65535
    assert cfg.tui.theme == "dark"
    assert cfg.tui.show_hex is True
    assert cfg.tui.local_time is True
    assert cfg.protocols.http.parse_h2c is True
    assert cfg.protocols.tls.parse_certificates is True
    assert cfg.protocols.tls.compute_ja3 is True


def test_load_valid_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        """
index:
  directory: /tmp/test-index
  auto_index_threshold: 500000
capture:
  promiscuous: false
  snaplen: 1500
  timeout: 250ms
tui:
  theme: light
  show_hex: false
  local_time: true
protocols:
  http:
    max_body_size: 2048
    parse_h2c: false
  tls:
    parse_certificates: true
    compute_ja3: false
"""
    )
    cfg = load_from_file(str(path))
    assert cfg.index.directory == "/tmp/test-index"
    assert cfg.index.auto_index_threshold == 500000
    assert cfg.capture.promiscuous is False
    assert cfg.capture.snaplen == 1500
    assert cfg.capture.timeout == pytest.approx(0.25)
    assert cfg.tui.theme == "light"
    assert cfg.tui.show_hex is False
    assert cfg.protocols.http.max_body_size == 2048
    assert cfg.protocols.tls.compute_ja3 is False
    assert cfg.logging.level == "info"


def test_load_from_default_path(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    cfg_dir = tmp_path / ".config" / "wiretap"
    cfg_dir.mkdir(parents=True)
    (cfg_dir / "config.yaml").write_text(
        "index:\n  directory: ~/indexes\nlogging:\n  file: ~/wiretap.log\n"
    )
    cfg = load()
    assert cfg.index.directory == os.path.join(str(tmp_path), "indexes")
    assert cfg.logging.file == os.path.join(str(tmp_path), "wiretap.log")
    assert global_config() is cfg


def test_ensure_index_dir(tmp_path):
    target = tmp_path / "test-cache" / "wiretap"
    cfg = Config(index=IndexConfig(directory=str(target)))
    cfg.ensure_index_dir()
    assert target.is_dir()
    cfg.ensure_index_dir()
    assert target.is_dir()


@pytest.mark.parametrize(
    "pcap", ["/path/to/capture.pcap", "/deeply/nested/path/to/capture.pcap"]
)
def test_index_path(pcap):
    cfg = Config(index=IndexConfig(directory="/tmp/test-index"))
    assert cfg.index_path(pcap) == "/tmp/test-index/capture.idx"


def test_default_config_path():
    path = default_config_path()
    assert ".config" in path
    assert path.endswith(os.path.join("wiretap", "config.yaml"))


def test_load_from_file_missing():
    with pytest.raises(OSError):
        load_from_file("/nonexistent/config.yaml")


def test_global_same_instance():
    set_global(None)
    first = global_config()
    assert first.capture.snaplen == 65535
    assert global_config() is first


def test_expand_path():
    home = os.path.expanduser("~")
    assert expand_path("~/test") == os.path.join(home, "test")
    assert expand_path("/absolute/path") == "/absolute/path"
    assert expand_path("relative/path") == "relative/path"
    assert expand_path("") == ""


def test_to_dict_keys():
    data = default_config().to_dict()
    assert set(data) == {
        "index", "capture", "tui", "protocols", "filter", "plugins", "export", "logging"
    }
    assert data["protocols"]["tls"]["keylog_file"] == ""


def test_parse_duration_values():
    assert cfgmod._parse_duration("1m30s") == pytest.approx(90.0)
    assert cfgmod._parse_duration(2) == 2.0
    with pytest.raises(ValueError):
        cfgmod._parse_duration("soon")