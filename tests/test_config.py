"""Tests verifying configuration values and saved form settings."""
import configparser
import json
import sys
from pathlib import Path

import pytest

# Ensure the application package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from rdpssh_app import ui
from rdpssh_app.auth import HostKeyPolicy
from rdpssh_app.config import (
    DEFAULT_SETTINGS,
    TunnelOptions,
    load_config,
    load_settings,
    save_settings,
)
from rdpssh_app.errors import InputError

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.ini"


def load_cfg():
    cfg = configparser.ConfigParser()
    cfg.read(CONFIG_PATH)
    return cfg


def _cfg_from(text: str) -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()
    cfg.read_string(text)
    return cfg


def test_geometry_matches_config():
    cfg = load_cfg()
    expected = f"{cfg.getint('ui', 'width')}x{cfg.getint('ui', 'height')}"
    assert ui.geometry_from_config(cfg) == expected


def test_geometry_defaults_without_ui_section():
    assert ui.geometry_from_config(configparser.ConfigParser()) == "480x420"


def test_config_contains_required_fields():
    cfg = load_cfg()
    assert cfg.has_section('ui'), "Missing 'ui' section in config.ini"
    assert cfg.get('ui', 'title'), "UI title must be set"
    assert cfg.has_section('tunnel'), "Missing 'tunnel' section in config.ini"
    assert cfg.has_section('security'), "Missing 'security' section in config.ini"
    assert cfg.get('viewer', 'command'), "Viewer command must be set"


def test_shipped_config_builds_default_options():
    options = TunnelOptions.from_config(load_config(CONFIG_PATH))
    assert options.remote_host == "localhost"
    assert options.remote_port == 3389
    assert options.keepalive_interval == 30.0
    assert options.connect_timeout == 5.0
    assert options.host_key_policy is HostKeyPolicy.ACCEPT_ANY
    assert options.known_hosts_file == "known_hosts"
    assert "{rdp_file}" in options.viewer_command


def test_options_from_empty_config_use_defaults():
    options = TunnelOptions.from_config(configparser.ConfigParser())
    assert options == TunnelOptions()


def test_options_parse_custom_values():
    cfg = _cfg_from(
        "[tunnel]\nremote_host = 10.0.0.5\nremote_port = 3390\n"
        "[security]\nhost_key_policy = TOFU\nknown_hosts_file = hosts.txt\n"
        "[viewer]\ncommand = xfreerdp /v:{address}\n"
    )
    options = TunnelOptions.from_config(cfg)
    assert options.remote_host == "10.0.0.5"
    assert options.remote_port == 3390
    assert options.host_key_policy is HostKeyPolicy.TRUST_ON_FIRST_USE
    assert options.known_hosts_file == "hosts.txt"
    assert options.viewer_command == "xfreerdp /v:{address}"


@pytest.mark.parametrize(
    "text",
    [
        "[tunnel]\nremote_port = rdp\n",
        "[tunnel]\nremote_port = 70000\n",
        "[tunnel]\nkeepalive_interval = 0\n",
        "[security]\nhost_key_policy = strict\n",
    ],
)
def test_invalid_options_raise_input_error(text):
    with pytest.raises(InputError):
        TunnelOptions.from_config(_cfg_from(text))


def test_missing_config_file_yields_empty_parser(tmp_path):
    cfg = load_config(tmp_path / "absent.ini")
    assert cfg.sections() == []


def test_settings_round_trip_drops_password(tmp_path):
    path = tmp_path / "settings.json"
    save_settings(
        {
            "remote_host": "gw.example.test",
            "remote_user": "jdoe",
            "local_port": "40000",
            "p12_path": "/certs/jdoe.p12",
            "password": "secret",
        },
        path,
    )
    stored = json.loads(path.read_text(encoding="utf-8"))
    assert "password" not in stored
    assert load_settings(path) == {
        "remote_host": "gw.example.test",
        "remote_user": "jdoe",
        "local_port": "40000",
        "p12_path": "/certs/jdoe.p12",
    }


def test_settings_defaults_when_missing_or_broken(tmp_path):
    assert load_settings(tmp_path / "none.json") == DEFAULT_SETTINGS
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert load_settings(broken) == DEFAULT_SETTINGS
    listing = tmp_path / "list.json"
    listing.write_text("[]", encoding="utf-8")
    assert load_settings(listing) == DEFAULT_SETTINGS


def test_empty_saved_values_keep_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"local_port": "", "remote_host": "gw"}), encoding="utf-8")
    settings = load_settings(path)
    assert settings["local_port"] == DEFAULT_SETTINGS["local_port"]
    assert settings["remote_host"] == "gw"
