"""Tests for the local listener port range check."""

import configparser
from pathlib import Path
import sys

import pytest

# Ensure application importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from rdpssh_app.errors import InputError
from rdpssh_app.tunnel import validate_local_port


def _load_cfg() -> configparser.ConfigParser:
    cfg = configparser.ConfigParser()
    cfg.read(Path(__file__).with_name("tunnel_test_config.ini"))
    return cfg


def test_range_boundaries_accepted() -> None:
    ports = _load_cfg()["ports"]
    assert validate_local_port(ports["min"]) == 33890
    assert validate_local_port(ports["max"]) == 65000
    assert validate_local_port(ports.getint("min")) == 33890


@pytest.mark.parametrize("key", ["below_range", "above_range", "not_a_number"])
def test_values_outside_range_rejected(key) -> None:
    ports = _load_cfg()["ports"]
    with pytest.raises(InputError):
        validate_local_port(ports[key])


@pytest.mark.parametrize("value", [None, "", "  "])
def test_missing_port_rejected(value) -> None:
    with pytest.raises(InputError, match="required"):
        validate_local_port(value)
