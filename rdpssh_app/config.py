"""Application configuration.

Two sources are used:

* ``config.ini`` - static tunables read with :mod:`configparser`
  (window geometry, tunnel endpoint, keepalive, host key policy, viewer
  command).
* ``settings.json`` - the last values entered in the connection form.
  The certificate password is never stored.
"""

import configparser
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from rdpssh_app.auth import CONNECT_TIMEOUT, HostKeyPolicy
from rdpssh_app.errors import InputError
from rdpssh_app.tunnel import KEEPALIVE_INTERVAL, REMOTE_HOST, REMOTE_PORT
from rdpssh_app.viewer import DEFAULT_VIEWER_COMMAND

CONFIG_FILE = "config.ini"
SETTINGS_FILE = "settings.json"
DEFAULT_LOCAL_PORT = "33890"

DEFAULT_SETTINGS: Dict[str, str] = {
    "remote_host": "",
    "remote_user": "",
    "local_port": DEFAULT_LOCAL_PORT,
    "p12_path": "",
}


@dataclass
class TunnelOptions:
    """Tunnel tunables from the ``[tunnel]``, ``[security]`` and ``[viewer]`` sections."""

    remote_host: str = REMOTE_HOST
    remote_port: int = REMOTE_PORT
    keepalive_interval: float = KEEPALIVE_INTERVAL
    connect_timeout: float = CONNECT_TIMEOUT
    host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY
    known_hosts_file: Optional[str] = None
    viewer_command: str = DEFAULT_VIEWER_COMMAND

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> "TunnelOptions":
        """Build options from ``cfg``, falling back to defaults for missing keys.

        Raises
        ------
        InputError
            If a value is present but unusable.
        """
        try:
            remote_port = cfg.getint("tunnel", "remote_port", fallback=REMOTE_PORT)
            keepalive = cfg.getfloat(
                "tunnel", "keepalive_interval", fallback=KEEPALIVE_INTERVAL
            )
            timeout = cfg.getfloat("tunnel", "connect_timeout", fallback=CONNECT_TIMEOUT)
        except ValueError as exc:
            raise InputError(f"invalid [tunnel] setting: {exc}") from exc
        if not 0 < remote_port < 65536:
            raise InputError(f"invalid remote_port: {remote_port}")
        if keepalive <= 0 or timeout <= 0:
            raise InputError("keepalive_interval and connect_timeout must be positive")
        policy_name = cfg.get(
            "security", "host_key_policy", fallback=HostKeyPolicy.ACCEPT_ANY.value
        )
        try:
            policy = HostKeyPolicy(policy_name.strip().lower())
        except ValueError:
            raise InputError(f"unknown host_key_policy: {policy_name}") from None
        return cls(
            remote_host=cfg.get("tunnel", "remote_host", fallback=REMOTE_HOST),
            remote_port=remote_port,
            keepalive_interval=keepalive,
            connect_timeout=timeout,
            host_key_policy=policy,
            known_hosts_file=cfg.get("security", "known_hosts_file", fallback=None) or None,
            viewer_command=cfg.get("viewer", "command", fallback=DEFAULT_VIEWER_COMMAND),
        )


def load_config(file_path: Union[str, Path] = CONFIG_FILE) -> configparser.ConfigParser:
    """Read ``config.ini``; a missing file yields an empty parser."""
    logger = logging.getLogger(__name__)
    cfg = configparser.ConfigParser()
    path = Path(file_path)
    if not path.exists():
        logger.info("Config file %s not found; using defaults", path)
        return cfg
    cfg.read(path, encoding="utf-8")
    return cfg


def load_settings(file_path: Union[str, Path] = SETTINGS_FILE) -> Dict[str, str]:
    """Load saved form values, merged over :data:`DEFAULT_SETTINGS`."""
    logger = logging.getLogger(__name__)
    settings = dict(DEFAULT_SETTINGS)
    path = Path(file_path)
    if not path.exists():
        logger.info("Settings file %s not found", path)
        return settings
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load settings from %s: %s", path, exc)
        return settings
    if not isinstance(data, dict):
        logger.warning("Settings file %s has invalid format", path)
        return settings
    for key in DEFAULT_SETTINGS:
        value = data.get(key)
        if value not in (None, ""):
            settings[key] = str(value)
    logger.info("Loaded settings from %s", path)
    return settings


def save_settings(
    settings: Dict[str, str], file_path: Union[str, Path] = SETTINGS_FILE
) -> None:
    """Persist form values; unknown keys and the password are dropped."""
    logger = logging.getLogger(__name__)
    path = Path(file_path)
    data = {key: str(settings.get(key, default)) for key, default in DEFAULT_SETTINGS.items()}
    try:
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        logger.info("Saved settings to %s", path)
    except OSError as exc:
        logger.exception("Failed to save settings: %s", exc)
