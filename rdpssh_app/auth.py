"""SSH authentication using the key from a certificate bundle."""

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import paramiko

from rdpssh_app.certificates import CertificateBundle, KeyKind
from rdpssh_app.errors import AuthError, DialError, InputError, UnsupportedKeyType

DEFAULT_SSH_PORT = 22
CONNECT_TIMEOUT = 5.0
DEFAULT_KNOWN_HOSTS_FILE = "known_hosts"


class HostKeyPolicy(enum.Enum):
    """How the server's host key is verified."""

    # Any host key is accepted without being remembered. Insecure.
    ACCEPT_ANY = "accept-any"
    # First key seen for a host is stored; a different key later is rejected.
    TRUST_ON_FIRST_USE = "tofu"


@dataclass
class AuthConfig:
    """Everything needed to dial and authenticate one SSH session."""

    username: str
    pkey: paramiko.PKey
    timeout: float = CONNECT_TIMEOUT
    host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY
    known_hosts_file: Optional[Path] = None

    def apply(self, client: paramiko.SSHClient) -> None:
        """Install the host key policy on ``client``."""
        logger = logging.getLogger(__name__)
        if self.host_key_policy is HostKeyPolicy.TRUST_ON_FIRST_USE:
            path = Path(self.known_hosts_file or DEFAULT_KNOWN_HOSTS_FILE).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
            # AutoAddPolicy saves unknown keys back to this file; known
            # hosts presenting a different key raise BadHostKeyException.
            client.load_host_keys(str(path))
            logger.debug("Verifying host keys against %s", path)
        else:
            logger.warning("Host key verification disabled; any host key is accepted")
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())


def build_signer(bundle: CertificateBundle) -> paramiko.PKey:
    """Wrap the bundle's private key in the matching paramiko key class."""
    key = bundle.private_key
    try:
        if bundle.key_kind is KeyKind.RSA:
            return paramiko.RSAKey(key=key)
        if bundle.key_kind is KeyKind.ECDSA:
            return paramiko.ECDSAKey(vals=(key, key.public_key()))
    except (ValueError, TypeError, paramiko.SSHException) as exc:
        raise AuthError(f"failed to create signer from private key: {exc}") from exc
    raise UnsupportedKeyType(f"unsupported key type: {bundle.key_kind!r}")


def build_auth_config(
    username: str,
    bundle: CertificateBundle,
    timeout: float = CONNECT_TIMEOUT,
    host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY,
    known_hosts_file: Optional[Union[str, Path]] = None,
) -> AuthConfig:
    return AuthConfig(
        username=username,
        pkey=build_signer(bundle),
        timeout=timeout,
        host_key_policy=host_key_policy,
        known_hosts_file=Path(known_hosts_file) if known_hosts_file else None,
    )


def split_host_port(host: str, default_port: int = DEFAULT_SSH_PORT) -> Tuple[str, int]:
    """Split ``host`` into name and port, defaulting the port.

    Accepts ``name``, ``name:port``, ``[v6addr]:port`` and a bare IPv6
    address.
    """
    host = (host or "").strip()
    if not host:
        raise InputError("remote host is required")
    if host.startswith("["):
        end = host.find("]")
        if end == -1:
            raise InputError(f"invalid host address: {host}")
        name, rest = host[1:end], host[end + 1:]
        if not rest:
            return name, default_port
        if not rest.startswith(":"):
            raise InputError(f"invalid host address: {host}")
        port_text = rest[1:]
    elif host.count(":") == 1:
        name, port_text = host.split(":")
    else:
        return host, default_port
    if not name:
        raise InputError(f"invalid host address: {host}")
    try:
        port = int(port_text)
    except ValueError:
        raise InputError(f"invalid port in host address: {host}") from None
    if not 0 < port < 65536:
        raise InputError(f"invalid port in host address: {host}")
    return name, port


def format_address(name: str, port: int) -> str:
    if ":" in name:
        return f"[{name}]:{port}"
    return f"{name}:{port}"


def normalize_address(host: str) -> str:
    """Return ``host`` as ``name:port`` with port 22 filled in if missing."""
    return format_address(*split_host_port(host))


def open_client(
    host: str,
    config: AuthConfig,
    client_cls: type = paramiko.SSHClient,
) -> paramiko.SSHClient:
    """Dial ``host`` and authenticate with ``config``.

    Raises
    ------
    DialError
        The TCP connection or SSH handshake failed.
    AuthError
        The server rejected the key or presented an unexpected host key.
    """
    logger = logging.getLogger(__name__)
    name, port = split_host_port(host)
    address = format_address(name, port)
    client = client_cls()
    config.apply(client)
    logger.debug("Connecting to %s as %s", address, config.username)
    try:
        client.connect(
            name,
            port=port,
            username=config.username,
            pkey=config.pkey,
            timeout=config.timeout,
            banner_timeout=config.timeout,
            auth_timeout=config.timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except (paramiko.AuthenticationException, paramiko.BadHostKeyException) as exc:
        client.close()
        raise AuthError(
            f"authentication to {address} as {config.username} failed: {exc}"
        ) from exc
    except (paramiko.SSHException, OSError, EOFError) as exc:
        client.close()
        raise DialError(f"SSH dial to {address} failed: {exc}") from exc
    return client


def test_connection(
    host: str,
    username: str,
    bundle: CertificateBundle,
    client_cls: type = paramiko.SSHClient,
    **options,
) -> str:
    """Authenticate against ``host`` and disconnect straight away.

    Extra keyword arguments are passed to :func:`build_auth_config`.
    """
    logger = logging.getLogger(__name__)
    config = build_auth_config(username, bundle, **options)
    client = open_client(host, config, client_cls)
    client.close()
    logger.info("Test connection to %s as %s succeeded", host, username)
    return f"Successfully authenticated to {host} as {username}"


# Keep pytest from collecting this helper when it is imported by name
test_connection.__test__ = False
