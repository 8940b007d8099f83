"""Serialise certificate keys for use with regular SSH tooling."""

import logging
import os
from pathlib import Path
from typing import Union

from cryptography.hazmat.primitives import serialization

from rdpssh_app.certificates import classify_key


def export_private_key(key: object) -> bytes:
    """Return ``key`` as an unencrypted PEM block.

    RSA keys are written as ``RSA PRIVATE KEY`` (PKCS#1) and ECDSA keys as
    ``EC PRIVATE KEY`` (SEC1). Any other key raises
    :class:`~rdpssh_app.errors.UnsupportedKeyType`.
    """
    classify_key(key)
    # TraditionalOpenSSL is PKCS#1 for RSA and SEC1 for EC keys
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def export_public_key(key: object) -> bytes:
    """Return the public half of ``key`` as an ``authorized_keys`` line."""
    classify_key(key)
    line = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return line + b"\n"


def write_key_file(file_path: Union[str, Path], data: bytes) -> Path:
    """Write exported key material verbatim, readable by the owner only."""
    logger = logging.getLogger(__name__)
    path = Path(file_path)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    logger.info("Key exported to %s", path)
    return path
