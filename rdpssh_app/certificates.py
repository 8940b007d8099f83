"""Load PKCS#12 certificate bundles and derive the login identity from them."""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from rdpssh_app.errors import (
    DecodeError,
    FileReadError,
    MissingCertError,
    MissingKeyError,
    UnsupportedKeyType,
)

# Curves that have an ``ecdsa-sha2-*`` SSH key type
SSH_ECDSA_CURVES = frozenset({"secp256r1", "secp384r1", "secp521r1"})

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


class KeyKind(enum.Enum):
    """Closed set of private key variants usable for SSH authentication."""

    RSA = "rsa"
    ECDSA = "ecdsa"


def classify_key(key: object) -> KeyKind:
    """Return the :class:`KeyKind` of ``key``.

    Raises
    ------
    UnsupportedKeyType
        If ``key`` is not an RSA key or an ECDSA key on a curve supported
        by SSH (P-256, P-384, P-521).
    """
    if isinstance(key, rsa.RSAPrivateKey):
        return KeyKind.RSA
    if isinstance(key, ec.EllipticCurvePrivateKey):
        if key.curve.name not in SSH_ECDSA_CURVES:
            raise UnsupportedKeyType(f"unsupported ECDSA curve: {key.curve.name}")
        return KeyKind.ECDSA
    raise UnsupportedKeyType(f"unsupported key type: {type(key).__name__}")


@dataclass(frozen=True)
class CertificateBundle:
    """Private key and certificate decoded from one PKCS#12 file."""

    private_key: PrivateKey
    certificate: x509.Certificate
    common_name: str
    upn: str
    key_kind: KeyKind

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def issuer(self) -> str:
        return self.certificate.issuer.rfc4514_string()

    @property
    def serial_number(self) -> int:
        return self.certificate.serial_number

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc


def common_name_of(cert: x509.Certificate) -> str:
    """Return the first subject CN or an empty string."""
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return ""
    value = attrs[0].value
    return value.decode("utf-8") if isinstance(value, bytes) else value


def derive_upn(cert: x509.Certificate, common_name: str) -> str:
    """Pick the user principal name for ``cert``.

    Priority: first email SAN, first DNS SAN, the common name when it
    looks like an address, otherwise an empty string.
    """
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        san = None
    if san is not None:
        emails = san.value.get_values_for_type(x509.RFC822Name)
        if emails:
            return emails[0]
        dns_names = san.value.get_values_for_type(x509.DNSName)
        if dns_names:
            return dns_names[0]
    if "@" in common_name:
        return common_name
    return ""


def load_certificate_bundle(
    file_path: Union[str, Path], password: str
) -> CertificateBundle:
    """Decode the PKCS#12 file at ``file_path`` using ``password``.

    Parameters
    ----------
    file_path: str | Path
        Location of the ``.p12``/``.pfx`` file.
    password: str
        Password protecting the bundle. An empty string lets the decoder
        try both "no password" and the empty password.
    """
    logger = logging.getLogger(__name__)
    path = Path(file_path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise FileReadError(f"failed to read file {path}: {exc}") from exc

    secret = password.encode("utf-8") if password else None
    try:
        key, cert, _extra = pkcs12.load_key_and_certificates(data, secret)
    except ValueError as exc:
        raise DecodeError(f"failed to decode p12: {exc}") from exc

    if key is None:
        raise MissingKeyError("no private key found in p12")
    if cert is None:
        raise MissingCertError("no certificate found in p12")

    kind = classify_key(key)
    common_name = common_name_of(cert)
    bundle = CertificateBundle(
        private_key=key,
        certificate=cert,
        common_name=common_name,
        upn=derive_upn(cert, common_name),
        key_kind=kind,
    )
    logger.debug("Decoded %s bundle for CN '%s' from %s", kind.value, common_name, path)
    return bundle
