"""Shared fixtures producing keys and PKCS#12 bundles for the tests."""

import datetime
from pathlib import Path
import sys
from typing import Iterable, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

# Ensure application importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def make_certificate(
    key,
    common_name: Optional[str],
    emails: Iterable[str] = (),
    dns_names: Iterable[str] = (),
) -> x509.Certificate:
    """Return a self-signed certificate for ``key``."""
    attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, "RDPSSH Tests")]
    if common_name:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    name = x509.Name(attributes)
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
    )
    sans = [x509.RFC822Name(e) for e in emails] + [x509.DNSName(d) for d in dns_names]
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    return builder.sign(key, hashes.SHA256())


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def p12_factory(tmp_path):
    """Write PKCS#12 files; pass ``include_key``/``include_cert`` to drop parts."""
    counter = {"n": 0}

    def _make(
        key,
        password: str,
        common_name: Optional[str] = "Test User",
        emails: Iterable[str] = (),
        dns_names: Iterable[str] = (),
        include_key: bool = True,
        include_cert: bool = True,
    ) -> Path:
        cert = make_certificate(key, common_name, emails, dns_names)
        data = pkcs12.serialize_key_and_certificates(
            b"rdpssh-test",
            key if include_key else None,
            cert if include_cert else None,
            None,
            serialization.BestAvailableEncryption(password.encode("utf-8")),
        )
        counter["n"] += 1
        path = tmp_path / f"bundle{counter['n']}.p12"
        path.write_bytes(data)
        return path

    return _make
