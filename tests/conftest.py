"""Shared fixtures: test certificates generated on the fly."""

import datetime
import os
import sys
import tempfile
from pathlib import Path

import pytest

os.environ.setdefault(
    "TLS_MAILER_LOG_FILE", os.path.join(tempfile.gettempdir(), "tls_mailer_tests.log")
)

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

NOW = datetime.datetime.now(datetime.timezone.utc)


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def make_certificate(common_name, issuer=None, dns_names=("mail.example.com",), ca=False,
                     not_before=None, not_after=None):
    """
    Returns (certificate, private_key). Self-signed when issuer is None,
    otherwise signed by issuer = (certificate, private_key).
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    issuer_cert, issuer_key = issuer if issuer else (None, key)
    issuer_name = issuer_cert.subject if issuer_cert else _name(common_name)
    issuer_public = issuer_key.public_key()

    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or NOW - datetime.timedelta(days=1))
        .not_valid_after(not_after or NOW + datetime.timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_public), critical=False)
    )
    if ca:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
    else:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=True,
                data_encipherment=False, key_agreement=False, key_cert_sign=False,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        ).add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )
    return builder.sign(issuer_key, hashes.SHA256()), key


def der(certificate):
    return certificate.public_bytes(serialization.Encoding.DER)


def thumbprint(certificate):
    return certificate.fingerprint(hashes.SHA1()).hex().upper()


class FakeCertificate:
    """Anything with fingerprint() works as a presented certificate."""

    def __init__(self, hex_digest):
        self._digest = bytes.fromhex(hex_digest)

    def fingerprint(self, algorithm):
        return self._digest


@pytest.fixture(scope="session")
def root_ca():
    return make_certificate("Test Root CA", ca=True, dns_names=())


@pytest.fixture(scope="session")
def server_cert(root_ca):
    return make_certificate("mail.example.com", issuer=root_ca)


@pytest.fixture(scope="session")
def self_signed_cert():
    return make_certificate("mail.example.com")


@pytest.fixture
def ca_file(tmp_path, root_ca):
    path = tmp_path / "roots.pem"
    path.write_bytes(root_ca[0].public_bytes(serialization.Encoding.PEM))
    return str(path)


@pytest.fixture
def allow_list(tmp_path):
    """Writes an allow-list file and returns its path."""

    def _write(*lines):
        path = tmp_path / "allowed_certs.txt"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)

    return _write
