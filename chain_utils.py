# chain_utils.py
# Standard chain-of-trust evaluation for a server certificate chain, using the
# cryptography X.509 path validator and the certifi root bundle.

import datetime
import enum
import functools
import hashlib
import ipaddress
from collections import namedtuple
from dataclasses import dataclass, field
from typing import List, Optional

import certifi
from cryptography import x509
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError


class PolicyErrors(enum.Flag):
    """
    Classification of what the standard validation found wrong with a handshake.
    """
    NONE = 0
    REMOTE_CERTIFICATE_NOT_AVAILABLE = enum.auto()
    REMOTE_CERTIFICATE_NAME_MISMATCH = enum.auto()
    REMOTE_CERTIFICATE_CHAIN_ERRORS = enum.auto()

    def describe(self):
        if not self:
            return "None"
        return ", ".join(
            member.name for member in type(self)
            if member.value and member in self
        )


ChainStatus = namedtuple("ChainStatus", ["status", "information"])


@dataclass
class ChainEvaluation:
    certificate: Optional[x509.Certificate]
    intermediates: List[x509.Certificate] = field(default_factory=list)
    policy_errors: PolicyErrors = PolicyErrors.NONE
    chain_status: List[ChainStatus] = field(default_factory=list)


@functools.lru_cache(maxsize=8)
def load_root_store(cafile=None):
    """
    Loads trusted roots from a PEM bundle (certifi's when cafile is None).
    Returns (Store, set of root SHA-256 digests).
    """
    path = cafile or certifi.where()
    with open(path, "rb") as f:
        roots = x509.load_pem_x509_certificates(f.read())
    digests = {hashlib.sha256(cert.tbs_certificate_bytes).digest() for cert in roots}
    return Store(roots), frozenset(digests)


def _parse_der(der_bytes):
    try:
        return x509.load_der_x509_certificate(der_bytes)
    except (TypeError, ValueError):
        return None


def _subject_alt_names(cert):
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return [], []
    return san.get_values_for_type(x509.DNSName), san.get_values_for_type(x509.IPAddress)


def _dns_name_matches(pattern, hostname):
    pattern = pattern.lower().rstrip(".")
    hostname = hostname.lower().rstrip(".")
    if not pattern.startswith("*."):
        return pattern == hostname
    # Wildcard covers exactly one leftmost label.
    suffix = pattern[1:]
    head, dot, rest = hostname.partition(".")
    return bool(head and dot) and "." + rest == suffix


def hostname_matches(cert, hostname):
    """
    Checks the hostname against the subjectAltName DNS and IP entries.
    The subject CN is not consulted; a certificate without SAN never matches.
    """
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        address = None

    dns_names, ip_addresses = _subject_alt_names(cert)
    if address is not None:
        return address in ip_addresses
    return any(_dns_name_matches(name, hostname) for name in dns_names)


def _verification_subject(cert, hostname, name_ok):
    """
    Picks the name handed to the path validator. The mismatch has already been
    recorded, so when the hostname does not match, a name the certificate does
    cover is used and the validator reports chain problems only:

    - its first non-wildcard DNS name, else
    - its first wildcard expanded with the hostname's leftmost label
      ("*.example.com" for host "smtp.other.org" gives "smtp.example.com"), else
    - its first IP address.
    """
    candidate = hostname
    if not name_ok:
        dns_names, ip_addresses = _subject_alt_names(cert)
        concrete = [name for name in dns_names if not name.startswith("*.")]
        if concrete:
            candidate = concrete[0]
        elif dns_names:
            label = hostname.split(".", 1)[0] or "host"
            candidate = label + dns_names[0][1:]
        elif ip_addresses:
            return x509.IPAddress(ip_addresses[0])
    try:
        return x509.IPAddress(ipaddress.ip_address(candidate))
    except ValueError:
        return x509.DNSName(candidate)


def _is_self_issued(cert):
    return cert.issuer == cert.subject


def _chain_status_entries(leaf, intermediates, root_digests, now, error):
    entries = []
    for cert in [leaf] + intermediates:
        if now < cert.not_valid_before_utc or now > cert.not_valid_after_utc:
            entries.append(ChainStatus(
                "NotTimeValid",
                f"{cert.subject.rfc4514_string()} is valid "
                f"{cert.not_valid_before_utc:%Y-%m-%d} ~ {cert.not_valid_after_utc:%Y-%m-%d}",
            ))
        if _is_self_issued(cert) and hashlib.sha256(cert.tbs_certificate_bytes).digest() not in root_digests:
            entries.append(ChainStatus(
                "UntrustedRoot",
                f"{cert.subject.rfc4514_string()} is self-signed and not a trusted root",
            ))
    if not entries:
        entries.append(ChainStatus("PartialChain", str(error)))
    return entries


def evaluate_chain(der_chain, hostname, cafile=None, now=None):
    """
    Runs the standard validation for a presented chain (leaf first, DER encoded).
    Never raises; any problem is reported through policy_errors and chain_status.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    der_chain = list(der_chain or [])

    leaf = _parse_der(der_chain[0]) if der_chain else None
    if leaf is None:
        return ChainEvaluation(
            certificate=None,
            policy_errors=PolicyErrors.REMOTE_CERTIFICATE_NOT_AVAILABLE,
        )
    intermediates = [cert for cert in map(_parse_der, der_chain[1:]) if cert is not None]
    result = ChainEvaluation(certificate=leaf, intermediates=intermediates)

    try:
        name_ok = hostname_matches(leaf, hostname)
    except Exception:
        name_ok = False
    if not name_ok:
        result.policy_errors |= PolicyErrors.REMOTE_CERTIFICATE_NAME_MISMATCH

    try:
        has_san = any(_subject_alt_names(leaf))
    except Exception:
        has_san = True  # malformed SAN: leave it to the path validator
    if not has_san:
        # The path validator refuses any server certificate without SAN.
        result.chain_status.append(ChainStatus(
            "NoSubjectAltName",
            f"{leaf.subject.rfc4514_string()} has no subjectAltName; names are not matched against the CN",
        ))
        return result

    try:
        store, root_digests = load_root_store(cafile)
    except Exception as e:
        result.policy_errors |= PolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS
        result.chain_status.append(ChainStatus("UntrustedRoot", f"cannot load trusted roots: {e}"))
        return result

    try:
        subject = _verification_subject(leaf, hostname, name_ok)
        verifier = (
            PolicyBuilder()
            .store(store)
            .time(now.astimezone(datetime.timezone.utc).replace(tzinfo=None))
            .build_server_verifier(subject)
        )
        verifier.verify(leaf, intermediates)
    except (VerificationError, ValueError, TypeError) as e:
        result.policy_errors |= PolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS
        result.chain_status.extend(
            _chain_status_entries(leaf, intermediates, root_digests, now, e)
        )
    return result
