# cert_validator.py
# Server certificate decision for STARTTLS connections: allow-listed fingerprints
# first, then the standard chain validation result.

import datetime
import enum
from dataclasses import dataclass, field
from typing import List, Optional

from cryptography.hazmat.primitives import hashes

from chain_utils import PolicyErrors
from log_utils import get_logger

log = get_logger("tls_mailer.validator")


class Outcome(enum.Enum):
    ACCEPT_WHITELISTED = "accept_whitelisted"
    ACCEPT_CHAIN_VALID = "accept_chain_valid"
    REJECT = "reject"

    @property
    def accepted(self):
        return self is not Outcome.REJECT


def certificate_fingerprints(certificate):
    """
    Returns the (SHA-1, SHA-256) upper-case hex digests of a certificate.
    SHA-1 is the conventional thumbprint. (None, None) if the certificate is
    missing or cannot be digested.
    """
    if certificate is None:
        return None, None
    try:
        sha1 = certificate.fingerprint(hashes.SHA1()).hex().upper()
    except Exception:
        return None, None
    try:
        sha256 = certificate.fingerprint(hashes.SHA256()).hex().upper()
    except Exception:
        sha256 = None
    return sha1, sha256


@dataclass
class ValidationDiagnostic:
    """
    Everything known about a rejected certificate at decision time.
    """
    fingerprint: Optional[str]
    policy_errors: PolicyErrors
    whitelisted: Optional[bool]
    whitelist_size: int
    sha256_fingerprint: Optional[str] = None
    subject: Optional[str] = None
    issuer: Optional[str] = None
    not_before: Optional[datetime.datetime] = None
    not_after: Optional[datetime.datetime] = None
    chain_status: List = field(default_factory=list)

    def lines(self, now=None):
        now = now or datetime.datetime.now(datetime.timezone.utc)
        if self.whitelisted is None:
            membership = "unknown"
        else:
            membership = "listed" if self.whitelisted else "not listed"
        if isinstance(self.policy_errors, PolicyErrors):
            errors = self.policy_errors.describe()
        else:
            errors = f"(unclassified: {self.policy_errors!r})"

        lines = [
            "=== certificate validation failed ===",
            f"fingerprint: {self.fingerprint or '(absent)'}",
            f"ssl policy errors: {errors}",
            f"whitelist membership: {membership}",
            f"whitelist size: {self.whitelist_size}",
        ]
        if self.sha256_fingerprint:
            lines.append(f"sha256 fingerprint: {self.sha256_fingerprint}")
        if self.subject is not None or self.issuer is not None:
            lines.append(f"subject: {self.subject or '(none)'}")
            lines.append(f"issuer: {self.issuer or '(none)'}")
        if self.not_before is not None and self.not_after is not None:
            lines.append(f"validity: {self.not_before:%Y-%m-%d} ~ {self.not_after:%Y-%m-%d}")
            lines.append(f"expired: {'yes' if now > self.not_after else 'no'}")
        if self.chain_status:
            lines.append("chain status:")
            for entry in self.chain_status:
                lines.append(f"  - {entry.status}: {entry.information}")
        return lines


def _describe_certificate(diagnostic, certificate):
    # Detail fields are best-effort; whatever fails to read stays None.
    for attr, read in (
        ("subject", lambda c: c.subject.rfc4514_string()),
        ("issuer", lambda c: c.issuer.rfc4514_string()),
        ("not_before", lambda c: c.not_valid_before_utc),
        ("not_after", lambda c: c.not_valid_after_utc),
    ):
        try:
            setattr(diagnostic, attr, read(certificate))
        except Exception:
            pass


class CertificateValidator:
    """
    Decides whether a presented server certificate is trusted.

    1. fingerprint in the trust store -> ACCEPT_WHITELISTED, whatever the policy errors
    2. policy errors exactly PolicyErrors.NONE -> ACCEPT_CHAIN_VALID
    3. otherwise (including a missing classification) -> REJECT, with a
       diagnostic record written to the log

    Holds no per-connection state and never modifies the trust store, so one
    instance serves concurrent handshakes.
    """
    def __init__(self, trust_store, on_reject=None, logger=None):
        self.trust_store = trust_store
        self.on_reject = on_reject
        self.log = logger or log

    def decide(self, certificate, chain, policy_errors):
        """
        certificate: the presented leaf (cryptography x509.Certificate) or None
        chain: chain-status entries from the standard validation (may be None)
        policy_errors: PolicyErrors for the handshake
        """
        sha1, sha256 = certificate_fingerprints(certificate)
        allowed = self.trust_store.get()

        if sha1 is not None and (sha1 in allowed or (sha256 is not None and sha256 in allowed)):
            self._emit(lambda: self.log.info(f"[validation] accepted by whitelist: {sha1}"))
            return Outcome.ACCEPT_WHITELISTED

        if policy_errors == PolicyErrors.NONE:
            return Outcome.ACCEPT_CHAIN_VALID

        diagnostic = ValidationDiagnostic(
            fingerprint=sha1,
            policy_errors=policy_errors,
            whitelisted=None if sha1 is None else False,
            whitelist_size=len(allowed),
            sha256_fingerprint=sha256,
            chain_status=list(chain or []),
        )
        if certificate is not None:
            _describe_certificate(diagnostic, certificate)
        self._emit(lambda: self._write_diagnostic(diagnostic))
        return Outcome.REJECT

    __call__ = decide

    def _write_diagnostic(self, diagnostic):
        for line in diagnostic.lines():
            self.log.warning(line)
        if self.on_reject is not None:
            self.on_reject(diagnostic)

    @staticmethod
    def _emit(write):
        # Logging never changes the decision.
        try:
            write()
        except Exception:
            pass
