# trust_store.py
# Allow-list of accepted server certificate fingerprints (SHA-1 or SHA-256).

import threading

from log_utils import get_logger
from mailer_config import ALLOWED_CERTS_FILE

log = get_logger("tls_mailer.trust_store")

_SEPARATORS = (" ", ":", "-")


def normalize_fingerprint(text):
    """
    Strips spaces, colons and hyphens and upper-cases the rest.
    "AA:BB-cc dd" -> "AABBCCDD"
    """
    normalized = text.strip()
    for sep in _SEPARATORS:
        normalized = normalized.replace(sep, "")
    return normalized.upper()


def load_allowed_fingerprints(path=ALLOWED_CERTS_FILE):
    """
    Reads one fingerprint per line from the allow-list file.
    Blank lines and lines starting with '#' are skipped. A missing or unreadable
    file yields an empty set, so only system validation applies.
    """
    fingerprints = set()
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            for line in f:
                trimmed = line.strip()
                if not trimmed or trimmed.startswith("#"):
                    continue
                normalized = normalize_fingerprint(trimmed)
                if normalized:
                    fingerprints.add(normalized)
                    log.info(f"[whitelist] registered fingerprint: {normalized}")
        log.info(f"[whitelist] loaded {len(fingerprints)} fingerprint(s) from {path}")
    except FileNotFoundError:
        log.info(f"[whitelist] no allow-list at {path} - system validation only")
    except Exception as e:
        log.warning(f"[whitelist] failed to load {path}: {e}")
        fingerprints = set()
    return frozenset(fingerprints)


class TrustStore:
    """
    Process-wide set of trusted fingerprints.

    The set is loaded on first use and replaced wholesale by reload(). Readers get
    an immutable frozenset, so a reference obtained before a reload stays intact.
    The lock is also used by MailSender to guard its one-time validator registration.
    """
    def __init__(self, source=ALLOWED_CERTS_FILE, loader=load_allowed_fingerprints):
        self.source = source
        self.lock = threading.Lock()
        self._loader = loader
        self._fingerprints = None

    def get(self):
        fingerprints = self._fingerprints
        if fingerprints is not None:
            return fingerprints
        with self.lock:
            if self._fingerprints is None:
                self._fingerprints = self._loader(self.source)
            return self._fingerprints

    def reload(self, source=None):
        with self.lock:
            if source is not None:
                self.source = source
            self._fingerprints = self._loader(self.source)
        return self._fingerprints
