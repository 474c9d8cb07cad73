# mailer_config.py
# Configuration for the STARTTLS mailer, read from the environment.

import os
import tempfile

ALLOWED_CERTS_FILE = os.environ.get(
    "TLS_MAILER_ALLOWED_CERTS",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "allowed_certs.txt"),
)
LOG_FILE = os.environ.get(
    "TLS_MAILER_LOG_FILE",
    os.path.join(tempfile.gettempdir(), "TlsMailSender.log"),
)
CA_FILE = os.environ.get("TLS_MAILER_CA_FILE") or None

DEFAULT_SMTP_PORT = 25
DEFAULT_TIMEOUT = 300  # seconds


def _get_int_env(key, default):
    try:
        value = os.environ.get(key)
        return int(value) if value else default
    except ValueError:
        return default


def _get_bool_env(key, default):
    value = os.environ.get(key, "").strip().lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


class SmtpSettings:
    """
    SMTP connection settings loaded from environment variables.
    """
    def __init__(self):
        self.host = os.environ.get("SMTP_HOST", "")
        self.port = _get_int_env("SMTP_PORT", DEFAULT_SMTP_PORT)
        self.user = os.environ.get("SMTP_USER", "")
        self.password = os.environ.get("SMTP_PASS", "")
        self.use_tls = _get_bool_env("SMTP_USE_TLS", True)
        self.timeout = _get_int_env("SMTP_TIMEOUT", DEFAULT_TIMEOUT)
        self.mail_from = os.environ.get("MAIL_FROM", "")
        self.ca_file = os.environ.get("TLS_MAILER_CA_FILE") or CA_FILE

    def validate(self):
        missing = []
        if not self.host:
            missing.append("SMTP_HOST")
        if not self.mail_from:
            missing.append("MAIL_FROM")
        if missing:
            raise ValueError(f"Missing required SMTP configuration: {', '.join(missing)}")
        return self
