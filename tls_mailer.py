# tls_mailer.py
# STARTTLS mail sending with allow-list aware server certificate validation.

import argparse
import mimetypes
import os
import re
import smtplib
import ssl
import sys
import traceback
from email.message import EmailMessage
from email.utils import formataddr

from cert_validator import CertificateValidator
from chain_utils import evaluate_chain
from log_utils import get_logger
from mailer_config import CA_FILE, DEFAULT_TIMEOUT, SmtpSettings
from trust_store import TrustStore

log = get_logger("tls_mailer.dispatch")

_ADDRESS_SEPARATORS = re.compile(r"[;,]")


def handshake_context():
    """
    TLS context for the STARTTLS upgrade. Verification is done after the
    handshake by the injected validator, before anything else is sent.
    """
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def peer_chain(sock):
    """
    Returns the DER chain the server presented, leaf first.
    Falls back to the leaf alone where the interpreter cannot expose the chain.
    """
    get_chain = getattr(sock, "get_unverified_chain", None)
    if get_chain is not None:
        chain = [cert for cert in (get_chain() or []) if isinstance(cert, bytes)]
        if chain:
            return chain
    leaf = sock.getpeercert(binary_form=True)
    return [leaf] if leaf else []


class VerifyingSMTP(smtplib.SMTP):
    """
    smtplib.SMTP whose STARTTLS upgrade is accepted or refused by a CertificateValidator.
    Without a validator it behaves like smtplib.SMTP.
    """
    def __init__(self, host="", port=0, validator=None, cafile=None, **kwargs):
        self.validator = validator
        self.cafile = cafile
        self.outcome = None
        super().__init__(host, port, **kwargs)

    def starttls(self, context=None):
        if self.validator is None:
            return super().starttls(context=context)

        reply = super().starttls(context=context or handshake_context())
        evaluation = evaluate_chain(peer_chain(self.sock), self._host, cafile=self.cafile)
        self.outcome = self.validator.decide(
            evaluation.certificate, evaluation.chain_status, evaluation.policy_errors
        )
        if not self.outcome.accepted:
            self.close()
            raise ssl.SSLCertVerificationError(
                f"server certificate for {self._host} was rejected"
            )
        return reply


def split_addresses(value):
    """
    Splits a ';' or ',' separated list, dropping blanks.
    """
    return [part.strip() for part in _ADDRESS_SEPARATORS.split(value or "") if part.strip()]


def build_message(sender, to, subject, body, from_display_name=None, to_display_name=None):
    """
    Builds an HTML message. Display names in to_display_name pair up with the
    recipients by position.
    """
    recipients = split_addresses(to)
    names = split_addresses(to_display_name)

    msg = EmailMessage()
    msg["From"] = formataddr((from_display_name.strip(), sender)) if from_display_name and from_display_name.strip() else sender
    if recipients:
        msg["To"] = ", ".join(
            formataddr((names[i], addr)) if i < len(names) else addr
            for i, addr in enumerate(recipients)
        )
    msg["Subject"] = subject or ""
    msg.set_content(body or "", subtype="html")
    return msg, recipients


def attach_files(msg, paths):
    """
    Reads each attachment fully into memory and adds it to the message.
    Blank paths are ignored, missing files are logged and skipped.
    """
    attached = 0
    for path in paths or []:
        if not path or not path.strip():
            continue
        if not os.path.isfile(path):
            log.warning(f"attachment not found: {path}")
            continue

        with open(path, "rb") as f:
            data = f.read()
        ctype, encoding = mimetypes.guess_type(path)
        if ctype is None or encoding is not None:
            ctype = "application/octet-stream"
        maintype, subtype = ctype.split("/", 1)
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=os.path.basename(path))
        attached += 1
    return attached


class MailSender:
    """
    Sends mail over SMTP, upgrading with STARTTLS when asked to.

    Construct one per process around the shared TrustStore and hand it to whoever
    sends mail. The certificate validator is created once, under the trust store's lock.
    """
    def __init__(self, trust_store, cafile=CA_FILE, timeout=DEFAULT_TIMEOUT, smtp_class=VerifyingSMTP):
        self.trust_store = trust_store
        self.cafile = cafile
        self.timeout = timeout
        self.smtp_class = smtp_class
        self._validator = None
        self._callback_registered = False

    def ensure_callback_registered(self):
        if not self._callback_registered:
            with self.trust_store.lock:
                if not self._callback_registered:
                    self._validator = CertificateValidator(self.trust_store)
                    self._callback_registered = True
        return self._validator

    def reload_trust_store(self, source=None):
        fingerprints = self.trust_store.reload(source)
        log.info(f"[whitelist] reloaded, {len(fingerprints)} fingerprint(s) active")
        return fingerprints

    def send_mail(self, smtp_server, smtp_port, smtp_user, smtp_pass, use_tls,
                  sender, to, subject, body, attachments=None):
        return self.send_mail_with_alias(
            smtp_server, smtp_port, smtp_user, smtp_pass, use_tls,
            sender, to, subject, body, attachments,
        )

    def send_mail_with_alias(self, smtp_server, smtp_port, smtp_user, smtp_pass, use_tls,
                             sender, to, subject, body, attachments=None,
                             from_display_name=None, to_display_name=None):
        """
        Returns True when the server accepted the message, False on any failure.
        Failures are written to the log, without the password.
        """
        try:
            validator = self.ensure_callback_registered() if use_tls else None

            msg, recipients = build_message(sender, to, subject, body, from_display_name, to_display_name)
            if not recipients:
                raise ValueError("no recipients given")
            attach_files(msg, attachments)

            with self.smtp_class(smtp_server, smtp_port, timeout=self.timeout,
                                 validator=validator, cafile=self.cafile) as smtp:
                smtp.ehlo()
                if use_tls:
                    smtp.starttls()
                    smtp.ehlo()
                if smtp_user:
                    smtp.login(smtp_user, smtp_pass or "")
                smtp.send_message(msg, from_addr=sender, to_addrs=recipients)

            log.info(f"mail sent to {', '.join(recipients)} via {smtp_server}:{smtp_port}")
            return True
        except Exception as e:
            self._log_failure(e, smtp_server, smtp_port, use_tls, sender, to, subject)
            return False

    def _log_failure(self, exc, smtp_server, smtp_port, use_tls, sender, to, subject):
        log.error("=== mail sending failed ===")
        log.error(f"exception type: {type(exc).__name__}")
        log.error(f"exception message: {exc}")
        cause = exc.__cause__ or exc.__context__
        if cause is not None:
            log.error(f"inner exception type: {type(cause).__name__}")
            log.error(f"inner exception message: {cause}")
        log.error(f"smtp server: {smtp_server}:{smtp_port}")
        log.error(f"tls: {use_tls}")
        log.error(f"from: {sender}")
        log.error(f"to: {to}")
        log.error(f"subject: {subject if subject is not None else '(none)'}")
        log.error("stack trace:")
        log.error("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip())


def main(argv=None):
    parser = argparse.ArgumentParser(description="Send mail over SMTP with STARTTLS.")
    parser.add_argument("--to", help="recipients, separated by ';' or ','")
    parser.add_argument("--to-name", help="recipient display names, same order as --to")
    parser.add_argument("--from-name", help="sender display name")
    parser.add_argument("--subject", default="")
    body = parser.add_mutually_exclusive_group()
    body.add_argument("--body", default="", help="HTML body")
    body.add_argument("--body-file", help="read the HTML body from a file")
    parser.add_argument("--attach", action="append", default=[], help="attachment path (repeatable)")
    parser.add_argument("--allowed-certs", help="fingerprint allow-list file")
    parser.add_argument("--reload-only", action="store_true",
                        help="load the allow-list, print what is trusted and exit")
    args = parser.parse_args(argv)

    trust_store = TrustStore(args.allowed_certs) if args.allowed_certs else TrustStore()

    if args.reload_only:
        fingerprints = trust_store.reload()
        print(f"[✓] {len(fingerprints)} trusted fingerprint(s) from {trust_store.source}")
        for fingerprint in sorted(fingerprints):
            print(f"  {fingerprint}")
        return 0

    if not args.to:
        parser.error("--to is required")

    settings = SmtpSettings().validate()
    mail_body = args.body
    if args.body_file:
        with open(args.body_file, "r", encoding="utf-8") as f:
            mail_body = f.read()

    sender = MailSender(trust_store, cafile=settings.ca_file, timeout=settings.timeout)
    ok = sender.send_mail_with_alias(
        settings.host, settings.port, settings.user, settings.password, settings.use_tls,
        settings.mail_from, args.to, args.subject, mail_body, args.attach,
        from_display_name=args.from_name, to_display_name=args.to_name,
    )
    if ok:
        print("[✓] Mail sent.")
        return 0
    print("[!] Mail sending failed, see the log for details.", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
