"""Outbound email transport with encrypted SMTP credentials.

The SMTP password may be stored encrypted using Fernet (AES-128-CBC) derived
from SECRET_KEY. Transports raise DeliveryError on any failure; callers decide
whether that is recorded (outbox) or swallowed (operator alerts).
"""

import base64
import hashlib
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Protocol

from cryptography.fernet import Fernet

from ..config import settings

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Raised when the provider did not accept a message."""


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: str
    html: str = ""


class EmailTransport(Protocol):
    """Transport interface. Returns the provider message id."""

    def send(self, message: EmailMessage) -> str: ...


# ── Credential encryption ─────────────────────────────────────────────


def _derive_fernet_key(secret: str) -> bytes:
    """Derive a Fernet key from the app SECRET_KEY using SHA-256."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a string value using the app's SECRET_KEY."""
    f = Fernet(_derive_fernet_key(settings.secret_key))
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a string value using the app's SECRET_KEY."""
    f = Fernet(_derive_fernet_key(settings.secret_key))
    return f.decrypt(ciphertext.encode()).decode()


# ── Message building ───────────────────────────────────────────────────


def build_mime_message(message: EmailMessage, sender_address: str, sender_name: str) -> MIMEMultipart:
    """Build a multipart/alternative message with the usual anti-spam headers."""
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((sender_name, sender_address))
    msg["To"] = message.to
    msg["Reply-To"] = sender_address
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid(domain=sender_address.split("@")[-1] if "@" in sender_address else "local")
    msg["X-Mailer"] = "CityPing/2.0"
    msg["Subject"] = message.subject

    msg.attach(MIMEText(message.text, "plain", "utf-8"))
    if message.html:
        msg.attach(MIMEText(message.html, "html", "utf-8"))
    return msg


# ── SMTP transport ─────────────────────────────────────────────────────


class SmtpTransport:
    """SMTP with STARTTLS. The Message-ID header doubles as provider message id."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender_address: str,
        sender_name: str,
        timeout: int = 15,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._sender_address = sender_address
        self._sender_name = sender_name
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._user and self._password)

    def send(self, message: EmailMessage) -> str:
        if not self.configured:
            raise DeliveryError("SMTP not configured")

        msg = build_mime_message(message, self._sender_address, self._sender_name)

        # Fernet tokens start with 'gAAAAA'
        password = self._password
        if password.startswith("gAAAAA"):
            password = decrypt_value(password)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(self._user, password)
                refused = server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP send failed: {exc}") from exc

        if refused:
            raise DeliveryError(f"Recipient refused: {', '.join(refused)}")

        logger.debug("Sent '%s' to %s (%s)", message.subject, message.to, msg["Message-ID"])
        return msg["Message-ID"]


def create_transport() -> EmailTransport:
    """Factory: SMTP transport built from settings."""
    return SmtpTransport(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        sender_address=settings.sender_address,
        sender_name=settings.sender_name,
    )
