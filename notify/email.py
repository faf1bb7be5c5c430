"""
notify/email.py -- Verification and password-reset email delivery.

EmailGateway is the narrow contract AuthService depends on. Both methods are
best-effort from the caller's point of view: they raise NotificationError on
any delivery problem and AuthService decides whether that is fatal.

Implementations:
  SendGridGateway -- SendGrid v3 mail/send over a shared requests.Session.
  LogOnlyGateway  -- development fallback when SENDGRID_API_KEY is empty.
                     Logs the link instead of sending it.

Gateway calls are made after the store transaction has committed, never
inside it, so a slow provider cannot hold database locks.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests

logger = logging.getLogger("authgate.notify")

SENDGRID_API = "https://api.sendgrid.com/v3/mail/send"


class NotificationError(Exception):
    """Delivery failed. The message is safe to log; it never contains the link."""


class EmailGateway(Protocol):
    def send_verification_email(self, to: str, link: str, display_name: str | None) -> None: ...

    def send_password_reset_email(self, to: str, link: str, display_name: str | None) -> None: ...


# ---------------------------------------------------------------------------
# Message bodies
# ---------------------------------------------------------------------------


def _greeting(display_name: str | None) -> str:
    return f"Hi {display_name}," if display_name else "Hi,"


def verification_message(link: str, display_name: str | None) -> tuple[str, str]:
    """Return (subject, plain-text body) for an email verification message."""
    body = (
        f"{_greeting(display_name)}\n\n"
        "Please confirm your email address by opening the link below:\n\n"
        f"{link}\n\n"
        "If you did not create an account, you can ignore this email."
    )
    return "Verify your email address", body


def password_reset_message(link: str, display_name: str | None) -> tuple[str, str]:
    """Return (subject, plain-text body) for a password reset message."""
    body = (
        f"{_greeting(display_name)}\n\n"
        "We received a request to reset your password. Open the link below to choose a new one:\n\n"
        f"{link}\n\n"
        "The link expires soon and can be used once. If you did not request a reset, "
        "you can ignore this email; your password has not been changed."
    )
    return "Reset your password", body


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class SendGridGateway:
    """Deliver mail through the SendGrid v3 HTTP API.

    One requests.Session per gateway for connection pooling. max_redirects=0:
    the API never redirects, and following one could leak the bearer key.
    """

    def __init__(self, api_key: str, from_email: str, from_name: str, timeout: float = 10.0) -> None:
        self._from = {"email": from_email, "name": from_name}
        self._timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 0
        self._session.headers.update({"Authorization": f"Bearer {api_key}"})

    def send_verification_email(self, to: str, link: str, display_name: str | None) -> None:
        subject, body = verification_message(link, display_name)
        self._send(to, display_name, subject, body)

    def send_password_reset_email(self, to: str, link: str, display_name: str | None) -> None:
        subject, body = password_reset_message(link, display_name)
        self._send(to, display_name, subject, body)

    def _send(self, to: str, display_name: str | None, subject: str, body: str) -> None:
        recipient = {"email": to}
        if display_name:
            recipient["name"] = display_name
        payload = {
            "personalizations": [{"to": [recipient]}],
            "from": self._from,
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        try:
            resp = self._session.post(SENDGRID_API, json=payload, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise NotificationError(f"SendGrid delivery failed: {exc.__class__.__name__}") from exc

    def close(self) -> None:
        self._session.close()


class LogOnlyGateway:
    """Write links to the log instead of sending them. Development only."""

    def send_verification_email(self, to: str, link: str, display_name: str | None) -> None:
        logger.info("[dev mail] verification for %s: %s", to, link)

    def send_password_reset_email(self, to: str, link: str, display_name: str | None) -> None:
        logger.info("[dev mail] password reset for %s: %s", to, link)
