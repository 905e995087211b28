"""
auth/mailer.py -- Outbound mail for reset links and MFA codes.

SMTP with STARTTLS through smtplib. When SMTP_HOST/MAIL_FROM are not
configured (local development) the mailer logs a redacted notice instead of
sending; the secret itself is never written to the log.

Every send is best-effort from the caller's point of view: routes schedule
dispatch() as a background task after the response is decided, and
dispatch() logs and swallows delivery errors so nothing about delivery can
reach the client.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage

from auth.audit import mask_email
from core.config import Settings

logger = logging.getLogger("movex.auth.mailer")


class ResetMailer:
    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResetMailer":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, subject: str, body: str) -> None:
        """Send one plain-text message. Raises on delivery failure."""
        if not self.is_configured:
            logger.info("SMTP not configured; skipped %r to %s", subject, mask_email(to_email, production=True))
            return
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg.set_content(body)
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
            if self.smtp_use_tls:
                smtp.starttls(context=ssl.create_default_context())
            if self.smtp_user:
                smtp.login(self.smtp_user, self.smtp_password)
            smtp.send_message(msg)

    def send_password_reset(self, to_email: str, reset_link: str, ttl_minutes: int) -> None:
        body = (
            "A password reset was requested for your MoveX account.\n\n"
            f"Open this link within {ttl_minutes} minutes to choose a new password:\n{reset_link}\n\n"
            "If you did not request this, ignore this message; your password is unchanged."
        )
        self.send(to_email, "Reset your MoveX password", body)

    def send_mfa_code(self, to_email: str, code: str, ttl_minutes: int) -> None:
        body = f"Your MoveX verification code is {code}. It expires in {ttl_minutes} minutes."
        self.send(to_email, "Your MoveX verification code", body)


def dispatch(send, *args, user_id: int | None = None) -> None:
    """Run a mailer call, logging instead of raising on failure."""
    try:
        send(*args)
    except Exception:  # any delivery error stays server-side
        logger.exception("Mail dispatch failed for user_id=%s", user_id)
