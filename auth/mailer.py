"""
auth/mailer.py -- Outbound transactional email over SMTP.

The identity core only ever sends one kind of message (the verification
link), so this is a thin wrapper around smtplib. When SMTP is not
configured (local development, tests) the message is logged instead of
sent, with the recipient redacted.

Failure policy: any SMTP or socket error becomes DependencyError. There is
no retry here; retrying is the caller's (or an operator's) decision.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from auth.errors import DependencyError

logger = logging.getLogger("staffgate.auth.mail")

_SMTP_TIMEOUT_SECONDS = 30


def redact_email(email: str) -> str:
    """ab***@domain -- enough to correlate logs without storing the address."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    """SMTP sender. Construct once at startup from Settings.

    Usage:
        mailer = Mailer(smtp_host="smtp.example.com", from_email="noreply@example.com")
        mailer.send_verification_email("a@x.com", "https://app/verify-email?token=...")
    """

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "Staffgate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings) -> "Mailer":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from,
            from_name=settings.mail_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send_verification_email(self, to_email: str, link: str) -> None:
        subject = "Verify your email address"
        text_body = (
            "Confirm that this address belongs to you by opening the link below.\n\n"
            f"{link}\n\n"
            "The link expires in 24 hours. If you did not create an account, ignore this message."
        )
        html_body = (
            "<p>Confirm that this address belongs to you by opening the link below.</p>"
            f'<p><a href="{link}">Verify email</a></p>'
            "<p>The link expires in 24 hours. If you did not create an account, ignore this message.</p>"
        )
        self.send(to_email, subject, html_body, text_body)

    def send(self, to_email: str, subject: str, html_body: str, text_body: str | None = None) -> None:
        """Send one message. Raises DependencyError on any transport failure."""
        if not self.is_configured:
            logger.info("SMTP not configured; email to %s not sent (subject=%r)", redact_email(to_email), subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT_SECONDS
                ) as server:
                    self._login(server)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email to %s failed: %s", redact_email(to_email), type(exc).__name__)
            raise DependencyError("Verification email could not be sent.") from exc

        logger.info("Email sent to %s (subject=%r)", redact_email(to_email), subject)

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
