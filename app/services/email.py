"""SMTP notification sink. Logs messages instead of sending when SMTP is not configured (dev)."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from app.config import Settings

logger = logging.getLogger(__name__)


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpEmailSender:
    """Delivers (recipient, subject, html body) over SMTP with STARTTLS or implicit TLS."""

    def __init__(
        self,
        *,
        host: str = "",
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "",
        from_name: str = "Account Guard",
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email or user
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpEmailSender":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from,
            from_name=settings.mail_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    async def send(self, recipient: str, subject: str, body: str) -> None:
        if not self.is_configured:
            logger.info(
                "SMTP not configured; email to %s not sent. Subject: %s\n%s",
                redact_email(recipient),
                subject,
                body,
            )
            return
        await asyncio.to_thread(self._send_sync, recipient, subject, body)
        logger.info("Email sent to %s: %s", redact_email(recipient), subject)

    def _build_message(self, recipient: str, subject: str, body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg.attach(MIMEText(body, "html", "utf-8"))
        return msg

    def _send_sync(self, recipient: str, subject: str, body: str) -> None:
        msg = self._build_message(recipient, subject, body)
        context = ssl.create_default_context()
        if self.use_tls:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, recipient, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, recipient, msg.as_string())
