from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from functools import lru_cache
from typing import Protocol

from notifier.core.config import get_settings

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Base mailer error."""


class MailerNotConfiguredError(MailerError):
    """Raised when SMTP host or port is missing."""


class MailDeliveryError(MailerError):
    """Raised when the SMTP server rejects or drops the message."""


class CodeMailer(Protocol):
    async def send_code(self, *, to_address: str, code: str, ttl_minutes: int) -> None: ...


@dataclass(slots=True)
class SmtpMailer:
    from_address: str
    host: str | None
    port: int | None
    username: str | None = None
    password: str | None = None
    starttls: bool = False
    use_ssl: bool = False
    timeout_seconds: float = 10.0

    async def send_code(self, *, to_address: str, code: str, ttl_minutes: int) -> None:
        msg = EmailMessage()
        msg["Subject"] = "Your verification code"
        msg["From"] = self.from_address
        msg["To"] = to_address
        msg.set_content(f"Your verification code is {code}. It expires in {ttl_minutes} minutes.")
        await asyncio.to_thread(self._send, msg)
        logger.info("verification mail sent to=%s", to_address)

    def _send(self, msg: EmailMessage) -> None:
        if not self.host or not self.port:
            raise MailerNotConfiguredError("SMTP not configured: set NOTIFIER_MAIL_SMTP_HOST and NOTIFIER_MAIL_SMTP_PORT")

        # Port 465 is implicit TLS.
        smtp_cls = smtplib.SMTP_SSL if self.use_ssl or self.port == 465 else smtplib.SMTP
        try:
            with smtp_cls(host=self.host, port=int(self.port), timeout=max(0.2, float(self.timeout_seconds))) as smtp:
                smtp.ehlo()
                if self.starttls and smtp_cls is smtplib.SMTP:
                    smtp.starttls()
                    smtp.ehlo()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"smtp send failed: {type(exc).__name__}") from exc


@lru_cache
def get_mailer() -> SmtpMailer:
    settings = get_settings()
    return SmtpMailer(
        from_address=settings.mail_from,
        host=settings.mail_smtp_host,
        port=settings.mail_smtp_port,
        username=settings.mail_smtp_user,
        password=settings.mail_smtp_password,
        starttls=settings.mail_smtp_starttls,
        use_ssl=settings.mail_smtp_ssl,
        timeout_seconds=settings.mail_timeout_seconds,
    )
