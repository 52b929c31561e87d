"""
auth/emailer.py -- Outbound transactional email over SMTP.

send() never raises. A failed delivery must not change what the API tells
the client (that would reveal which addresses have accounts), so failures
come back as False and the caller records an audit event instead.

smtplib is blocking; the send runs in a worker thread.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from starlette.concurrency import run_in_threadpool

from core.config import Settings

logger = logging.getLogger("learngate.email")


class EmailSender:
    def __init__(
        self,
        host: str = "",
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_address: str = "",
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address or username

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailSender":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.mail_from,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_address)

    async def send(self, to: str, subject: str, body: str) -> bool:
        if not self.configured:
            # Body is not logged: it carries single-use tokens.
            logger.info("SMTP not configured; dropping email %r to %s", subject, to)
            return False
        try:
            await run_in_threadpool(self._send_sync, to, subject, body)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send email %r to %s", subject, to)
            return False
        return True

    def _send_sync(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)
