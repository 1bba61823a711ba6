"""Outbound email over SMTP.

Learn: Mailer.send_email never raises. The verification flow has already
stored its code by the time it sends mail, so a delivery failure is logged
and reported as None instead of failing the request.
"""

from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

import aiosmtplib
import structlog

from latchkey.config import settings

logger = structlog.get_logger()


class Mailer:
    """Sends HTML email through an SMTP relay."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_name: str = "",
        from_addr: str = "",
        use_tls: bool = True,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.from_name = from_name
        self.from_addr = from_addr
        self.use_tls = use_tls

    @classmethod
    def from_settings(cls) -> "Mailer":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_name=settings.mailer_name,
            from_addr=settings.mailer_email,
            use_tls=settings.smtp_use_tls,
        )

    async def send_email(self, *, to: str, subject: str, html: str) -> Optional[str]:
        """Send one message. Returns its Message-ID, or None on failure."""
        message = MIMEMultipart("alternative")
        message["From"] = formataddr((self.from_name, self.from_addr))
        message["To"] = to
        message["Subject"] = subject
        message_id = make_msgid(domain=self.from_addr.partition("@")[2] or None)
        message["Message-ID"] = message_id
        message.attach(MIMEText(html, "html"))

        try:
            await aiosmtplib.send(
                message,
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.username,
                password=self.password,
                start_tls=self.use_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("email.send_failed", origin="Mailer.send_email", to=to, error=str(e))
            return None

        return message_id
