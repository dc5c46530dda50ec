import asyncio
import logging
import os
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional


@dataclass
class EmailConfig:
    """Email service configuration"""
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    from_email: str
    reply_to: Optional[str] = None
    use_tls: bool = True


class EmailServiceError(Exception):
    """Custom exception for email service failures"""
    pass


class EmailService:
    """
    SMTP delivery of rendered digests.

    ``send_email`` returns the Message-ID of the delivered message and raises
    :class:`EmailServiceError` on any transport failure.
    """

    def __init__(self, config: Optional[EmailConfig] = None):
        self.config = config or self._load_config_from_env()
        self.logger = logging.getLogger(__name__)

        if not self.config.smtp_password:
            raise ValueError("SMTP password required. Set SMTP_PASSWORD environment variable.")

    @staticmethod
    def _load_config_from_env() -> EmailConfig:
        """Load email configuration from environment variables"""
        return EmailConfig(
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            from_email=os.getenv("SENDER_EMAIL", "noreply@usecatchup.xyz"),
            reply_to=os.getenv("REPLY_TO_EMAIL"),
            use_tls=os.getenv("SMTP_USE_TLS", "true").lower() == "true",
        )

    async def test_connection(self) -> bool:
        """Test SMTP connection and authentication."""
        self.logger.info("Testing SMTP connection to %s:%s", self.config.smtp_host, self.config.smtp_port)
        try:
            await asyncio.to_thread(self._login_only)
        except (smtplib.SMTPException, OSError) as exc:
            self.logger.error("SMTP connection test failed: %s", exc)
            raise EmailServiceError(f"SMTP connection test failed: {exc}") from exc
        self.logger.info("SMTP connection and authentication successful")
        return True

    def build_message(self, to: str, subject: str, html: str, text: str) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.config.from_email or self.config.smtp_user
        message["To"] = to
        message["Message-ID"] = make_msgid(domain=self._sender_domain())
        if self.config.reply_to:
            message["Reply-To"] = self.config.reply_to
        message.attach(MIMEText(text, "plain", "utf-8"))
        message.attach(MIMEText(html, "html", "utf-8"))
        return message

    async def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        """Send one message; returns its Message-ID."""
        message = self.build_message(to, subject, html, text)
        try:
            # smtplib blocks; keep the event loop free for the rest of the batch
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as exc:
            self.logger.error("SMTP send to %s failed: %s", to, exc)
            raise EmailServiceError(f"SMTP send failed: {exc}") from exc
        self.logger.info("Email sent to %s", to)
        return message["Message-ID"]

    def _sender_domain(self) -> Optional[str]:
        sender = self.config.from_email or self.config.smtp_user
        return sender.split("@", 1)[1] if "@" in sender else None

    def _connect(self) -> smtplib.SMTP:
        server = smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30)
        try:
            if self.config.use_tls:
                server.starttls()
            server.login(self.config.smtp_user, self.config.smtp_password)
        except (smtplib.SMTPException, OSError):
            self._quit(server)
            raise
        return server

    def _login_only(self) -> None:
        server = self._connect()
        try:
            server.noop()
        finally:
            self._quit(server)

    def _send_sync(self, message: MIMEMultipart) -> None:
        server = self._connect()
        try:
            server.send_message(message)
        finally:
            self._quit(server)

    def _quit(self, server: smtplib.SMTP) -> None:
        try:
            server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            self.logger.debug("SMTP quit failed: %s", exc)
