from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from coursegate.config import Settings
from coursegate.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

# Checked in order; SMTPException is itself an OSError subclass
_FAILURE_EVENTS = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (OSError, "email_transport_error"),
)

_RESET_SUBJECT = "Reset your Coursegate password"

_RESET_TEXT = """\
Someone asked to reset the password on your Coursegate account.

Open this link to pick a new password:
{url}

The link stops working after {ttl} minutes and can only be used once.
If this wasn't you, no action is needed.
"""

_RESET_HTML = """\
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.5;">
<p>Someone asked to reset the password on your Coursegate account.</p>
<p><a href="{url}">Choose a new password</a></p>
<p>The link stops working after {ttl} minutes and can only be used once.</p>
<p>If this wasn't you, no action is needed.</p>
</body>
</html>
"""


class EmailService:
    """Sends password reset links.

    Without an SMTP host the service runs in dev mode: messages are
    logged and reported as delivered.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Coursegate",
        reset_link_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.reset_link_ttl_minutes = reset_link_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            reset_link_ttl_minutes=settings.password_reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(self, to_email: str, subject: str, text: str, html: str) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.attach(MIMEText(text, "plain"))
        message.attach(MIMEText(html, "html"))
        return message

    def _transmit(self, to_email: str, message: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            connection = smtplib.SMTP(
                self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS
            )
        else:
            connection = smtplib.SMTP_SSL(
                self.smtp_host,
                self.smtp_port,
                context=context,
                timeout=SMTP_TIMEOUT_SECONDS,
            )
        with connection as server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, message.as_string())

    def _deliver(self, to_email: str, subject: str, text: str, html: str) -> bool:
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient, subject=subject)
            return True

        try:
            self._transmit(to_email, self._build_message(to_email, subject, text, html))
        except OSError as exc:
            event = next(name for cls, name in _FAILURE_EVENTS if isinstance(exc, cls))
            logger.error(
                event,
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                smtp_code=getattr(exc, "smtp_code", None),
                error_type=type(exc).__name__,
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    async def send_password_reset_email(self, to_email: str, reset_url: str) -> bool:
        """Deliver a reset link from a worker thread.

        Returns False when delivery failed; callers decide whether that
        matters.
        """
        fields = {"url": reset_url, "ttl": self.reset_link_ttl_minutes}
        return await asyncio.to_thread(
            self._deliver,
            to_email,
            _RESET_SUBJECT,
            _RESET_TEXT.format(**fields),
            _RESET_HTML.format(**fields),
        )
