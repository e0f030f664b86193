from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from notekeeper.logging import fingerprint, get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    <p>{intro}</p>
    <p style="margin: 30px 0;">
      <a href="{url}" style="background: #f59e0b; color: #111; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600;">{action}</a>
    </p>
    <p>This link expires in {expiry}.</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{footer}<br>{url}</p>
  </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{title}

{intro}

{url}

This link expires in {expiry}.

{footer}
"""


def _describe_minutes(minutes: int) -> str:
    if minutes % (60 * 24) == 0:
        days = minutes // (60 * 24)
        return f"{days} day" + ("s" if days != 1 else "")
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" + ("s" if hours != 1 else "")
    return f"{minutes} minutes"


class EmailService:
    """Transactional mail for password reset and email verification.

    Without SMTP settings the message is logged instead of sent, which is how
    development and test runs behave.
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
        from_name: str = "Notekeeper",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_email: str, subject: str, text_body: str, html_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        """Send one message over SMTP. Returns False when delivery failed."""
        recipient = fingerprint(to_email.lower())
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient_fingerprint=recipient,
                subject=subject,
            )
            return True

        msg = self._build_message(to_email, subject, text_body, html_body)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                recipient_fingerprint=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient_fingerprint=recipient, subject=subject)
        return True

    def _send_link(
        self,
        to_email: str,
        *,
        subject: str,
        title: str,
        intro: str,
        action: str,
        url: str,
        expiry_minutes: int,
    ) -> bool:
        fields = dict(
            title=title,
            intro=intro,
            action=action,
            url=url,
            expiry=_describe_minutes(expiry_minutes),
            footer=self.from_name,
        )
        return self._send_email(
            to_email,
            subject,
            _TEXT_TEMPLATE.format(**fields),
            _HTML_TEMPLATE.format(**fields),
        )

    def send_password_reset(self, to_email: str, token: str, *, expiry_minutes: int = 15) -> bool:
        return self._send_link(
            to_email,
            subject="Reset your Notekeeper password",
            title="Reset your password",
            intro=(
                "We received a request to reset your password. If it was you, "
                "follow the link below to choose a new one; otherwise ignore this email."
            ),
            action="Reset password",
            url=f"{self.base_url}/reset-password/{token}",
            expiry_minutes=expiry_minutes,
        )

    def send_email_verification(self, to_email: str, token: str, *, expiry_minutes: int = 24 * 60) -> bool:
        return self._send_link(
            to_email,
            subject="Verify your Notekeeper email",
            title="Verify your email",
            intro="Confirm this address belongs to you by following the link below.",
            action="Verify email",
            url=f"{self.base_url}/verify-email/{token}",
            expiry_minutes=expiry_minutes,
        )

    async def send_password_reset_async(self, to_email: str, token: str, *, expiry_minutes: int = 15) -> bool:
        # smtplib blocks; keep it off the event loop
        return await asyncio.to_thread(
            self.send_password_reset, to_email, token, expiry_minutes=expiry_minutes
        )

    async def send_email_verification_async(
        self, to_email: str, token: str, *, expiry_minutes: int = 24 * 60
    ) -> bool:
        return await asyncio.to_thread(
            self.send_email_verification, to_email, token, expiry_minutes=expiry_minutes
        )
