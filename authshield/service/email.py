from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from authshield.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    body: str
    is_html: bool = True


class Notifier(Protocol):
    async def send(self, notification: Notification) -> bool: ...


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - HTML and plain-text notifications
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "AuthShield",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    async def send(self, notification: Notification) -> bool:
        """Deliver ``notification`` without blocking the event loop."""
        return await asyncio.to_thread(
            self._send_email,
            notification.to,
            notification.subject,
            notification.body,
            notification.is_html,
        )

    def _send_email(self, to_email: str, subject: str, body: str, is_html: bool = True) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                is_html=is_html,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(body, "html" if is_html else "plain"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # connection refused, DNS failure, timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


async def dispatch_notification(
    notifier: Optional[Notifier], notification: Notification, *, event: str
) -> bool:
    """Best-effort send: failures are logged, never raised.

    Callers have already committed their state change by the time a
    notification goes out, so delivery problems must not undo it.
    """
    if notifier is None:
        logger.debug("notification_skipped", notification_event=event)
        return False
    try:
        sent = await notifier.send(notification)
    except Exception as exc:
        logger.warning(
            "notification_dispatch_failed",
            notification_event=event,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    if not sent:
        logger.warning("notification_not_sent", notification_event=event)
    return bool(sent)


def _stamp(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d %H:%M UTC")


def _duration(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" + ("s" if hours != 1 else "")
    minutes = max(1, seconds // 60)
    return f"{minutes} minute" + ("s" if minutes != 1 else "")


def verification_message(
    to: str, name: str, token: str, *, base_url: str, ttl_seconds: int
) -> Notification:
    verify_url = f"{base_url.rstrip('/')}/?verify_token={token}"
    body = f"""
<p>Hello {html.escape(name)},</p>
<p>Please confirm your email address with the code below:</p>
<p><strong>{token}</strong></p>
<p>Or open this link: <a href="{verify_url}">{verify_url}</a></p>
<p>This code expires in {_duration(ttl_seconds)}.</p>
"""
    return Notification(to=to, subject="Verify your email", body=body)


def password_reset_message(
    to: str, name: str, token: str, *, base_url: str, ttl_seconds: int
) -> Notification:
    reset_url = f"{base_url.rstrip('/')}/?reset_token={token}"
    body = f"""
<p>Hello {html.escape(name)},</p>
<p>Use the code below to reset your password:</p>
<p><strong>{token}</strong></p>
<p>Or open this link: <a href="{reset_url}">{reset_url}</a></p>
<p>This code expires in {_duration(ttl_seconds)}.</p>
<p>If you didn't request this, you can safely ignore this email.</p>
"""
    return Notification(to=to, subject="Password reset", body=body)


def password_changed_message(to: str, name: str, *, ip: str, at: datetime) -> Notification:
    body = f"""
<p>Hello {html.escape(name)},</p>
<p>Your password was changed successfully.</p>
<p><strong>IP:</strong> {html.escape(ip)}</p>
<p><strong>Date:</strong> {_stamp(at)}</p>
<p>If this wasn't you, contact support immediately.</p>
"""
    return Notification(to=to, subject="Password changed", body=body)


def reset_throttled_message(to: str, name: str, *, ip: str, at: datetime) -> Notification:
    body = f"""
<p>Hello {html.escape(name)},</p>
<p>We detected repeated password reset requests for your account.</p>
<p><strong>IP:</strong> {html.escape(ip)}</p>
<p><strong>Time:</strong> {_stamp(at)}</p>
<p>If this wasn't you, we recommend changing your password.</p>
"""
    return Notification(to=to, subject="Excessive password reset attempts", body=body)


def account_blocked_message(
    to: str, name: str, *, ip: str, at: datetime, block_seconds: int
) -> Notification:
    duration = _duration(block_seconds)
    body = f"""
<p>Hello {html.escape(name)},</p>
<p><strong>Your account has been temporarily blocked</strong> after several failed sign-in attempts.</p>
<ul>
  <li><strong>IP:</strong> {html.escape(ip)}</li>
  <li><strong>Time:</strong> {_stamp(at)}</li>
  <li><strong>Block duration:</strong> {duration}</li>
</ul>
<p>If this was you, wait {duration} and try again, or use "Forgot password".</p>
<p>If it wasn't you, change your password as soon as the block expires.</p>
"""
    return Notification(
        to=to, subject="Account temporarily blocked - suspicious sign-in attempts", body=body
    )
