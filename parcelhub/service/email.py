from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Callable, Dict, Optional, Tuple

from parcelhub.logging import get_logger

logger = get_logger(__name__)

Rendered = Tuple[str, str, str]

_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ display: inline-block; background: #f1f5f9; padding: 12px 24px; border-radius: 8px; font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #0f766e; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {content}
        <div class="footer">
            <p>{brand}</p>
        </div>
    </div>
</body>
</html>
"""


def _verify_email(data: Dict[str, Any], brand: str) -> Rendered:
    otp = escape(str(data["otp"]))
    name = escape(str(data.get("name") or "there"))
    subject = f"Your {brand} verification code"
    html = _HTML_LAYOUT.format(
        title="Verify your email",
        brand=brand,
        content=(
            f"<p>Hi {name}, use the code below to finish creating your account:</p>"
            f'<p style="margin: 30px 0;"><span class="code">{otp}</span></p>'
            "<p>This code will expire in 10 minutes.</p>"
        ),
    )
    text = f"""Verify your {brand} email

Hi {data.get("name") or "there"}, use this code to finish creating your account:

{data["otp"]}

This code will expire in 10 minutes.
"""
    return subject, html, text


def _password_reset(data: Dict[str, Any], brand: str) -> Rendered:
    reset_url = str(data["reset_url"])
    subject = f"Reset your {brand} password"
    html = _HTML_LAYOUT.format(
        title="Reset your password",
        brand=brand,
        content=(
            "<p>We received a request to reset your password. Click the button below to choose a new password:</p>"
            f'<p style="margin: 30px 0;"><a href="{escape(reset_url)}" class="button">Reset Password</a></p>'
            "<p>This link will expire in 10 minutes.</p>"
            "<p>If you didn't request this, you can safely ignore this email.</p>"
        ),
    )
    text = f"""Reset your {brand} password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in 10 minutes.

If you didn't request this, you can safely ignore this email.
"""
    return subject, html, text


def _invite(data: Dict[str, Any], brand: str) -> Rendered:
    role = str(data.get("role") or "agent")
    invite_url = str(data["invite_url"])
    subject = f"You have been invited to {brand}"
    html = _HTML_LAYOUT.format(
        title="You're invited",
        brand=brand,
        content=(
            f"<p>You have been invited to join {escape(brand)} as {escape(role)}.</p>"
            f'<p style="margin: 30px 0;"><a href="{escape(invite_url)}" class="button">Accept Invitation</a></p>'
        ),
    )
    text = f"""You have been invited to join {brand} as {role}.

Accept the invitation here: {invite_url}
"""
    return subject, html, text


def _assignment_notice(data: Dict[str, Any], brand: str) -> Rendered:
    tracking = str(data["tracking_id"])
    agent = str(data.get("agent_name") or "your agent")
    subject = f"Parcel {tracking} has been assigned"
    html = _HTML_LAYOUT.format(
        title="Parcel assigned",
        brand=brand,
        content=(
            f"<p>Parcel <strong>{escape(tracking)}</strong> has been assigned to {escape(agent)}.</p>"
            "<p>You will receive updates as it moves.</p>"
        ),
    )
    text = f"""Parcel {tracking} has been assigned to {agent}.

You will receive updates as it moves.
"""
    return subject, html, text


TEMPLATES: Dict[str, Callable[[Dict[str, Any], str], Rendered]] = {
    "verify-email": _verify_email,
    "password-reset": _password_reset,
    "invite": _invite,
    "assignment-notice": _assignment_notice,
}


class Mailer:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Named templates rendered to subject, text and HTML
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
        from_name: str = "ParcelHub",
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

    def render(self, template_id: str, data: Dict[str, Any]) -> Rendered:
        renderer = TEMPLATES.get(template_id)
        if renderer is None:
            raise ValueError(f"unknown email template: {template_id}")
        return renderer(data, self.from_name)

    async def send_template(self, to_email: str, template_id: str, data: Dict[str, Any]) -> bool:
        """Render ``template_id`` and deliver it; False means delivery failed."""
        subject, html_body, text_body = self.render(template_id, data)
        return await asyncio.to_thread(self._send_email, to_email, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info("email_dev_mode", to=self._redact_email(to_email), subject=subject)
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

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
                error_code=getattr(e, "smtp_code", None),
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
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
