from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from fixrx.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #0b7a75; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{button}</a>
        </p>
        <p>{expiry}</p>
        <div class="footer">
            <p>{brand}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

{expiry}

---
{brand}
"""


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional mail for the auth flows.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host or sender
    address is configured the message is logged instead (dev mode). Sending
    is blocking; callers run it in a worker thread.
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
        from_name: str = "FixRx",
        frontend_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_url(self, token: str) -> str:
        return f"{self.frontend_url}/verify-email?token={token}"

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={token}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _render_and_send(
        self,
        to_email: str,
        subject: str,
        *,
        heading: str,
        intro: str,
        url: str,
        button: str,
        expiry: str,
    ) -> bool:
        fields = dict(
            heading=heading,
            intro=intro,
            url=url,
            button=button,
            expiry=expiry,
            brand=self.from_name,
        )
        return self._send_email(
            to_email,
            subject,
            _HTML_TEMPLATE.format(**fields),
            _TEXT_TEMPLATE.format(**fields),
        )

    def send_welcome(self, to_email: str, first_name: Optional[str], token: str) -> bool:
        """Welcome mail sent after registration, carrying the verification link."""
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        return self._render_and_send(
            to_email,
            f"Welcome to {self.from_name}",
            heading=f"Welcome to {self.from_name}",
            intro=f"{greeting} thanks for signing up! Please confirm your email address to activate your account.",
            url=self.verification_url(token),
            button="Verify Email",
            expiry="This link will expire in 24 hours.",
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._render_and_send(
            to_email,
            f"Verify your {self.from_name} email",
            heading="Verify your email",
            intro="Please verify your email address by clicking the button below.",
            url=self.verification_url(token),
            button="Verify Email",
            expiry="This link will expire in 24 hours.",
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._render_and_send(
            to_email,
            f"Reset your {self.from_name} password",
            heading="Reset your password",
            intro=(
                "We received a request to reset your password. "
                "If you didn't request this, you can safely ignore this email."
            ),
            url=self.reset_url(token),
            button="Reset Password",
            expiry="This link will expire in 1 hour.",
        )
