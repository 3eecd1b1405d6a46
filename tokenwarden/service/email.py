from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Sequence

from tokenwarden.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2457c5; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host / sender is configured the message is logged instead
    of sent (dev mode). Delivery failures are logged and reported as False;
    callers never fail a request because an email could not be sent.
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
        from_name: str = "TokenWarden",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_minutes: int = 15,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_minutes = verification_ttl_minutes

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            verification_ttl_minutes=settings.verification_code_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render_html(self, title: str, paragraphs: Sequence[str]) -> str:
        body = "\n        ".join(f"<p>{p}</p>" for p in paragraphs)
        return _HTML_TEMPLATE.format(
            title=escape(title), body=body, sender=escape(self.from_name)
        )

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            with server:
                server.starttls(context=context)
                self._login_and_send(server, msg, to_email)
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                self._login_and_send(server, msg, to_email)

    def _login_and_send(self, server: smtplib.SMTP, msg: MIMEMultipart, to_email: str) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_chars=len(text_body),
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        recipient = self._redact_email(to_email)
        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=recipient, error=str(e))
            return False
        except (smtplib.SMTPConnectError, TimeoutError, ssl.SSLError) as e:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_send_failed",
                to=recipient,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str, *, name: str = "") -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        greeting = f"Hi {name}," if name else "Hi,"
        subject = f"Reset your {self.from_name} password"
        html_body = self._render_html(
            "Reset your password",
            [
                escape(greeting),
                "We received a request to reset your password. Use the button below to choose a new one:",
                f'<a href="{escape(reset_url)}" class="button">Reset password</a>',
                f"This link expires in {self.reset_ttl_minutes} minutes and can be used once.",
                "If you didn't request this, you can ignore this email.",
                f"If the button doesn't work, paste this URL into your browser: {escape(reset_url)}",
            ],
        )
        text_body = (
            f"{greeting}\n\n"
            "We received a request to reset your password. Visit the link below to choose a new one:\n\n"
            f"{reset_url}\n\n"
            f"This link expires in {self.reset_ttl_minutes} minutes and can be used once.\n\n"
            "If you didn't request this, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_verification_code(self, to_email: str, code: str, *, name: str = "") -> bool:
        greeting = f"Hi {name}," if name else "Hi,"
        subject = f"Your {self.from_name} verification code"
        html_body = self._render_html(
            "Verify your email",
            [
                escape(greeting),
                "Enter this code to verify your email address:",
                f'<span class="code">{escape(code)}</span>',
                f"The code expires in {self.verification_ttl_minutes} minutes.",
            ],
        )
        text_body = (
            f"{greeting}\n\n"
            f"Your verification code is: {code}\n\n"
            f"The code expires in {self.verification_ttl_minutes} minutes.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, *, name: str = "") -> bool:
        greeting = f"Welcome, {name}!" if name else "Welcome!"
        subject = f"Welcome to {self.from_name}"
        html_body = self._render_html(
            greeting,
            [
                "Your email address is verified and your account is active.",
                f'<a href="{escape(self.base_url)}" class="button">Sign in</a>',
            ],
        )
        text_body = (
            f"{greeting}\n\n"
            "Your email address is verified and your account is active.\n\n"
            f"Sign in at {self.base_url}\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
