from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from zentik_auth.config import Settings
from zentik_auth.logging import get_logger

logger = get_logger(__name__)


def _layout(title: str, paragraphs: list[str], footer: str) -> str:
    body = "\n".join(f"        <p>{html.escape(p)}</p>" for p in paragraphs)
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{html.escape(title)}</h1>
{body}
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{html.escape(footer)}</p>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for account codes and welcome messages.

    Without an SMTP host the message is logged instead of sent (dev mode),
    which keeps local setups and tests free of a mail server.
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
        from_name: str = "Zentik",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

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

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver one message; returns False on any SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(exc),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset_code(
        self, to_email: str, code: str, locale: Optional[str] = None
    ) -> bool:
        subject = "Your Zentik password reset code"
        lines = [
            "We received a request to reset your password.",
            f"Your reset code is: {code}",
            "The code is valid for 24 hours. If you didn't request this, ignore this email.",
        ]
        return self._send_email(
            to_email,
            subject,
            _layout("Reset your password", lines, "Zentik"),
            "\n\n".join(lines) + "\n\n---\nZentik\n",
        )

    def send_email_confirmation(
        self, to_email: str, code: str, locale: Optional[str] = None
    ) -> bool:
        subject = "Confirm your Zentik email"
        lines = [
            "Thanks for signing up! Confirm your email address with the code below.",
            f"Your confirmation code is: {code}",
            "The code is valid for 24 hours.",
        ]
        return self._send_email(
            to_email,
            subject,
            _layout("Confirm your email", lines, "Zentik"),
            "\n\n".join(lines) + "\n\n---\nZentik\n",
        )

    def send_welcome_email(
        self, to_email: str, username: str, locale: Optional[str] = None
    ) -> bool:
        subject = "Welcome to Zentik"
        lines = [
            f"Hi {username}, your account is ready.",
            "You can now create buckets and start receiving notifications.",
        ]
        return self._send_email(
            to_email,
            subject,
            _layout("Welcome to Zentik", lines, "Zentik"),
            "\n\n".join(lines) + "\n\n---\nZentik\n",
        )


__all__ = ["EmailService"]
