from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from vitrine.logging import get_logger, mask_email

logger = get_logger(__name__)

_SMTP_TIMEOUT_SECONDS = 30

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 32px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 32px; font-size: 12px; color: #5b6470; }}
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

_PURPOSE_TITLES = {
    "login": "Your sign-in code",
    "setup": "Confirm your two-factor email",
}


class EmailService:
    """SMTP delivery for admin security mail.

    Covers one-time codes, password-change notices and two-factor
    confirmation. When SMTP is not configured every send returns False and the
    message body is never logged, since it may carry a live code.
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
        from_name: str = "Vitrine",
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
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, paragraphs: list[str]) -> str:
        body = "\n        ".join(f"<p>{p}</p>" for p in paragraphs)
        return _HTML_TEMPLATE.format(
            title=html.escape(title), body=body, sender=html.escape(self.from_name)
        )

    def _connect(self) -> smtplib.SMTP:
        """Open an authenticated connection using STARTTLS or implicit TLS."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT_SECONDS
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except Exception:
            server.close()
            raise
        return server

    def _build_message(self, to_email: str, subject: str, html_body: str, text_body: str) -> str:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message.as_string()

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; True only when the server accepted it."""
        recipient = mask_email(to_email)
        if not self.is_configured:
            logger.warning("email_not_configured", to=recipient, subject=subject)
            return False

        payload = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                server.sendmail(self.from_email, to_email, payload)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_two_factor_code(
        self, to_email: str, code: str, *, purpose: str, ttl_minutes: int
    ) -> bool:
        title = _PURPOSE_TITLES.get(purpose, "Your verification code")
        subject = f"{self.from_name}: {title.lower()}"
        html_body = self._render(
            title,
            [
                f'<span class="code">{html.escape(code)}</span>',
                f"The code expires in {ttl_minutes} minutes and works once.",
                "If you did not try to sign in, change your admin password.",
            ],
        )
        text_body = (
            f"{title}\n\n{code}\n\n"
            f"The code expires in {ttl_minutes} minutes and works once.\n"
            "If you did not try to sign in, change your admin password.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        title = "Admin password changed"
        lines = [
            "The password for your admin account was just changed.",
            "Other signed-in sessions were signed out.",
            "If this was not you, contact the store owner immediately.",
        ]
        return self._send_email(
            to_email,
            f"{self.from_name}: {title.lower()}",
            self._render(title, lines),
            f"{title}\n\n" + "\n".join(lines) + "\n",
        )

    def send_two_factor_enabled(self, to_email: str) -> bool:
        title = "Two-factor authentication enabled"
        lines = [
            "Sign-in codes for your admin account will now be sent to this address.",
            "If you did not make this change, contact the store owner immediately.",
        ]
        return self._send_email(
            to_email,
            f"{self.from_name}: {title.lower()}",
            self._render(title, lines),
            f"{title}\n\n" + "\n".join(lines) + "\n",
        )
