"""SMTP email delivery and the signup message templates."""

from __future__ import annotations

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)

_CARD_STYLE = (
    "max-width:520px; margin:0 auto; background:#ffffff; "
    "border:1px solid #e2e8f0; border-radius:12px; padding:24px;"
)
_BUTTON_STYLE = (
    "display:inline-block; padding:12px 18px; border-radius:10px; "
    "background:#0ea5e9; color:#ffffff; text-decoration:none; font-weight:700;"
)


def _sanitize_header(value: str, field: str) -> str:
    if "\r" in value or "\n" in value:
        raise ValueError(f"Invalid header value for {field}")
    return value


def _wrap(heading: str, body: str) -> str:
    return (
        "<div style=\"font-family: 'Helvetica Neue', Arial, sans-serif; background:#f8fafc; padding:24px;\">"
        f'<div style="{_CARD_STYLE}">'
        f'<h2 style="margin:0 0 12px 0; font-size:22px; color:#0f172a;">{html.escape(heading)}</h2>'
        f"{body}"
        "</div></div>"
    )


def render_verification_email(code: str, verify_url: str, *, ttl_minutes: int) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for the signup confirmation message."""
    subject = "Confirm your email"
    text = (
        f"Your confirmation code is {code}.\n"
        f"You can also confirm your account here: {verify_url}\n"
        f"The code expires in {ttl_minutes} minutes."
    )
    body = (
        f'<p style="margin:0 0 16px 0; color:#334155;">Enter this code to finish creating your account. '
        f"It expires in {ttl_minutes} minutes.</p>"
        f'<p style="margin:0 0 20px 0; text-align:center; font-size:28px; letter-spacing:6px; '
        f'font-weight:700; color:#0f172a;">{html.escape(code)}</p>'
        f'<div style="margin:0 0 20px 0; text-align:center;">'
        f'<a href="{html.escape(verify_url, quote=True)}" style="{_BUTTON_STYLE}">Confirm email</a></div>'
        '<p style="margin:0; color:#475569;">Didn\'t request this? You can ignore this email.</p>'
    )
    return subject, text, _wrap("Confirm your email", body)


def render_login_notice(login_url: str) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` telling an existing owner to log in instead."""
    subject = "Log in to your account"
    text = f"You already have an account. Please log in here: {login_url}"
    body = (
        '<p style="margin:0 0 16px 0; color:#334155;">An account already exists with this email. '
        "Log in to continue.</p>"
        f'<div style="margin:0 0 20px 0; text-align:center;">'
        f'<a href="{html.escape(login_url, quote=True)}" style="{_BUTTON_STYLE}">Go to login</a></div>'
    )
    return subject, text, _wrap("Log in to your account", body)


class SmtpEmailSender:
    """Deliver multipart emails over SMTP with a bounded socket timeout."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str,
        from_name: str,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._from_email = from_email
        self._from_name = from_name
        self._timeout = timeout

    def send(self, to: str, subject: str, body_text: str, body_html: str) -> bool:
        """Send the message and return ``False`` when delivery failed."""
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = _sanitize_header(subject, "subject")
            msg["From"] = (
                f"{_sanitize_header(self._from_name, 'from_name')} "
                f"<{_sanitize_header(self._from_email, 'from_email')}>"
            )
            msg["To"] = _sanitize_header(to, "to")
            msg.attach(MIMEText(body_text, "plain", "utf-8"))
            msg.attach(MIMEText(body_html, "html", "utf-8"))

            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                if self._use_tls:
                    server.starttls()
                if self._username and self._password:
                    server.login(self._username, self._password)
                server.sendmail(self._from_email, [to], msg.as_string())
        except (smtplib.SMTPException, OSError, ValueError) as exc:
            logger.error("email delivery to %s failed: %s", to, exc)
            return False
        logger.info("email sent to %s: %s", to, subject)
        return True
