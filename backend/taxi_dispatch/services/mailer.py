"""SMTP mailer for driver and staff invitations."""
from __future__ import annotations

import html as html_lib
import smtplib
from email.message import EmailMessage
from typing import Optional

from taxi_dispatch.core.config import Settings, get_settings
from taxi_dispatch.core.errors import ConfigurationError, TransportError
from taxi_dispatch.core.logging import logger


class Mailer:
    """Sends HTML mail with the SMTP credentials from settings."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        return bool(self.settings.smtp_user and self.settings.smtp_pass)

    def _build_message(self, to: str, subject: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.smtp_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")
        return message

    def send_mail(self, to: str, subject: str, html: str) -> None:
        if not self.is_configured():
            logger.error("SMTP credentials are not set")
            raise ConfigurationError("SMTP service is not configured.")

        message = self._build_message(to, subject, html)
        host = self.settings.smtp_host
        port = int(self.settings.smtp_port)
        timeout = float(self.settings.smtp_timeout_seconds)
        try:
            if port == 465:
                with smtplib.SMTP_SSL(host, port, timeout=timeout) as smtp:
                    smtp.login(self.settings.smtp_user, self.settings.smtp_pass)
                    smtp.send_message(message)
            else:
                with smtplib.SMTP(host, port, timeout=timeout) as smtp:
                    smtp.starttls()
                    smtp.login(self.settings.smtp_user, self.settings.smtp_pass)
                    smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP delivery failed", to=to, host=host, error=str(exc))
            raise TransportError(f"Mail delivery to {to} failed: {exc}") from exc
        logger.info("Mail sent", to=to, subject=subject)


def invitation_html(display_name: str, role: str, tenant_id: str) -> str:
    name = html_lib.escape(display_name or "there")
    return (
        f"<p>Hi {name},</p>"
        f"<p>You have been invited to join the <strong>{html_lib.escape(tenant_id)}</strong> dispatch team "
        f"as a <strong>{html_lib.escape(role)}</strong>.</p>"
        "<p>Sign in with this email address to finish setting up your account.</p>"
    )


mailer = Mailer()
