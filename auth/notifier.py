"""
auth/notifier.py -- Outbound member notifications (password reset email).

Two implementations of the same send(template, principal, context) call:

  SmtpNotifier  renders auth/templates/<template>.txt with Jinja2 and sends
                it through smtplib. Used when SMTP_HOST is configured.
  LogNotifier   only logs that a notification would have gone out. The
                development default. Context values are not logged because
                they carry reset links.

Callers treat NotificationError as non-fatal.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from auth.models import Principal
from core.config import Settings, get_settings

logger = logging.getLogger("memberauth.notifier")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

_SUBJECTS: dict[str, str] = {
    "forgot_password": "Your password reset link",
}


class NotificationError(RuntimeError):
    """A notification could not be rendered or delivered."""


class Notifier(Protocol):
    def send(self, template: str, principal: Principal, context: dict) -> None: ...


class LogNotifier:
    def send(self, template: str, principal: Principal, context: dict) -> None:
        logger.info("Notification %r for member %s (delivery disabled)", template, principal.id)


class SmtpNotifier:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def render(self, template: str, principal: Principal, context: dict) -> EmailMessage:
        try:
            body = self._env.get_template(f"{template}.txt").render(member=principal, **context)
        except TemplateError as exc:
            raise NotificationError(f"Could not render {template!r}") from exc
        message = EmailMessage()
        message["Subject"] = _SUBJECTS.get(template, "Account notification")
        message["From"] = self.settings.mail_from
        message["To"] = principal.identifier
        message.set_content(body)
        return message

    def send(self, template: str, principal: Principal, context: dict) -> None:
        message = self.render(template, principal, context)
        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
                if self.settings.smtp_starttls:
                    smtp.starttls()
                if self.settings.smtp_username:
                    smtp.login(self.settings.smtp_username, self.settings.smtp_password)
                smtp.send_message(message)
        except (OSError, smtplib.SMTPException) as exc:
            raise NotificationError(f"SMTP delivery of {template!r} failed") from exc
        logger.info("Sent %r to member %s", template, principal.id)


def get_notifier(settings: Settings | None = None) -> Notifier:
    """SMTP when configured, otherwise log-only."""
    settings = settings or get_settings()
    if settings.smtp_host:
        return SmtpNotifier(settings)
    return LogNotifier()
