"""
Review notification emails.

Each send writes an EmailLog row first, then talks to SMTP.  Without
MAIL_SERVER nothing leaves the process: the row is marked sent and the
message is logged, which is what development and the test suite run on.

SMTP errors are retried with tenacity (NOTIFICATION_MAX_ATTEMPTS tries,
exponential backoff scaled by NOTIFICATION_RETRY_WAIT_SECONDS).  When the
last try fails the row is marked failed and NotificationDeliveryFailure is
raised for the dispatcher to log.
"""

from __future__ import annotations

import html
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any

from flask import current_app
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from orbit.core.exceptions import NotificationDeliveryFailure
from orbit.models import db
from orbit.models.notification import EmailLog

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (smtplib.SMTPException, OSError)


_LAYOUT = """\
<table role="presentation" width="100%" style="font-family: Helvetica, Arial, sans-serif; background: #f4f4f5;">
  <tr><td align="center" style="padding: 24px 0;">
    <table role="presentation" width="560" style="background: #ffffff; border-radius: 10px; overflow: hidden;">
      <tr><td style="background: {accent}; height: 6px;"></td></tr>
      <tr><td style="padding: 24px 28px 8px; color: #71717a; font-size: 13px;">{project_name}</td></tr>
      <tr><td style="padding: 0 28px; color: #18181b; font-size: 20px; font-weight: 600;">{headline}</td></tr>
      <tr><td style="padding: 12px 28px; color: #3f3f46; font-size: 15px; line-height: 1.5;">{message}</td></tr>
      <tr><td style="padding: 0 28px;">{notes_block}</td></tr>
      <tr><td style="padding: 16px 28px 28px;">
        <a href="{asset_url}" style="background: {accent}; color: #ffffff; padding: 10px 18px;
           border-radius: 6px; text-decoration: none; font-size: 14px;">{cta}</a>
      </td></tr>
    </table>
    <p style="color: #a1a1aa; font-size: 12px;">You are receiving this as a participant in the review of {asset_name}.</p>
  </td></tr>
</table>
"""

_NOTES_BLOCK = (
    '<p style="margin: 8px 0; padding: 8px 12px; border-left: 3px solid {accent}; '
    'background: #fafafa; color: #27272a;">{notes}</p>'
)

_TEMPLATES: dict[str, dict[str, str]] = {
    "stage_progress": {
        "subject": "[Approval Orbit] {actor_name} approved {asset_name}",
        "headline": "Stage {stage_name}: approval recorded",
        "cta": "Review asset",
        "accent": "#2563eb",
    },
    "stage_advanced": {
        "subject": "[Approval Orbit] {asset_name} is ready for your review",
        "headline": "{asset_name} entered stage {stage_name}",
        "cta": "Start review",
        "accent": "#2563eb",
    },
    "changes_requested": {
        "subject": "[Approval Orbit] Changes requested on {asset_name}",
        "headline": "Changes requested at stage {stage_name}",
        "cta": "View feedback",
        "accent": "#dc2626",
    },
    "final_approval_needed": {
        "subject": "[Approval Orbit] {asset_name} needs your final approval",
        "headline": "All stages approved",
        "cta": "Give final approval",
        "accent": "#d97706",
    },
    "fully_approved": {
        "subject": "[Approval Orbit] {asset_name} is fully approved",
        "headline": "{asset_name} is fully approved",
        "cta": "View asset",
        "accent": "#16a34a",
    },
}


class _Blank(dict):
    """format_map source that leaves unknown placeholders visible."""

    def __missing__(self, key):
        return "{" + key + "}"


def render(template_name: str, context: dict[str, Any]) -> tuple[str, str] | None:
    """Return ``(subject, html_body)`` for a template, or None if unknown.

    Context values are HTML-escaped before they reach the body.
    """
    template = _TEMPLATES.get(template_name)
    if template is None:
        return None
    plain = _Blank({k: "" if v is None else str(v) for k, v in context.items()})
    escaped = _Blank({k: html.escape(v) for k, v in plain.items()})
    escaped["accent"] = template["accent"]
    escaped["cta"] = template["cta"]
    escaped["headline"] = template["headline"].format_map(escaped)
    escaped["notes_block"] = _NOTES_BLOCK.format_map(escaped) if plain.get("notes") else ""
    return template["subject"].format_map(plain), _LAYOUT.format_map(escaped)


class EmailService:
    """Sends review emails and keeps an EmailLog row per message."""

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        to_name: str | None = None,
        template_name: str | None = None,
        category: str = "system",
        notification_id: int | None = None,
        asset_id: int | None = None,
    ) -> EmailLog:
        """
        Deliver one email.

        Returns:
            The EmailLog row, flushed.  The caller commits.

        Raises:
            NotificationDeliveryFailure: every SMTP attempt failed.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            category=category,
            status="queued",
            notification_id=notification_id,
            asset_id=asset_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email not sent, SMTP unconfigured: to=%s subject=%r", to_email, subject,
                        extra={"asset_id": asset_id, "event_kind": category})
            return log

        cfg = current_app.config
        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(int(cfg.get("NOTIFICATION_MAX_ATTEMPTS", 3))),
            wait=wait_exponential(multiplier=float(cfg.get("NOTIFICATION_RETRY_WAIT_SECONDS", 1)), max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
        )
        try:
            for attempt in retrying:
                with attempt:
                    log.attempts = attempt.retry_state.attempt_number
                    cls._send_smtp(to_email=to_email, to_name=to_name, subject=subject, html_body=html_body)
        except RETRYABLE_ERRORS as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email to %s failed after %d attempt(s): %s", to_email, log.attempts, exc,
                         extra={"asset_id": asset_id, "event_kind": category})
            raise NotificationDeliveryFailure("email", to_email, str(exc)) from exc

        log.status = "sent"
        log.sent_at = datetime.now(timezone.utc)
        logger.info("Email sent to %s (%s)", to_email, template_name or category,
                    extra={"asset_id": asset_id, "event_kind": category})
        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        template_name: str,
        context: dict[str, Any],
        to_name: str | None = None,
        category: str | None = None,
        notification_id: int | None = None,
        asset_id: int | None = None,
    ) -> EmailLog | None:
        """Render ``template_name`` with ``context`` and send it.  Unknown templates are skipped."""
        rendered = render(template_name, context)
        if rendered is None:
            logger.warning("No email template named %r", template_name)
            return None
        subject, html_body = rendered
        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            category=category or template_name,
            notification_id=notification_id,
            asset_id=asset_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None, subject: str, html_body: str) -> None:
        cfg = current_app.config
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = cfg.get("MAIL_DEFAULT_SENDER")
        message["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        message.set_content("This message needs an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")

        with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587), timeout=30) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if cfg.get("MAIL_USERNAME") and cfg.get("MAIL_PASSWORD"):
                smtp.login(cfg["MAIL_USERNAME"], cfg["MAIL_PASSWORD"])
            smtp.send_message(message)
