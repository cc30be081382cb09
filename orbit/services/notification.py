"""
Approval Orbit
In-app inbox and the post-commit event dispatcher.

NotificationService reads and writes inbox rows.  NotificationDispatcher
takes the events an approval transition produced and, after that
transition has committed, fans them out as inbox rows and emails.  It logs
delivery problems and never raises them to the approval caller.
"""

import logging

from flask import current_app
from sqlalchemy import func, select, update

from orbit.core.exceptions import NotificationDeliveryFailure
from orbit.models import db, utcnow
from orbit.models.notification import Notification
from orbit.models.project import Asset, Project
from orbit.models.review import StageReviewer
from orbit.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationService:
    """Inbox operations, always scoped to one recipient."""

    @staticmethod
    def broadcast(*, title, message="", category="system", severity="info",
                  organization_id=None, project_id=None, entity_type="asset",
                  entity_id=None, recipients=()):
        """Stage one Notification per recipient and flush.  The caller commits."""
        rows = [
            Notification(
                organization_id=organization_id,
                project_id=project_id,
                recipient=recipient,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            for recipient in recipients
        ]
        db.session.add_all(rows)
        db.session.flush()
        return rows

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50, offset=0):
        """Newest first.  Returns ``(items, total)``."""
        stmt = select(Notification).where(Notification.recipient == recipient)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        total = db.session.scalar(select(func.count()).select_from(stmt.subquery()))
        items = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(recipient):
        return db.session.scalar(
            select(func.count(Notification.id)).where(
                Notification.recipient == recipient, Notification.is_read.is_(False),
            )
        )

    @staticmethod
    def mark_read(notification_id, recipient):
        """Returns None for missing rows and for rows addressed to someone else."""
        row = db.session.get(Notification, notification_id)
        if row is None or row.recipient != recipient:
            return None
        row.mark_read()
        db.session.commit()
        return row

    @staticmethod
    def mark_all_read(recipient):
        result = db.session.execute(
            update(Notification)
            .where(Notification.recipient == recipient, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        db.session.commit()
        return result.rowcount


_SEVERITY = {
    "stage_progress": "info",
    "stage_advanced": "info",
    "changes_requested": "warning",
    "final_approval_needed": "warning",
    "fully_approved": "success",
}


def _title(event) -> str:
    kind = event.kind.value
    if kind == "stage_progress":
        return f"{event.actor_name or event.actor_id} approved {event.asset_name} at {event.stage_name}"
    if kind == "stage_advanced":
        return f"{event.asset_name} is ready for review at {event.stage_name}"
    if kind == "changes_requested":
        return f"Changes requested on {event.asset_name}"
    if kind == "final_approval_needed":
        return f"{event.asset_name} is waiting for your final approval"
    return f"{event.asset_name} is fully approved"


def _message(event) -> str:
    kind = event.kind.value
    if kind == "stage_progress":
        return f"Your approval is still needed for stage {event.stage_order} ({event.stage_name})."
    if kind == "stage_advanced":
        return f"Stage {event.stage_order} ({event.stage_name}) of {event.project_name} is open for review."
    if kind == "changes_requested":
        return (f"{event.actor_name or event.actor_id} requested changes at stage "
                f"{event.stage_order} ({event.stage_name}). The asset is back at stage 1.")
    if kind == "final_approval_needed":
        return f"Every stage of {event.project_name} has approved {event.asset_name}."
    return f"{event.asset_name} received final approval in {event.project_name}."


class NotificationDispatcher:
    """Delivers approval engine events after the transition commit."""

    @classmethod
    def dispatch(cls, events) -> int:
        """
        Deliver every event.  Never raises.

        Returns:
            Number of events whose in-app notifications were stored.
        """
        delivered = 0
        for event in events or ():
            try:
                cls._deliver(event)
                delivered += 1
            except Exception:
                db.session.rollback()
                logger.exception(
                    "Notification dispatch failed for %s", event.kind.value,
                    extra={"asset_id": event.asset_id, "project_id": event.project_id,
                           "event_kind": event.kind.value},
                )
        return delivered

    @classmethod
    def _deliver(cls, event):
        recipients = [r for r in dict.fromkeys(event.recipients) if r]
        if not recipients:
            return

        rows = NotificationService.broadcast(
            title=_title(event),
            message=_message(event),
            category=event.kind.value,
            severity=_SEVERITY.get(event.kind.value, "info"),
            organization_id=event.organization_id,
            project_id=event.project_id,
            entity_id=event.asset_id,
            recipients=recipients,
        )
        db.session.commit()

        if not current_app.config.get("NOTIFICATION_EMAIL_ENABLED", True):
            return

        contacts = cls._contacts(event, recipients)
        base_url = current_app.config.get("APP_BASE_URL", "").rstrip("/")
        context = {
            "asset_name": event.asset_name,
            "project_name": event.project_name,
            "stage_name": event.stage_name or "",
            "actor_name": event.actor_name or event.actor_id,
            "message": _message(event),
            "notes": event.notes,
            "asset_url": f"{base_url}/assets/{event.asset_id}",
        }
        for notif in rows:
            email, name = contacts.get(notif.recipient, (None, None))
            if not email:
                continue
            try:
                EmailService.send_from_template(
                    to_email=email,
                    to_name=name,
                    template_name=event.kind.value,
                    context=context,
                    category=event.kind.value,
                    notification_id=notif.id,
                    asset_id=event.asset_id,
                )
            except NotificationDeliveryFailure as exc:
                logger.warning(
                    "Dropping %s email: %s", event.kind.value, exc,
                    extra={"asset_id": event.asset_id, "event_kind": event.kind.value},
                )
        db.session.commit()

    @staticmethod
    def _contacts(event, recipients) -> dict[str, tuple[str | None, str | None]]:
        """Resolve ``user_id -> (email, name)`` from data the engine knows about."""
        contacts: dict[str, tuple[str | None, str | None]] = {}
        stmt = select(StageReviewer).where(
            StageReviewer.project_id == event.project_id,
            StageReviewer.user_id.in_(recipients),
        )
        for reviewer in db.session.execute(stmt).scalars():
            if reviewer.user_email and reviewer.user_id not in contacts:
                contacts[reviewer.user_id] = (reviewer.user_email, reviewer.user_name)

        project = db.session.get(Project, event.project_id)
        if project is not None and project.created_by_email:
            contacts.setdefault(project.created_by, (project.created_by_email, None))
        asset = db.session.get(Asset, event.asset_id)
        if asset is not None and asset.created_by_email:
            contacts.setdefault(asset.created_by, (asset.created_by_email, None))
        return contacts
