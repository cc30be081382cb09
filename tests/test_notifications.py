"""
Notification dispatch tests.

Tests cover:
  - Engine events become in-app notifications for the right users
  - Email audit rows in dev mode and under SMTP failure with retries
  - Notification inbox API (list, mark read, mark all read)
"""

import smtplib

import pytest

from orbit.models import db
from orbit.models.notification import EmailLog, Notification
from orbit.services import approval_engine
from orbit.services.email_service import EmailService
from orbit.services.notification import NotificationDispatcher, NotificationService

from conftest import DESIGNER, ORG, OWNER


@pytest.fixture()
def pipeline(make_pipeline):
    return make_pipeline(stages=("Concept", "Final"), reviewers={1: ["alice", "bob"], 2: ["carol"]})


def _notifications_for(user_id):
    return Notification.query.filter_by(recipient=user_id).order_by(Notification.id).all()


def _failing_smtp(**kwargs):
    raise smtplib.SMTPException("connection refused")


class TestDispatch:
    def test_stage_entry_notifies_stage_one_reviewers(self, client, auth_headers, make_pipeline):
        p = make_pipeline(stages=("Concept",), reviewers={1: ["alice"]}, asset_count=0)
        res = client.post(f"/api/v1/projects/{p.project_id}/assets",
                          json={"name": "Poster"}, headers=auth_headers(DESIGNER))
        assert res.status_code == 201
        notes = _notifications_for("alice")
        assert len(notes) == 1
        assert notes[0].category == "stage_advanced"
        assert notes[0].entity_id == res.get_json()["id"]

    def test_progress_notifies_remaining_reviewers(self, pipeline):
        result = approval_engine.submit_approval(pipeline.asset_id, "alice", organization_id=ORG)
        assert NotificationDispatcher.dispatch(result.events) == 1
        [notif] = _notifications_for("bob")
        assert notif.category == "stage_progress"
        assert notif.severity == "info"
        assert notif.title.startswith("alice approved")
        assert _notifications_for("alice") == []

    def test_changes_requested_notifies_creator(self, pipeline):
        result = approval_engine.request_changes(pipeline.asset_id, "bob", "Logo too small", organization_id=ORG)
        NotificationDispatcher.dispatch(result.events)
        [notif] = _notifications_for(DESIGNER)
        assert notif.category == "changes_requested"
        assert notif.severity == "warning"

    def test_final_approval_needed_notifies_owner(self, pipeline):
        for user in ("alice", "bob", "carol"):
            result = approval_engine.submit_approval(pipeline.asset_id, user, organization_id=ORG)
        NotificationDispatcher.dispatch(result.events)
        assert [n.category for n in _notifications_for(OWNER)] == ["final_approval_needed"]

    def test_dev_mode_logs_emails_as_sent(self, pipeline):
        result = approval_engine.submit_approval(pipeline.asset_id, "alice", organization_id=ORG)
        NotificationDispatcher.dispatch(result.events)
        [log] = EmailLog.query.filter_by(recipient_email="bob@example.com").all()
        assert log.status == "sent"
        assert log.template_name == "stage_progress"
        assert log.asset_id == pipeline.asset_id

    def test_email_can_be_disabled(self, app, pipeline, monkeypatch):
        monkeypatch.setitem(app.config, "NOTIFICATION_EMAIL_ENABLED", False)
        result = approval_engine.submit_approval(pipeline.asset_id, "alice", organization_id=ORG)
        NotificationDispatcher.dispatch(result.events)
        assert len(_notifications_for("bob")) == 1
        assert EmailLog.query.count() == 0

    def test_dispatch_never_raises(self, pipeline, monkeypatch):
        result = approval_engine.submit_approval(pipeline.asset_id, "alice", organization_id=ORG)

        def explode(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(NotificationService, "broadcast", explode)
        assert NotificationDispatcher.dispatch(result.events) == 0


class TestEmailFailure:
    def test_smtp_failure_is_retried_and_recorded(self, app, client, auth_headers, pipeline, monkeypatch):
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.invalid")
        monkeypatch.setattr(EmailService, "_send_smtp", staticmethod(_failing_smtp))

        res = client.post(f"/api/v1/assets/{pipeline.asset_id}/approve",
                          json={"notes": "Looks good"}, headers=auth_headers("alice"))

        assert res.status_code == 200
        assert res.get_json()["events"] == ["stage_progress"]
        [log] = EmailLog.query.filter_by(recipient_email="bob@example.com").all()
        assert log.status == "failed"
        assert log.attempts == 3
        assert "connection refused" in log.error_message
        assert len(_notifications_for("bob")) == 1

    def test_send_raises_delivery_failure(self, app, monkeypatch):
        from orbit.core.exceptions import NotificationDeliveryFailure

        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.invalid")
        monkeypatch.setitem(app.config, "NOTIFICATION_MAX_ATTEMPTS", 2)
        monkeypatch.setattr(EmailService, "_send_smtp", staticmethod(_failing_smtp))
        with pytest.raises(NotificationDeliveryFailure) as exc:
            EmailService.send(to_email="x@example.com", subject="Hi", html_body="<p>Hi</p>")
        assert exc.value.recipient == "x@example.com"
        log = EmailLog.query.filter_by(recipient_email="x@example.com").one()
        assert log.attempts == 2
        assert log.status == "failed"

    def test_template_rendering(self, app, monkeypatch):
        sent = {}

        def capture(**kwargs):
            sent.update(kwargs)

        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.invalid")
        monkeypatch.setattr(EmailService, "_send_smtp", staticmethod(capture))
        log = EmailService.send_from_template(
            to_email="erin@example.com",
            template_name="changes_requested",
            context={"asset_name": "Poster", "project_name": "Spring", "stage_name": "Brand",
                     "message": "Back to stage 1", "notes": "Logo too small", "asset_url": "http://x/1"},
        )
        assert log.status == "sent"
        assert sent["subject"] == "[Approval Orbit] Changes requested on Poster"
        assert "Logo too small" in sent["html_body"]
        assert "Changes requested at stage Brand" in sent["html_body"]

    def test_unknown_template_is_skipped(self):
        assert EmailService.send_from_template(
            to_email="erin@example.com", template_name="nope", context={},
        ) is None


class TestInboxAPI:
    def _seed(self, pipeline):
        result = approval_engine.submit_approval(pipeline.asset_id, "alice", organization_id=ORG)
        NotificationDispatcher.dispatch(result.events)
        result = approval_engine.request_changes(pipeline.asset_id, "bob", "Crop it", organization_id=ORG)
        NotificationDispatcher.dispatch(result.events)

    def test_list_is_scoped_to_caller(self, client, auth_headers, pipeline):
        self._seed(pipeline)
        res = client.get("/api/v1/notifications", headers=auth_headers("bob"))
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 1
        assert data["unread_count"] == 1
        assert data["items"][0]["recipient"] == "bob"

    def test_mark_read_and_unread_filter(self, client, auth_headers, pipeline):
        self._seed(pipeline)
        items = client.get("/api/v1/notifications", headers=auth_headers("bob")).get_json()["items"]
        res = client.post(f"/api/v1/notifications/{items[0]['id']}/read", headers=auth_headers("bob"))
        assert res.status_code == 200
        assert res.get_json()["is_read"] is True
        res = client.get("/api/v1/notifications?unread_only=true", headers=auth_headers("bob"))
        assert res.get_json()["total"] == 0

    def test_cannot_read_someone_elses_notification(self, client, auth_headers, pipeline):
        self._seed(pipeline)
        notif_id = _notifications_for("bob")[0].id
        res = client.post(f"/api/v1/notifications/{notif_id}/read", headers=auth_headers("mallory"))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_mark_all_read(self, client, auth_headers, pipeline):
        self._seed(pipeline)
        res = client.post("/api/v1/notifications/read-all", headers=auth_headers(DESIGNER))
        assert res.status_code == 200
        assert res.get_json()["marked"] == 1
        db.session.expire_all()
        assert NotificationService.unread_count(DESIGNER) == 0
