"""
Approval Orbit
Inbox and outbound mail records.

Notification rows are written by the dispatcher once per recipient per
approval event.  EmailLog keeps one row per email the dispatcher tried to
send, failed ones included.
"""

from orbit.models import db, iso, utcnow


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=True, index=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    recipient = db.Column(db.String(64), nullable=False, index=True, comment="User id")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system", comment="Approval event kind")
    severity = db.Column(db.String(20), default="info")
    entity_type = db.Column(db.String(30), default="asset")
    entity_id = db.Column(db.Integer, nullable=True)
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    _FIELDS = ("id", "project_id", "recipient", "title", "message", "category",
               "severity", "entity_type", "entity_id", "is_read")

    def mark_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = utcnow()

    def to_dict(self):
        data = {name: getattr(self, name) for name in self._FIELDS}
        data["read_at"] = iso(self.read_at)
        data["created_at"] = iso(self.created_at)
        return data

    def __repr__(self):
        return f"<Notification {self.id} to={self.recipient} {self.category}>"


class EmailLog(db.Model):
    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    recipient_name = db.Column(db.String(150), nullable=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True)
    category = db.Column(db.String(30), default="system")
    # queued -> sent | failed
    status = db.Column(db.String(20), default="queued")
    attempts = db.Column(db.Integer, default=0)
    error_message = db.Column(db.Text, nullable=True)
    notification_id = db.Column(db.Integer, nullable=True)
    asset_id = db.Column(db.Integer, nullable=True, index=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    _FIELDS = ("id", "recipient_email", "recipient_name", "subject", "template_name",
               "category", "status", "attempts", "error_message", "asset_id")

    def to_dict(self):
        data = {name: getattr(self, name) for name in self._FIELDS}
        data["sent_at"] = iso(self.sent_at)
        data["created_at"] = iso(self.created_at)
        return data

    def __repr__(self):
        return f"<EmailLog {self.id} {self.status} -> {self.recipient_email}>"
