"""
Approval Orbit
Workflow definition model.

Models:
    - Workflow: named, ordered stage list owned by an organization

A stage is a plain dict ``{"order": int, "name": str, "color": str}`` stored
in a JSON column.  Orders are always contiguous ``1..N``; the store service
validates this before anything is written.
"""


from orbit.models import db, iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

STAGE_COLORS = ("yellow", "green", "blue", "purple", "red", "orange", "gray")
DEFAULT_STAGE_COLOR = "gray"


class Workflow(db.Model):
    """
    Ordered approval stage list.

    Business rules:
    - At most one default workflow per organization.
    - Archived workflows stay readable by the projects that reference them.
    - Hard delete is refused while any project references the workflow.
    """

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    stages = db.Column(db.JSON, nullable=False, default=list,
                       comment="[{order, name, color}] sorted by order")
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    is_archived = db.Column(db.Boolean, default=False, nullable=False)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow,
                           onupdate=utcnow)

    projects = db.relationship("Project", back_populates="workflow", lazy="dynamic")

    @property
    def stage_count(self) -> int:
        return len(self.stages or [])

    def ordered_stages(self) -> list[dict]:
        return sorted(self.stages or [], key=lambda s: s["order"])

    def stage(self, order: int) -> dict | None:
        """Return the stage dict with the given order, or None."""
        for s in self.stages or []:
            if s["order"] == order:
                return s
        return None

    def has_stage(self, order: int) -> bool:
        return self.stage(order) is not None

    def to_dict(self, project_count=None):
        result = {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "stages": self.ordered_stages(),
            "stage_count": self.stage_count,
            "is_default": self.is_default,
            "is_archived": self.is_archived,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if project_count is not None:
            result["project_count"] = project_count
        return result

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name} ({self.stage_count} stages)>"
