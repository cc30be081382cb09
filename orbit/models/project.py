"""
Approval Orbit
Project and asset models.

Models:
    - Project: container of assets, optionally gated by a Workflow
    - Asset:   a reviewable mockup moving through the project's stages
"""


from orbit.models import db, iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = {"active", "completed", "archived"}


class Project(db.Model):
    """
    Project entity.

    ``created_by`` is the project owner and the only user allowed to grant
    final approval on the project's assets.  A project without a workflow
    applies no stage gating.
    """

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    client_name = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), default="active", nullable=False)
    color = db.Column(db.String(20), default="blue")
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_by = db.Column(db.String(64), nullable=False)
    created_by_email = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow,
                           onupdate=utcnow)

    workflow = db.relationship("Workflow", back_populates="projects")
    assets = db.relationship("Asset", back_populates="project", lazy="dynamic")
    reviewers = db.relationship(
        "StageReviewer", back_populates="project", lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "client_name": self.client_name,
            "description": self.description,
            "status": self.status,
            "color": self.color,
            "workflow_id": self.workflow_id,
            "workflow": self.workflow.to_dict() if self.workflow else None,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


class Asset(db.Model):
    """
    Reviewable asset (card mockup).

    The current stage is never stored here; it is derived from the stage
    progress ledger.  ``version`` is the optimistic concurrency counter: every
    engine transition touches ``last_review_activity_at`` so the UPDATE of this
    row carries a version check and concurrent writers in other processes
    fail with StaleDataError.
    """

    __tablename__ = "assets"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    name = db.Column(db.String(300), nullable=False)
    image_url = db.Column(db.String(1000), nullable=True)
    created_by = db.Column(db.String(64), nullable=False)
    created_by_email = db.Column(db.String(255), nullable=True)

    review_round = db.Column(db.Integer, default=0, nullable=False,
                             comment="Incremented on every rollback to stage 1")

    # Final approval stamp
    final_approved_by = db.Column(db.String(64), nullable=True)
    final_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    final_approval_notes = db.Column(db.Text, nullable=True)

    last_review_activity_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow,
                           onupdate=utcnow)

    project = db.relationship("Project", back_populates="assets")
    stage_progress = db.relationship(
        "StageProgress", back_populates="asset", lazy="dynamic",
        cascade="all, delete-orphan", order_by="StageProgress.stage_order",
    )
    approvals = db.relationship(
        "StageApproval", back_populates="asset", lazy="dynamic", cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_final_approved(self) -> bool:
        return self.final_approved_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "project_id": self.project_id,
            "name": self.name,
            "image_url": self.image_url,
            "created_by": self.created_by,
            "review_round": self.review_round,
            "final_approved_by": self.final_approved_by,
            "final_approved_at": iso(self.final_approved_at),
            "final_approval_notes": self.final_approval_notes,
            "last_review_activity_at": (
                iso(self.last_review_activity_at)
            ),
            "version": self.version,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Asset {self.id}: {self.name[:40]}>"
