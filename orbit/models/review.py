"""
Approval Orbit
Stage review models: roster, progress ledger and approval audit trail.

Models:
    - StageReviewer:  who may approve a stage of a project
    - StageProgress:  one ledger row per (asset, stage)
    - StageApproval:  one row per reviewer action, scoped to a review round

Only the approval engine writes StageProgress.status.  StageApproval rows are
never removed by a rollback; ``review_round`` decides which of them still
count toward a stage quorum.
"""

import enum

from orbit.models import db, iso, utcnow


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class ApprovalAction(str, enum.Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class StageReviewer(db.Model):
    """
    Reviewer assignment for one stage of a project.

    The number of reviewers on a stage is that stage's quorum.  Removing a
    reviewer never touches approvals they already recorded.
    """

    __tablename__ = "stage_reviewers"
    __table_args__ = (
        db.UniqueConstraint("project_id", "stage_order", "user_id", name="uq_stage_reviewer"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_order = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    user_name = db.Column(db.String(150), nullable=False)
    user_email = db.Column(db.String(255), nullable=True)
    added_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    project = db.relationship("Project", back_populates="reviewers")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_order": self.stage_order,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "added_by": self.added_by,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<StageReviewer {self.user_id} @ project {self.project_id} stage {self.stage_order}>"


class StageProgress(db.Model):
    """
    Ledger row for one stage of one asset.

    Created lazily the first time the stage is reached and mutated in place
    afterwards.  Deleted only with its asset.
    """

    __tablename__ = "stage_progress"
    __table_args__ = (
        db.UniqueConstraint("asset_id", "stage_order", name="uq_stage_progress_asset_stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(
        db.Integer, db.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_order = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.Enum(StageStatus, native_enum=False, length=32, values_callable=_enum_values,
                validate_strings=True),
        nullable=False,
        default=StageStatus.PENDING,
    )
    reviewed_by = db.Column(db.String(64), nullable=True)
    reviewed_by_name = db.Column(db.String(150), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow,
                           onupdate=utcnow)

    asset = db.relationship("Asset", back_populates="stage_progress")

    def to_dict(self):
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "stage_order": self.stage_order,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "reviewed_by_name": self.reviewed_by_name,
            "reviewed_at": iso(self.reviewed_at),
            "notes": self.notes,
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<StageProgress asset={self.asset_id} stage={self.stage_order} {self.status.value}>"


class StageApproval(db.Model):
    """
    One reviewer action on one stage, within one review round.

    Re-approving in the same round updates the existing row instead of
    adding a new one, so a reviewer is counted at most once per stage.
    """

    __tablename__ = "stage_approvals"
    __table_args__ = (
        db.UniqueConstraint(
            "asset_id", "review_round", "stage_order", "user_id", "action",
            name="uq_stage_approval_tuple",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(
        db.Integer, db.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    review_round = db.Column(db.Integer, nullable=False, default=0)
    stage_order = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.String(64), nullable=False)
    user_name = db.Column(db.String(150), nullable=True)
    action = db.Column(
        db.Enum(ApprovalAction, native_enum=False, length=32, values_callable=_enum_values,
                validate_strings=True),
        nullable=False,
    )
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow,
                           onupdate=utcnow)

    asset = db.relationship("Asset", back_populates="approvals")

    def to_dict(self):
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "review_round": self.review_round,
            "stage_order": self.stage_order,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "action": self.action.value,
            "notes": self.notes,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return (
            f"<StageApproval asset={self.asset_id} r{self.review_round} "
            f"stage={self.stage_order} {self.user_id} {self.action.value}>"
        )
