"""
Reviewer Roster Service.

Per project, per stage, the set of users allowed to approve that stage.
The roster size of a stage is its quorum and is always read live; nothing
here caches it.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError

from orbit.core.exceptions import NotFoundError, PreconditionFailed, ValidationError
from orbit.models import db
from orbit.models.project import Asset, Project
from orbit.models.review import (
    ApprovalAction,
    StageApproval,
    StageProgress,
    StageReviewer,
    StageStatus,
)
from orbit.utils.helpers import get_scoped

logger = logging.getLogger(__name__)


def _normalize_email(email: str | None) -> str | None:
    email = (email or "").strip()
    if not email:
        return None
    try:
        return validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(f"Invalid user_email: {exc}", details={"user_email": str(exc)}) from exc


def _find(project_id: int, stage_order: int, user_id: str) -> StageReviewer | None:
    stmt = select(StageReviewer).where(
        StageReviewer.project_id == project_id,
        StageReviewer.stage_order == stage_order,
        StageReviewer.user_id == user_id,
    )
    return db.session.execute(stmt).scalars().first()


def add_reviewer(
    project_id: int,
    stage_order: int,
    user_id: str,
    user_name: str,
    user_email: str | None = None,
    added_by: str | None = None,
    organization_id: str | None = None,
) -> tuple[StageReviewer, bool]:
    """Assign a user to a stage of a project.

    Adding a user already on the stage is a no-op that returns the existing
    assignment.

    Returns:
        (reviewer, created)

    Raises:
        PreconditionFailed: the project has no workflow.
        ValidationError: unknown stage order, missing user fields, bad email.
    """
    project = get_scoped(Project, project_id, organization_id)
    if project.workflow is None:
        raise PreconditionFailed("Project has no workflow assigned", kind="no_workflow")
    if stage_order is None or not project.workflow.has_stage(stage_order):
        raise ValidationError(
            f"Stage {stage_order} does not exist in the project's workflow",
            details={"stage_order": "unknown stage"},
            kind="unknown_stage",
        )
    user_id = (user_id or "").strip()
    user_name = (user_name or "").strip()
    if not user_id or not user_name:
        raise ValidationError(
            "user_id and user_name are required",
            details={k: "is required" for k, v in (("user_id", user_id), ("user_name", user_name)) if not v},
        )
    email = _normalize_email(user_email)

    existing = _find(project.id, stage_order, user_id)
    if existing is not None:
        return existing, False

    reviewer = StageReviewer(
        project_id=project.id,
        stage_order=stage_order,
        user_id=user_id,
        user_name=user_name,
        user_email=email,
        added_by=added_by,
    )
    db.session.add(reviewer)
    try:
        db.session.commit()
    except IntegrityError:
        # Another request added the same user first
        db.session.rollback()
        existing = _find(project.id, stage_order, user_id)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "Reviewer %s added to stage %s", user_id, stage_order,
        extra={"project_id": project.id, "stage_order": stage_order, "user_id": added_by},
    )
    return reviewer, True


def remove_reviewer(reviewer_id: int, organization_id: str | None = None) -> None:
    """Remove a roster entry.  Approvals the user already gave stay valid."""
    reviewer = get_scoped(StageReviewer, reviewer_id, label="Reviewer")
    if organization_id is not None and reviewer.project.organization_id != organization_id:
        raise NotFoundError(resource="Reviewer", resource_id=reviewer_id, organization_id=organization_id)
    project_id, stage_order = reviewer.project_id, reviewer.stage_order
    db.session.delete(reviewer)
    db.session.commit()
    logger.info(
        "Reviewer %s removed from stage %s", reviewer_id, stage_order,
        extra={"project_id": project_id, "stage_order": stage_order},
    )


def list_reviewers_for_stage(project_id: int, stage_order: int) -> list[StageReviewer]:
    stmt = (
        select(StageReviewer)
        .where(StageReviewer.project_id == project_id, StageReviewer.stage_order == stage_order)
        .order_by(StageReviewer.created_at, StageReviewer.id)
    )
    return list(db.session.execute(stmt).scalars())


def list_reviewers_by_stage(project_id: int) -> dict[int, list[StageReviewer]]:
    """Return the whole roster of a project keyed by stage order."""
    stmt = (
        select(StageReviewer)
        .where(StageReviewer.project_id == project_id)
        .order_by(StageReviewer.stage_order, StageReviewer.created_at, StageReviewer.id)
    )
    grouped: dict[int, list[StageReviewer]] = defaultdict(list)
    for reviewer in db.session.execute(stmt).scalars():
        grouped[reviewer.stage_order].append(reviewer)
    return dict(grouped)


def required_approvals(project_id: int, stage_order: int) -> int:
    """Current roster size of a stage; 0 means the stage can never complete."""
    return db.session.execute(
        select(func.count(StageReviewer.id)).where(
            StageReviewer.project_id == project_id,
            StageReviewer.stage_order == stage_order,
        )
    ).scalar_one()


def is_reviewer(project_id: int, stage_order: int, user_id: str) -> bool:
    return _find(project_id, stage_order, user_id) is not None


def pending_reviews_for_user(user_id: str, organization_id: str) -> list[dict]:
    """Assets waiting on ``user_id`` at their current stage, grouped by project.

    An asset is waiting on a user when its in-review stage lists the user
    as a reviewer and the user has not approved it in the current round.
    """
    already_approved = (
        select(StageApproval.id)
        .where(
            StageApproval.asset_id == Asset.id,
            StageApproval.review_round == Asset.review_round,
            StageApproval.stage_order == StageProgress.stage_order,
            StageApproval.user_id == user_id,
            StageApproval.action == ApprovalAction.APPROVE,
        )
        .exists()
    )
    stmt = (
        select(Asset, Project, StageProgress)
        .join(Project, Asset.project_id == Project.id)
        .join(StageProgress, and_(
            StageProgress.asset_id == Asset.id,
            StageProgress.status == StageStatus.IN_REVIEW,
        ))
        .join(StageReviewer, and_(
            StageReviewer.project_id == Project.id,
            StageReviewer.stage_order == StageProgress.stage_order,
            StageReviewer.user_id == user_id,
        ))
        .where(Asset.organization_id == organization_id, ~already_approved)
        .order_by(Project.name, StageProgress.updated_at.desc())
    )

    projects: dict[int, dict] = {}
    for asset, project, progress in db.session.execute(stmt).all():
        stage = project.workflow.stage(progress.stage_order) if project.workflow else None
        if stage is None:
            continue
        entry = projects.setdefault(project.id, {
            "project": {"id": project.id, "name": project.name, "color": project.color},
            "assets": [],
        })
        entry["assets"].append({
            "asset_id": asset.id,
            "asset_name": asset.name,
            "image_url": asset.image_url,
            "stage_order": progress.stage_order,
            "stage_name": stage["name"],
            "stage_color": stage["color"],
            "in_review_since": progress.updated_at.isoformat() if progress.updated_at else None,
        })
    return list(projects.values())
