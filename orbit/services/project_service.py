"""
Project and asset service.

Thin CRUD boundary around the approval engine: creating an asset inside a
project with a workflow, or moving one into such a project, puts it into
stage 1 through ``approval_engine.enter_workflow``.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from orbit.core.exceptions import ConflictError, ValidationError
from orbit.models import db
from orbit.models.project import PROJECT_STATUSES, Asset, Project
from orbit.models.review import StageProgress
from orbit.models.workflow import Workflow
from orbit.services import approval_engine
from orbit.utils.helpers import commit_or_raise, get_scoped, parse_optional_int

logger = logging.getLogger(__name__)


def _resolve_workflow(workflow_id, organization_id) -> Workflow | None:
    workflow_id = parse_optional_int(workflow_id, "workflow_id")
    if workflow_id is None:
        return None
    wf = get_scoped(Workflow, workflow_id, organization_id)
    if wf.is_archived:
        raise ValidationError("Archived workflows cannot be assigned", details={"workflow_id": "archived"})
    return wf


# ── Projects ─────────────────────────────────────────────────────────────────


def list_projects(organization_id: str, status: str | None = None) -> list[Project]:
    stmt = select(Project).where(Project.organization_id == organization_id)
    if status:
        stmt = stmt.where(Project.status == status)
    return list(db.session.execute(stmt.order_by(Project.created_at.desc(), Project.id.desc())).scalars())


def create_project(organization_id: str, data: dict, created_by: str, created_by_email=None) -> Project:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Project name is required", details={"name": "is required"})
    status = data.get("status") or "active"
    if status not in PROJECT_STATUSES:
        raise ValidationError(f"status must be one of {sorted(PROJECT_STATUSES)}", details={"status": status})
    workflow = _resolve_workflow(data.get("workflow_id"), organization_id)

    project = Project(
        organization_id=organization_id,
        name=name,
        client_name=(data.get("client_name") or "").strip() or None,
        description=(data.get("description") or "").strip(),
        status=status,
        color=data.get("color") or "blue",
        workflow_id=workflow.id if workflow else None,
        created_by=created_by,
        created_by_email=created_by_email,
    )
    db.session.add(project)
    commit_or_raise()
    logger.info("Project created id=%s", project.id,
                extra={"organization_id": organization_id, "project_id": project.id, "user_id": created_by})
    return project


def update_project(project_id: int, organization_id: str, data: dict):
    """Partial update.  Attaching a workflow seeds stage 1 for waiting assets.

    Returns:
        (project, events) where events are the stage-opened notifications.

    Raises:
        ConflictError: switching to a different workflow while assets of the
            project already have ledger rows.
    """
    project = get_scoped(Project, project_id, organization_id)
    for key in ("name", "client_name", "description", "color"):
        if key in data:
            setattr(project, key, (data.get(key) or "").strip() if key != "color" else data.get(key))
    if not project.name:
        raise ValidationError("Project name is required", details={"name": "is required"})
    if "status" in data:
        if data["status"] not in PROJECT_STATUSES:
            raise ValidationError(f"status must be one of {sorted(PROJECT_STATUSES)}",
                                  details={"status": data["status"]})
        project.status = data["status"]

    attached = False
    if "workflow_id" in data:
        workflow = _resolve_workflow(data.get("workflow_id"), organization_id)
        new_id = workflow.id if workflow else None
        if new_id != project.workflow_id:
            started = db.session.execute(
                select(StageProgress.id)
                .join(Asset, StageProgress.asset_id == Asset.id)
                .where(Asset.project_id == project.id)
                .limit(1)
            ).first()
            if started is not None:
                raise ConflictError(
                    "Project", "workflow_id", new_id,
                    message="Cannot change the workflow of a project whose assets are already in review",
                )
            project.workflow_id = new_id
            attached = new_id is not None

    commit_or_raise()
    events = []
    if attached:
        for asset_id in db.session.execute(
            select(Asset.id).where(Asset.project_id == project.id)
        ).scalars().all():
            events.extend(approval_engine.enter_workflow(asset_id).events)
    return project, events


# ── Assets ───────────────────────────────────────────────────────────────────


def list_assets(project_id: int, organization_id: str) -> list[Asset]:
    project = get_scoped(Project, project_id, organization_id)
    stmt = select(Asset).where(Asset.project_id == project.id).order_by(Asset.created_at, Asset.id)
    return list(db.session.execute(stmt).scalars())


def create_asset(project_id: int | None, organization_id: str, data: dict,
                 created_by: str, created_by_email: str | None = None):
    """Create an asset and enter it into its project's workflow.

    Returns:
        (asset, TransitionResult | None); the result carries the
        stage-opened event to dispatch.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Asset name is required", details={"name": "is required"})
    project = get_scoped(Project, project_id, organization_id) if project_id is not None else None

    asset = Asset(
        organization_id=organization_id,
        project_id=project.id if project else None,
        name=name,
        image_url=data.get("image_url"),
        created_by=created_by,
        created_by_email=created_by_email,
    )
    db.session.add(asset)
    commit_or_raise()
    logger.info("Asset created id=%s", asset.id,
                extra={"asset_id": asset.id, "project_id": asset.project_id, "user_id": created_by})

    result = None
    if project is not None and project.workflow_id is not None:
        result = approval_engine.enter_workflow(asset.id, actor_id=created_by)
    return asset, result


def move_asset(asset_id: int, organization_id: str, project_id):
    """Attach an asset to a project (or detach it with ``None``).

    Raises:
        ConflictError: the asset already has review progress under another
            workflow.
    """
    asset = get_scoped(Asset, asset_id, organization_id)
    project_id = parse_optional_int(project_id, "project_id")
    project = get_scoped(Project, project_id, organization_id) if project_id is not None else None

    old_workflow_id = asset.project.workflow_id if asset.project else None
    new_workflow_id = project.workflow_id if project else None
    has_rows = asset.stage_progress.first() is not None
    if has_rows and new_workflow_id != old_workflow_id:
        raise ConflictError(
            "Asset", "project_id", project_id,
            message="Asset already has review progress under a different workflow",
        )

    asset.project_id = project.id if project else None
    commit_or_raise()

    result = None
    if new_workflow_id is not None:
        result = approval_engine.enter_workflow(asset.id)
    return asset, result
