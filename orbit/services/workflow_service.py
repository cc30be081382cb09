"""
Workflow Definition Store.

Holds the ordered stage lists each organization routes its assets through.

Design decisions:
    - Stage orders are validated to be exactly ``1..N`` before any write.
    - Setting ``is_default`` clears the previous default of the organization.
    - A workflow referenced by a project cannot be deleted; archive it.
    - A stage-count change is refused while a referencing project has an
      asset mid-workflow.  Renames and recolors with the same count are fine
      because the ledger only stores stage orders.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from orbit.core.exceptions import ConflictError, ValidationError
from orbit.models import db
from orbit.models.project import Asset, Project
from orbit.models.review import StageProgress, StageStatus
from orbit.models.workflow import DEFAULT_STAGE_COLOR, STAGE_COLORS, Workflow
from orbit.utils.helpers import commit_or_raise, get_scoped

logger = logging.getLogger(__name__)


# ── Validation ───────────────────────────────────────────────────────────────


def normalize_stages(raw_stages) -> list[dict]:
    """Validate a stage payload and return it sorted by order.

    Raises:
        ValidationError: empty list, non-sequential orders, blank names or an
            unknown color.  ``details`` maps stage positions to the problem.
    """
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ValidationError("At least one stage is required", details={"stages": "empty"})

    errors = {}
    stages = []
    for index, raw in enumerate(raw_stages):
        if not isinstance(raw, dict):
            errors[f"stages[{index}]"] = "must be an object"
            continue
        name = (raw.get("name") or "").strip()
        color = (raw.get("color") or DEFAULT_STAGE_COLOR).strip().lower()
        order = raw.get("order")
        if not name:
            errors[f"stages[{index}].name"] = "is required"
        if color not in STAGE_COLORS:
            errors[f"stages[{index}].color"] = f"must be one of {', '.join(STAGE_COLORS)}"
        if isinstance(order, bool) or not isinstance(order, int):
            errors[f"stages[{index}].order"] = "must be an integer"
            continue
        stages.append({"order": order, "name": name, "color": color})

    if errors:
        raise ValidationError("Invalid workflow stages", details=errors)

    stages.sort(key=lambda s: s["order"])
    orders = [s["order"] for s in stages]
    if orders != list(range(1, len(stages) + 1)):
        raise ValidationError(
            "Stage orders must be sequential starting from 1",
            details={"stages": f"got orders {orders}"},
        )
    return stages


def _clear_default(organization_id: str, keep_id: int | None = None) -> None:
    stmt = select(Workflow).where(
        Workflow.organization_id == organization_id,
        Workflow.is_default.is_(True),
    )
    for wf in db.session.execute(stmt).scalars():
        if wf.id != keep_id:
            wf.is_default = False


def _project_count(workflow_id: int) -> int:
    return db.session.execute(
        select(func.count(Project.id)).where(Project.workflow_id == workflow_id)
    ).scalar_one()


def _assets_in_flight(workflow_id: int) -> int:
    """Count assets of referencing projects that are mid-workflow."""
    stmt = (
        select(func.count(func.distinct(Asset.id)))
        .join(Project, Asset.project_id == Project.id)
        .join(StageProgress, StageProgress.asset_id == Asset.id)
        .where(
            Project.workflow_id == workflow_id,
            Asset.final_approved_at.is_(None),
            StageProgress.status.in_([StageStatus.IN_REVIEW, StageStatus.APPROVED,
                                      StageStatus.CHANGES_REQUESTED]),
        )
    )
    return db.session.execute(stmt).scalar_one()


# ── Public API ───────────────────────────────────────────────────────────────


def list_workflows(organization_id: str, include_archived: bool = False) -> list[dict]:
    """Return the organization's workflows, default first, with usage counts."""
    stmt = select(Workflow).where(Workflow.organization_id == organization_id)
    if not include_archived:
        stmt = stmt.where(Workflow.is_archived.is_(False))
    stmt = stmt.order_by(Workflow.is_default.desc(), Workflow.created_at.desc(), Workflow.id.desc())
    return [
        wf.to_dict(project_count=_project_count(wf.id))
        for wf in db.session.execute(stmt).scalars()
    ]


def get_workflow(workflow_id: int, organization_id: str | None = None) -> Workflow:
    return get_scoped(Workflow, workflow_id, organization_id)


def create_workflow(organization_id: str, data: dict, created_by: str | None = None) -> Workflow:
    """Create a workflow from an API payload.

    Args:
        organization_id: Owning organization.
        data: ``{name, description?, stages: [{order, name, color}], is_default?}``.
        created_by: Acting user id.

    Returns:
        The committed Workflow.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Workflow name is required", details={"name": "is required"})
    stages = normalize_stages(data.get("stages"))
    is_default = bool(data.get("is_default", False))

    if is_default:
        _clear_default(organization_id)

    wf = Workflow(
        organization_id=organization_id,
        name=name,
        description=(data.get("description") or "").strip(),
        stages=stages,
        is_default=is_default,
        created_by=created_by,
    )
    db.session.add(wf)
    commit_or_raise()
    logger.info(
        "Workflow created id=%s stages=%d", wf.id, len(stages),
        extra={"organization_id": organization_id, "user_id": created_by},
    )
    return wf


def update_workflow(workflow_id: int, organization_id: str, data: dict) -> Workflow:
    """Apply a partial update.

    Raises:
        ConflictError: the stage count changes while assets are in flight.
    """
    wf = get_workflow(workflow_id, organization_id)

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Workflow name is required", details={"name": "is required"})
        wf.name = name
    if "description" in data:
        wf.description = (data.get("description") or "").strip()
    if "stages" in data:
        stages = normalize_stages(data.get("stages"))
        if len(stages) != wf.stage_count and _assets_in_flight(wf.id):
            raise ConflictError(
                "Workflow", "stages", len(stages),
                message="Cannot change the number of stages while assets are mid-workflow",
            )
        wf.stages = stages
    if "is_archived" in data:
        wf.is_archived = bool(data["is_archived"])
        if wf.is_archived:
            wf.is_default = False
    if data.get("is_default") is True and not wf.is_archived:
        _clear_default(organization_id, keep_id=wf.id)
        wf.is_default = True
    elif data.get("is_default") is False:
        wf.is_default = False

    commit_or_raise()
    logger.info("Workflow updated id=%s", wf.id, extra={"organization_id": organization_id})
    return wf


def delete_workflow(workflow_id: int, organization_id: str) -> None:
    """Hard-delete an unreferenced workflow.

    Raises:
        ConflictError: a project still references the workflow.
    """
    wf = get_workflow(workflow_id, organization_id)
    count = _project_count(wf.id)
    if count:
        raise ConflictError(
            "Workflow", "projects", count,
            message=f"Workflow is used by {count} project(s); archive it instead",
        )
    db.session.delete(wf)
    commit_or_raise()
    logger.info("Workflow deleted id=%s", workflow_id, extra={"organization_id": organization_id})
