"""
Metrics Aggregator: read-only rollups over the stage progress ledger.

Progress of a project is ``approved stage slots / (assets × stages)``.
Projects without a workflow report ``has_workflow=False`` and are left out
of every ratio rather than counted as zero progress.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from flask import current_app
from sqlalchemy import and_, select

from orbit.models import db
from orbit.models.project import Asset, Project
from orbit.models.review import ApprovalAction, StageApproval, StageProgress, StageStatus
from orbit.services import reviewer_service, stage_ledger
from orbit.services.project_service import list_projects
from orbit.services.stage_ledger import AssetState
from orbit.utils.helpers import get_scoped

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = 20


def _threshold() -> float:
    return float(current_app.config.get("NEAR_COMPLETION_THRESHOLD", 80))


def _percent(part: int, whole: int) -> int:
    return round(part * 100 / whole) if whole else 0


def _rows_for(asset_ids: list[int]) -> dict[int, dict[int, StageProgress]]:
    rows: dict[int, dict[int, StageProgress]] = defaultdict(dict)
    if not asset_ids:
        return rows
    stmt = select(StageProgress).where(StageProgress.asset_id.in_(asset_ids))
    for row in db.session.execute(stmt).scalars():
        rows[row.asset_id][row.stage_order] = row
    return rows


def _assets_with_current_round_approvals(asset_ids: list[int]) -> set[int]:
    if not asset_ids:
        return set()
    stmt = (
        select(StageApproval.asset_id)
        .join(Asset, and_(Asset.id == StageApproval.asset_id,
                          Asset.review_round == StageApproval.review_round))
        .where(StageApproval.asset_id.in_(asset_ids), StageApproval.action == ApprovalAction.APPROVE)
        .distinct()
    )
    return set(db.session.execute(stmt).scalars())


def _recent_activity(asset_ids: list[int], limit: int = RECENT_ACTIVITY_LIMIT,
                     user_id: str | None = None) -> list[dict]:
    if not asset_ids:
        return []
    stmt = (
        select(StageApproval, Asset.name)
        .join(Asset, Asset.id == StageApproval.asset_id)
        .where(StageApproval.asset_id.in_(asset_ids))
    )
    if user_id is not None:
        stmt = stmt.where(StageApproval.user_id == user_id)
    stmt = stmt.order_by(StageApproval.updated_at.desc(), StageApproval.id.desc()).limit(limit)
    activity = []
    for approval, asset_name in db.session.execute(stmt).all():
        item = approval.to_dict()
        item["asset_name"] = asset_name
        activity.append(item)
    return activity


def project_metrics(project_id: int, organization_id: str | None = None) -> dict:
    """Dashboard rollup of one project.

    Returns:
        dict with ``progress_percentage``, ``stage_breakdown`` (assets sitting
        at each stage), state counts, ``needs_attention`` and
        ``near_completion`` asset id lists and recent reviewer activity.
    """
    project = get_scoped(Project, project_id, organization_id)
    workflow = project.workflow
    assets = list(db.session.execute(
        select(Asset).where(Asset.project_id == project.id).order_by(Asset.id)
    ).scalars())
    asset_ids = [a.id for a in assets]

    result = {
        "project_id": project.id,
        "project_name": project.name,
        "has_workflow": workflow is not None,
        "total_assets": len(assets),
        "progress_percentage": None,
        "approved_slots": 0,
        "total_slots": 0,
        "stage_breakdown": [],
        "not_started": 0,
        "in_review": 0,
        "pending_final_approval": 0,
        "fully_approved": 0,
        "needs_attention": [],
        "near_completion": [],
        "recent_activity": _recent_activity(asset_ids),
    }
    if workflow is None:
        return result

    stages = workflow.ordered_stages()
    last_order = stages[-1]["order"]
    at_stage = {s["order"]: 0 for s in stages}
    rows_by_asset = _rows_for(asset_ids)
    resumed = _assets_with_current_round_approvals(asset_ids)
    threshold = _threshold()

    for asset in assets:
        rows = rows_by_asset.get(asset.id, {})
        state, current = stage_ledger.derive_state(asset, workflow, rows)
        approved = stage_ledger.approved_slots(asset, workflow, rows)
        result["approved_slots"] += approved
        result[state.value] += 1

        if state == AssetState.IN_REVIEW:
            at_stage[current] += 1
        elif state == AssetState.NOT_STARTED:
            at_stage[1] += 1
        else:
            at_stage[last_order] += 1

        rejected = any(r.status == StageStatus.CHANGES_REQUESTED for r in rows.values())
        # A stage-1 rejection reopens stage 1 directly; flag it until someone approves again.
        if not rejected and asset.review_round > 0 and current == 1 and asset.id not in resumed:
            rejected = True
        if rejected:
            result["needs_attention"].append(asset.id)

        if state != AssetState.FULLY_APPROVED and approved * 100 / len(stages) >= threshold:
            result["near_completion"].append(asset.id)

    result["total_slots"] = len(assets) * len(stages)
    result["progress_percentage"] = _percent(result["approved_slots"], result["total_slots"])
    result["stage_breakdown"] = [
        {
            "stage_order": s["order"],
            "stage_name": s["name"],
            "stage_color": s["color"],
            "count": at_stage[s["order"]],
        }
        for s in stages
    ]
    return result


def portfolio_metrics(organization_id: str, user_id: str, status: str | None = "active") -> dict:
    """Organization-wide rollup across projects for the dashboard overview."""
    projects = list_projects(organization_id, status=status)
    threshold = _threshold()

    totals = {"approved": 0, "slots": 0}
    by_stage_name: dict[str, dict] = {}
    needs_attention, near_completion, project_rows = [], [], []
    all_asset_ids: list[int] = []

    for project in projects:
        pm = project_metrics(project.id)
        all_asset_ids.extend(
            db.session.execute(select(Asset.id).where(Asset.project_id == project.id)).scalars()
        )
        project_rows.append({
            "project_id": project.id,
            "name": project.name,
            "color": project.color,
            "status": project.status,
            "has_workflow": pm["has_workflow"],
            "total_assets": pm["total_assets"],
            "progress_percentage": pm["progress_percentage"],
        })
        if not pm["has_workflow"]:
            continue

        totals["approved"] += pm["approved_slots"]
        totals["slots"] += pm["total_slots"]
        for stage in pm["stage_breakdown"]:
            entry = by_stage_name.setdefault(stage["stage_name"], {
                "stage_name": stage["stage_name"],
                "stage_color": stage["stage_color"],
                "asset_count": 0,
                "project_count": 0,
            })
            entry["asset_count"] += stage["count"]
            if stage["count"]:
                entry["project_count"] += 1

        if pm["needs_attention"]:
            needs_attention.append({
                "project_id": project.id,
                "name": project.name,
                "reason": "Has assets with requested changes",
                "asset_count": len(pm["needs_attention"]),
            })
        if pm["total_slots"] and pm["progress_percentage"] >= threshold:
            near_completion.append({
                "project_id": project.id,
                "name": project.name,
                "progress_percentage": pm["progress_percentage"],
            })

    pending = reviewer_service.pending_reviews_for_user(user_id, organization_id)
    return {
        "total_projects": len(projects),
        "total_assets": len(all_asset_ids),
        "overall_progress": _percent(totals["approved"], totals["slots"]),
        "pending_reviews": sum(len(group["assets"]) for group in pending),
        "stage_breakdown": list(by_stage_name.values()),
        "projects": project_rows,
        "project_health": {
            "needs_attention": needs_attention,
            "near_completion": near_completion,
        },
        "my_recent_activity": _recent_activity(all_asset_ids, limit=10, user_id=user_id),
    }
