"""
Stage Progress Ledger: read helpers and derived asset state.

The ledger is the set of StageProgress rows of an asset.  The asset's
current stage and overall state are never stored; they are recomputed here
from the rows every time they are needed.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import select

from orbit.models import db
from orbit.models.review import ApprovalAction, StageApproval, StageProgress, StageStatus


class AssetState(str, enum.Enum):
    NO_WORKFLOW = "no_workflow"
    NOT_STARTED = "not_started"
    IN_REVIEW = "in_review"
    PENDING_FINAL_APPROVAL = "pending_final_approval"
    FULLY_APPROVED = "fully_approved"


def load_rows(asset_id: int) -> dict[int, StageProgress]:
    """Return the asset's ledger rows keyed by stage order."""
    stmt = select(StageProgress).where(StageProgress.asset_id == asset_id)
    return {row.stage_order: row for row in db.session.execute(stmt).scalars()}


def derive_state(asset, workflow, rows: dict[int, StageProgress]) -> tuple[AssetState, int | None]:
    """Compute ``(state, current_stage)`` from the ledger.

    ``current_stage`` is the order of the single in-review row, or None when
    the asset is not in review.
    """
    if workflow is None:
        return AssetState.NO_WORKFLOW, None
    if asset.is_final_approved:
        return AssetState.FULLY_APPROVED, None

    in_review = sorted(o for o, r in rows.items() if r.status == StageStatus.IN_REVIEW)
    if in_review:
        return AssetState.IN_REVIEW, in_review[0]

    orders = [s["order"] for s in workflow.ordered_stages()]
    if orders and all(o in rows and rows[o].status == StageStatus.APPROVED for o in orders):
        return AssetState.PENDING_FINAL_APPROVAL, None
    return AssetState.NOT_STARTED, None


def open_stage(asset_id: int, stage_order: int, rows: dict[int, StageProgress]) -> StageProgress:
    """Put a stage in review, creating its row on first use."""
    row = rows.get(stage_order)
    if row is None:
        row = StageProgress(asset_id=asset_id, stage_order=stage_order, status=StageStatus.IN_REVIEW)
        db.session.add(row)
        rows[stage_order] = row
    else:
        row.status = StageStatus.IN_REVIEW
    return row


def approvals_by_stage(asset_id: int, review_round: int) -> dict[int, list[StageApproval]]:
    """Approve tuples of one review round, keyed by stage order, oldest first."""
    stmt = (
        select(StageApproval)
        .where(
            StageApproval.asset_id == asset_id,
            StageApproval.review_round == review_round,
            StageApproval.action == ApprovalAction.APPROVE,
        )
        .order_by(StageApproval.created_at, StageApproval.id)
    )
    grouped: dict[int, list[StageApproval]] = {}
    for approval in db.session.execute(stmt).scalars():
        grouped.setdefault(approval.stage_order, []).append(approval)
    return grouped


def distinct_approvers(approvals: list[StageApproval]) -> list[str]:
    seen: list[str] = []
    for approval in approvals:
        if approval.user_id not in seen:
            seen.append(approval.user_id)
    return seen


def approved_slots(asset, workflow, rows: dict[int, StageProgress]) -> int:
    """Approved stages of the workflow as it is defined now.

    Rows left behind by a stage-list edit are ignored; a fully approved
    asset fills every slot.
    """
    orders = [s["order"] for s in workflow.ordered_stages()]
    if asset.is_final_approved:
        return len(orders)
    return sum(1 for o in orders if o in rows and rows[o].status == StageStatus.APPROVED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
