"""
Approval Engine: multi-stage, multi-reviewer asset approval.

State machine per asset over the workflow's stages ``1..N`` plus two
derived terminal states::

    not_started → stage[1].in_review → … → stage[N].approved
                → pending_final_approval → fully_approved

A change request at any stage sends the asset back to ``stage[1].in_review``.

Design decisions:
    - The engine is the only writer of StageProgress.status.
    - Every transition runs under the per-asset lock and inside one
      transaction that bumps Asset.version.  A StaleDataError/IntegrityError
      is retried once; a second one surfaces as ConcurrencyConflict.
    - Transitions return their events instead of sending them.  The caller
      hands them to the notification dispatcher after the commit.
    - A rollback increments ``Asset.review_round``.  Approval tuples of older
      rounds stay on record but no longer count toward any quorum.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from orbit.core.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from orbit.models import db
from orbit.models.project import Asset
from orbit.models.review import ApprovalAction, StageApproval, StageStatus
from orbit.services import reviewer_service, stage_ledger
from orbit.services.asset_locks import asset_locks
from orbit.services.stage_ledger import AssetState

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


class EventKind(str, enum.Enum):
    STAGE_PROGRESS = "stage_progress"
    STAGE_ADVANCED = "stage_advanced"
    CHANGES_REQUESTED = "changes_requested"
    FINAL_APPROVAL_NEEDED = "final_approval_needed"
    FULLY_APPROVED = "fully_approved"


@dataclass(frozen=True)
class ApprovalEvent:
    """Outbound notification produced by a transition.  Plain data only."""

    kind: EventKind
    asset_id: int
    asset_name: str
    project_id: int
    project_name: str
    organization_id: str
    recipients: tuple[str, ...]
    actor_id: str
    actor_name: str | None = None
    stage_order: int | None = None
    stage_name: str | None = None
    notes: str | None = None

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "asset_id": self.asset_id,
            "project_id": self.project_id,
            "stage_order": self.stage_order,
            "stage_name": self.stage_name,
            "recipients": list(self.recipients),
            "actor_id": self.actor_id,
            "notes": self.notes,
        }


@dataclass
class TransitionResult:
    asset_id: int
    state: AssetState
    summary: dict
    events: list[ApprovalEvent] = field(default_factory=list)


# ═════════════════════════════════════════════════════════════════════════════
# Transaction guard
# ═════════════════════════════════════════════════════════════════════════════


def _commit():
    db.session.commit()


def _guarded(asset_id: int, operation, op_name: str):
    """Run ``operation`` under the asset lock and commit it.

    ``operation`` must re-read everything it needs, since a retry starts
    from a rolled-back session.  Non-concurrency errors roll back and
    propagate untouched.
    """
    with asset_locks.hold(asset_id):
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
                _commit()
                return result
            except (StaleDataError, IntegrityError) as exc:
                db.session.rollback()
                if attempt >= MAX_ATTEMPTS:
                    logger.warning(
                        "%s lost a concurrent write twice, giving up", op_name,
                        extra={"asset_id": asset_id},
                    )
                    raise ConcurrencyConflict(
                        "The asset was changed by another request. Please retry.",
                    ) from exc
                logger.info(
                    "%s hit a concurrent write (%s), retrying", op_name, type(exc).__name__,
                    extra={"asset_id": asset_id},
                )
            except Exception:
                db.session.rollback()
                raise


def _load_asset(asset_id: int, organization_id: str | None, for_update: bool = False) -> Asset:
    stmt = select(Asset).where(Asset.id == asset_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    asset = db.session.execute(stmt).scalars().first()
    if asset is None or (organization_id is not None and asset.organization_id != organization_id):
        raise NotFoundError(resource="Asset", resource_id=asset_id, organization_id=organization_id)
    return asset


def _require_workflow(asset: Asset):
    project = asset.project
    if project is None or project.workflow is None:
        raise PreconditionFailed(
            "Asset is not in a project with an approval workflow", kind="no_workflow",
        )
    return project, project.workflow


def _check_stage_exists(workflow, stage_order: int | None) -> None:
    if stage_order is not None and not workflow.has_stage(stage_order):
        raise ValidationError(
            f"Stage {stage_order} does not exist in this workflow",
            details={"stage_order": "unknown stage"},
            kind="unknown_stage",
        )


def _find_tuple(asset: Asset, stage_order: int, user_id: str, action: ApprovalAction):
    stmt = select(StageApproval).where(
        StageApproval.asset_id == asset.id,
        StageApproval.review_round == asset.review_round,
        StageApproval.stage_order == stage_order,
        StageApproval.user_id == user_id,
        StageApproval.action == action,
    )
    return db.session.execute(stmt).scalars().first()


def _check_notes(notes):
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("notes must be a string", details={"notes": "must be a string"},
                              kind="invalid_notes")
    return notes


def _record_tuple(asset, stage_order, user_id, user_name, action, notes) -> bool:
    """Insert or refresh a reviewer action.  Returns True when it already existed."""
    existing = _find_tuple(asset, stage_order, user_id, action)
    if existing is not None:
        if notes is not None:
            existing.notes = notes
        if user_name:
            existing.user_name = user_name
        existing.updated_at = stage_ledger.utcnow()
        return True
    db.session.add(StageApproval(
        asset_id=asset.id,
        review_round=asset.review_round,
        stage_order=stage_order,
        user_id=user_id,
        user_name=user_name,
        action=action,
        notes=notes,
    ))
    db.session.flush()
    return False


def _touch(asset: Asset) -> None:
    # Dirtying the row makes the flush carry the version check.
    asset.last_review_activity_at = stage_ledger.utcnow()


def _event(kind, asset, project, recipients, actor_id, actor_name=None,
           stage=None, notes=None) -> ApprovalEvent:
    return ApprovalEvent(
        kind=kind,
        asset_id=asset.id,
        asset_name=asset.name,
        project_id=project.id,
        project_name=project.name,
        organization_id=asset.organization_id,
        recipients=tuple(recipients),
        actor_id=actor_id,
        actor_name=actor_name,
        stage_order=stage["order"] if stage else None,
        stage_name=stage["name"] if stage else None,
        notes=notes,
    )


def _enter_current_stage(asset, workflow, rows, stage_order):
    """Resolve the stage an action targets, seeding stage 1 on first use.

    Raises:
        PreconditionFailed: the asset is not in review, or ``stage_order``
            is not its current stage.
    """
    state, current = stage_ledger.derive_state(asset, workflow, rows)
    if state == AssetState.NOT_STARTED:
        stage_ledger.open_stage(asset.id, 1, rows)
        current = 1
    elif state != AssetState.IN_REVIEW:
        raise PreconditionFailed(
            f"Asset is {state.value.replace('_', ' ')}, not in review", kind="not_in_review",
        )
    target = current if stage_order is None else stage_order
    return current, target


# ═════════════════════════════════════════════════════════════════════════════
# Summary
# ═════════════════════════════════════════════════════════════════════════════


def _build_summary(asset, project, workflow, rows) -> dict:
    state, current = stage_ledger.derive_state(asset, workflow, rows)
    summary = {
        "asset_id": asset.id,
        "project_id": asset.project_id,
        "workflow": None,
        "state": state.value,
        "current_stage": current,
        "review_round": asset.review_round,
        "stages": [],
        "final_approval": None,
    }
    if workflow is None:
        return summary

    summary["workflow"] = {"id": workflow.id, "name": workflow.name}
    summary["owner_id"] = project.created_by
    by_stage = stage_ledger.approvals_by_stage(asset.id, asset.review_round)
    roster = reviewer_service.list_reviewers_by_stage(project.id)
    for stage in workflow.ordered_stages():
        order = stage["order"]
        row = rows.get(order)
        approver_ids = stage_ledger.distinct_approvers(by_stage.get(order, []))
        required = len(roster.get(order, []))
        status = row.status if row is not None else StageStatus.PENDING
        summary["stages"].append({
            "stage_order": order,
            "stage_name": stage["name"],
            "stage_color": stage["color"],
            "status": status.value,
            "required": required,
            "received": len(approver_ids),
            "is_complete": status == StageStatus.APPROVED or (0 < required <= len(approver_ids)),
            "approver_ids": approver_ids,
            "reviewed_by": row.reviewed_by if row is not None else None,
            "reviewed_at": row.reviewed_at.isoformat() if row is not None and row.reviewed_at else None,
            "notes": row.notes if row is not None else None,
        })
    if asset.is_final_approved:
        summary["final_approval"] = {
            "approved_by": asset.final_approved_by,
            "approved_at": asset.final_approved_at.isoformat(),
            "notes": asset.final_approval_notes,
        }
    return summary


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def submit_approval(
    asset_id: int,
    user_id: str,
    notes: str | None = None,
    stage_order: int | None = None,
    user_name: str | None = None,
    organization_id: str | None = None,
) -> TransitionResult:
    """Record a reviewer's approval of the asset's current stage.

    Args:
        asset_id:        Asset being reviewed.
        user_id:         Acting reviewer.
        notes:           Optional comment, stored on the approval tuple.
        stage_order:     Stage the reviewer is approving.  Defaults to the
                         current stage.
        user_name:       Display name snapshot for the audit trail.
        organization_id: Caller's organization; other orgs' assets are 404.

    Returns:
        TransitionResult with the updated stage summary and the events to
        dispatch.  A repeated approval returns no events unless it is the
        one that completes the stage.

    Raises:
        NotFoundError, ValidationError, PreconditionFailed, ConcurrencyConflict
    """

    _check_notes(notes)

    def operation():
        asset = _load_asset(asset_id, organization_id, for_update=True)
        project, workflow = _require_workflow(asset)
        _check_stage_exists(workflow, stage_order)
        rows = stage_ledger.load_rows(asset.id)

        # Re-approving a stage this user already helped complete is a no-op.
        if stage_order is not None:
            row = rows.get(stage_order)
            if (row is not None and row.status == StageStatus.APPROVED
                    and _find_tuple(asset, stage_order, user_id, ApprovalAction.APPROVE)):
                return TransitionResult(
                    asset.id,
                    stage_ledger.derive_state(asset, workflow, rows)[0],
                    _build_summary(asset, project, workflow, rows),
                )

        current, target = _enter_current_stage(asset, workflow, rows, stage_order)
        if not reviewer_service.is_reviewer(project.id, target, user_id):
            raise PreconditionFailed(
                f"You are not a reviewer for stage {target}", kind="not_reviewer", forbidden=True,
            )
        if target != current:
            raise PreconditionFailed(
                f"Asset is at stage {current}, not stage {target}", kind="stage_not_current",
            )

        repeated = _record_tuple(asset, target, user_id, user_name, ApprovalAction.APPROVE, notes)
        approvers = stage_ledger.distinct_approvers(
            stage_ledger.approvals_by_stage(asset.id, asset.review_round).get(target, [])
        )
        roster = reviewer_service.list_reviewers_for_stage(project.id, target)
        required = len(roster)
        stage = workflow.stage(target)
        events = []

        if required > 0 and len(approvers) >= required:
            row = rows[target]
            row.status = StageStatus.APPROVED
            row.reviewed_by = user_id
            row.reviewed_by_name = user_name
            row.reviewed_at = stage_ledger.utcnow()
            row.notes = f"All {required} reviewers approved"

            next_stage = workflow.stage(target + 1)
            if next_stage is not None:
                stage_ledger.open_stage(asset.id, next_stage["order"], rows)
                next_reviewers = reviewer_service.list_reviewers_for_stage(project.id, next_stage["order"])
                events.append(_event(
                    EventKind.STAGE_ADVANCED, asset, project,
                    [r.user_id for r in next_reviewers], user_id, user_name, stage=next_stage,
                ))
            else:
                events.append(_event(
                    EventKind.FINAL_APPROVAL_NEEDED, asset, project,
                    [project.created_by], user_id, user_name, stage=stage,
                ))
            logger.info(
                "Stage %s approved for asset %s (%d/%d)", target, asset.id, len(approvers), required,
                extra={"asset_id": asset.id, "project_id": project.id, "stage_order": target,
                       "event_kind": events[0].kind.value, "user_id": user_id},
            )
        elif not repeated:
            remaining = [r.user_id for r in roster if r.user_id not in approvers]
            if remaining:
                events.append(_event(
                    EventKind.STAGE_PROGRESS, asset, project, remaining,
                    user_id, user_name, stage=stage, notes=notes,
                ))
            logger.info(
                "Approval recorded for asset %s stage %s (%d/%d)",
                asset.id, target, len(approvers), required,
                extra={"asset_id": asset.id, "project_id": project.id,
                       "stage_order": target, "user_id": user_id},
            )

        _touch(asset)
        db.session.flush()
        return TransitionResult(
            asset.id,
            stage_ledger.derive_state(asset, workflow, rows)[0],
            _build_summary(asset, project, workflow, rows),
            events,
        )

    return _guarded(asset_id, operation, "submit_approval")


def request_changes(
    asset_id: int,
    user_id: str,
    notes: str,
    stage_order: int | None = None,
    user_name: str | None = None,
    organization_id: str | None = None,
) -> TransitionResult:
    """Reject the current stage and send the asset back to stage 1.

    The rejected stage keeps ``changes_requested`` and the notes as history,
    every other ledger row goes back to ``pending`` and stage 1 reopens.
    When the rejected stage is stage 1 itself it reopens directly and keeps
    the notes.  The review round increments, so earlier approvals stop
    counting but remain in the audit trail.

    Raises:
        ValidationError: notes missing or blank, unknown stage.
        PreconditionFailed: not a reviewer of the stage, or not its turn.
    """
    notes = (_check_notes(notes) or "").strip()
    if not notes:
        raise ValidationError(
            "Notes are required when requesting changes",
            details={"notes": "is required"},
            kind="notes_required",
        )

    def operation():
        asset = _load_asset(asset_id, organization_id, for_update=True)
        project, workflow = _require_workflow(asset)
        _check_stage_exists(workflow, stage_order)
        rows = stage_ledger.load_rows(asset.id)

        current, target = _enter_current_stage(asset, workflow, rows, stage_order)
        if not reviewer_service.is_reviewer(project.id, target, user_id):
            raise PreconditionFailed(
                f"You are not a reviewer for stage {target}", kind="not_reviewer", forbidden=True,
            )
        if target != current:
            raise PreconditionFailed(
                f"Asset is at stage {current}, not stage {target}", kind="stage_not_current",
            )

        _record_tuple(asset, target, user_id, user_name, ApprovalAction.REQUEST_CHANGES, notes)
        now = stage_ledger.utcnow()
        for order, row in rows.items():
            if order == target:
                row.status = StageStatus.CHANGES_REQUESTED
                row.reviewed_by = user_id
                row.reviewed_by_name = user_name
                row.reviewed_at = now
                row.notes = notes
            else:
                row.status = StageStatus.PENDING
                row.reviewed_by = None
                row.reviewed_by_name = None
                row.reviewed_at = None
                row.notes = None
        stage_ledger.open_stage(asset.id, 1, rows)

        asset.review_round += 1
        _touch(asset)
        db.session.flush()

        stage = workflow.stage(target)
        event = _event(
            EventKind.CHANGES_REQUESTED, asset, project, [asset.created_by],
            user_id, user_name, stage=stage, notes=notes,
        )
        logger.info(
            "Changes requested on asset %s at stage %s, back to stage 1", asset.id, target,
            extra={"asset_id": asset.id, "project_id": project.id, "stage_order": target,
                   "event_kind": event.kind.value, "user_id": user_id},
        )
        return TransitionResult(
            asset.id,
            stage_ledger.derive_state(asset, workflow, rows)[0],
            _build_summary(asset, project, workflow, rows),
            [event],
        )

    return _guarded(asset_id, operation, "request_changes")


def final_approve(
    asset_id: int,
    user_id: str,
    notes: str | None = None,
    user_name: str | None = None,
    organization_id: str | None = None,
) -> TransitionResult:
    """Owner sign-off after every stage has reached quorum.

    Raises:
        PreconditionFailed: asset not pending final approval, or caller is
            not the project owner.  Nothing is written in either case.
    """

    _check_notes(notes)

    def operation():
        asset = _load_asset(asset_id, organization_id, for_update=True)
        project, workflow = _require_workflow(asset)
        rows = stage_ledger.load_rows(asset.id)
        state, _ = stage_ledger.derive_state(asset, workflow, rows)

        if state != AssetState.PENDING_FINAL_APPROVAL:
            raise PreconditionFailed(
                "Final approval is only possible once every stage is approved",
                kind="not_pending_final_approval",
            )
        if project.created_by != user_id:
            raise PreconditionFailed(
                "Only the project owner can give final approval", kind="not_owner", forbidden=True,
            )

        asset.final_approved_by = user_id
        asset.final_approved_at = stage_ledger.utcnow()
        asset.final_approval_notes = (notes or "").strip() or None
        _touch(asset)
        db.session.flush()

        recipients = [asset.created_by]
        for approvals in stage_ledger.approvals_by_stage(asset.id, asset.review_round).values():
            for approver in stage_ledger.distinct_approvers(approvals):
                if approver not in recipients:
                    recipients.append(approver)
        event = _event(
            EventKind.FULLY_APPROVED, asset, project, recipients, user_id, user_name, notes=notes,
        )
        logger.info(
            "Asset %s fully approved", asset.id,
            extra={"asset_id": asset.id, "project_id": project.id,
                   "event_kind": event.kind.value, "user_id": user_id},
        )
        return TransitionResult(
            asset.id,
            AssetState.FULLY_APPROVED,
            _build_summary(asset, project, workflow, rows),
            [event],
        )

    return _guarded(asset_id, operation, "final_approve")


def enter_workflow(asset_id: int, actor_id: str | None = None) -> TransitionResult:
    """Seed stage 1 when an asset joins a project with a workflow.

    Idempotent: an asset that already has ledger rows, or whose project has
    no workflow, is left alone and no event is produced.
    """

    def operation():
        asset = _load_asset(asset_id, None, for_update=True)
        project = asset.project
        workflow = project.workflow if project is not None else None
        rows = stage_ledger.load_rows(asset.id) if workflow is not None else {}
        events = []
        if workflow is not None and not rows and not asset.is_final_approved:
            stage_ledger.open_stage(asset.id, 1, rows)
            _touch(asset)
            db.session.flush()
            reviewers = reviewer_service.list_reviewers_for_stage(project.id, 1)
            if reviewers:
                events.append(_event(
                    EventKind.STAGE_ADVANCED, asset, project, [r.user_id for r in reviewers],
                    actor_id or asset.created_by, stage=workflow.stage(1),
                ))
            logger.info(
                "Asset %s entered workflow %s", asset.id, workflow.id,
                extra={"asset_id": asset.id, "project_id": project.id, "stage_order": 1},
            )
        return TransitionResult(
            asset.id,
            stage_ledger.derive_state(asset, workflow, rows)[0],
            _build_summary(asset, project, workflow, rows),
            events,
        )

    return _guarded(asset_id, operation, "enter_workflow")


def compute_stage_summary(asset_id: int, organization_id: str | None = None) -> dict:
    """Per-stage quorum view of an asset.  Read only."""
    asset = _load_asset(asset_id, organization_id)
    project = asset.project
    workflow = project.workflow if project is not None else None
    rows = stage_ledger.load_rows(asset.id) if workflow is not None else {}
    return _build_summary(asset, project, workflow, rows)


def stage_progress(asset_id: int, organization_id: str | None = None) -> list[dict]:
    """Ledger rows of an asset decorated with stage names and colors."""
    asset = _load_asset(asset_id, organization_id)
    workflow = asset.project.workflow if asset.project is not None else None
    if workflow is None:
        return []
    rows = stage_ledger.load_rows(asset.id)
    result = []
    for order in sorted(rows):
        stage = workflow.stage(order) or {}
        item = rows[order].to_dict()
        item["stage_name"] = stage.get("name")
        item["stage_color"] = stage.get("color")
        result.append(item)
    return result


def approval_history(asset_id: int, organization_id: str | None = None) -> list[dict]:
    """Every reviewer action on the asset across all review rounds, oldest first."""
    asset = _load_asset(asset_id, organization_id)
    stmt = (
        select(StageApproval)
        .where(StageApproval.asset_id == asset.id)
        .order_by(StageApproval.created_at, StageApproval.id)
    )
    return [a.to_dict() for a in db.session.execute(stmt).scalars()]
