"""
Approval engine unit tests.

Tests cover:
  - Quorum progression through stages and owner sign-off
  - Rollback to stage 1 on requested changes, review rounds
  - Idempotent approvals and roster changes mid-review
  - Preconditions: reviewer membership, current stage, ownership
  - Ledger invariants (single in-review stage, derived state)
"""

import pytest
from sqlalchemy import func, select

from orbit.core.exceptions import NotFoundError, PreconditionFailed, ValidationError
from orbit.models import db
from orbit.models.review import StageProgress, StageStatus
from orbit.services import approval_engine, project_service, reviewer_service
from orbit.services.approval_engine import EventKind

from conftest import DESIGNER, ORG, OTHER_ORG, OWNER


def _stage(summary, order):
    return next(s for s in summary["stages"] if s["stage_order"] == order)


def _kinds(result):
    return [e.kind for e in result.events]


def _in_review_count(asset_id):
    return db.session.execute(
        select(func.count(StageProgress.id)).where(
            StageProgress.asset_id == asset_id,
            StageProgress.status == StageStatus.IN_REVIEW,
        )
    ).scalar_one()


@pytest.fixture()
def two_stage(make_pipeline):
    """Concept (alice, bob) then Final (carol)."""
    return make_pipeline(stages=("Concept", "Final"), reviewers={1: ["alice", "bob"], 2: ["carol"]})


@pytest.fixture()
def three_stage(make_pipeline):
    return make_pipeline(reviewers={1: ["alice"], 2: ["bob"], 3: ["carol"]})


# ═════════════════════════════════════════════════════════════════════════
# END-TO-END SCENARIOS
# ═════════════════════════════════════════════════════════════════════════


class TestQuorumProgression:
    def test_asset_enters_stage_one_on_creation(self, two_stage):
        summary = approval_engine.compute_stage_summary(two_stage.asset_id, ORG)
        assert summary["state"] == "in_review"
        assert summary["current_stage"] == 1
        assert _stage(summary, 1)["status"] == "in_review"
        assert _stage(summary, 2)["status"] == "pending"

    def test_partial_quorum_keeps_asset_at_stage(self, two_stage):
        result = approval_engine.submit_approval(two_stage.asset_id, "alice", organization_id=ORG)
        stage = _stage(result.summary, 1)
        assert (stage["required"], stage["received"]) == (2, 1)
        assert stage["is_complete"] is False
        assert result.summary["current_stage"] == 1
        assert _kinds(result) == [EventKind.STAGE_PROGRESS]
        assert result.events[0].recipients == ("bob",)

    def test_quorum_advances_to_next_stage(self, two_stage):
        approval_engine.submit_approval(two_stage.asset_id, "alice", organization_id=ORG)
        result = approval_engine.submit_approval(two_stage.asset_id, "bob", organization_id=ORG)
        assert _stage(result.summary, 1)["status"] == "approved"
        assert _stage(result.summary, 1)["notes"] == "All 2 reviewers approved"
        assert _stage(result.summary, 2)["status"] == "in_review"
        assert result.summary["current_stage"] == 2
        assert _kinds(result) == [EventKind.STAGE_ADVANCED]
        assert result.events[0].recipients == ("carol",)
        assert result.events[0].stage_order == 2

    def test_last_stage_waits_for_owner(self, two_stage):
        for user in ("alice", "bob", "carol"):
            result = approval_engine.submit_approval(two_stage.asset_id, user, organization_id=ORG)
        assert result.state.value == "pending_final_approval"
        assert result.summary["current_stage"] is None
        assert _kinds(result) == [EventKind.FINAL_APPROVAL_NEEDED]
        assert result.events[0].recipients == (OWNER,)

    def test_owner_final_approval(self, two_stage):
        for user in ("alice", "bob", "carol"):
            approval_engine.submit_approval(two_stage.asset_id, user, organization_id=ORG)
        result = approval_engine.final_approve(two_stage.asset_id, OWNER, notes="Ship it", organization_id=ORG)
        assert result.summary["state"] == "fully_approved"
        assert result.summary["final_approval"]["approved_by"] == OWNER
        assert result.summary["final_approval"]["notes"] == "Ship it"
        assert _kinds(result) == [EventKind.FULLY_APPROVED]
        assert set(result.events[0].recipients) == {DESIGNER, "alice", "bob", "carol"}


# ═════════════════════════════════════════════════════════════════════════
# ROLLBACK
# ═════════════════════════════════════════════════════════════════════════


class TestRequestChanges:
    def test_late_rejection_resets_every_stage(self, three_stage):
        aid = three_stage.asset_id
        approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        approval_engine.submit_approval(aid, "bob", organization_id=ORG)

        result = approval_engine.request_changes(aid, "carol", "needs darker logo", organization_id=ORG)

        summary = result.summary
        assert _stage(summary, 1)["status"] == "in_review"
        assert _stage(summary, 2)["status"] == "pending"
        assert _stage(summary, 3)["status"] == "changes_requested"
        assert _stage(summary, 3)["notes"] == "needs darker logo"
        assert summary["current_stage"] == 1
        assert summary["review_round"] == 1
        assert _kinds(result) == [EventKind.CHANGES_REQUESTED]
        assert result.events[0].recipients == (DESIGNER,)
        assert result.events[0].notes == "needs darker logo"

    def test_rejection_at_stage_one_keeps_notes(self, two_stage):
        result = approval_engine.request_changes(two_stage.asset_id, "bob", "Wrong font", organization_id=ORG)
        stage = _stage(result.summary, 1)
        assert stage["status"] == "in_review"
        assert stage["notes"] == "Wrong font"
        assert result.summary["review_round"] == 1

    def test_old_round_approvals_stop_counting(self, two_stage):
        aid = two_stage.asset_id
        approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        result = approval_engine.request_changes(aid, "bob", "Wrong font", organization_id=ORG)
        assert _stage(result.summary, 1)["received"] == 0

        result = approval_engine.submit_approval(aid, "bob", organization_id=ORG)
        assert result.summary["current_stage"] == 1
        result = approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        assert result.summary["current_stage"] == 2

    def test_audit_trail_survives_rollback(self, two_stage):
        aid = two_stage.asset_id
        approval_engine.submit_approval(aid, "alice", notes="Nice", organization_id=ORG)
        approval_engine.request_changes(aid, "bob", "Wrong font", organization_id=ORG)
        history = approval_engine.approval_history(aid, ORG)
        assert [(h["user_id"], h["action"], h["review_round"]) for h in history] == [
            ("alice", "approve", 0),
            ("bob", "request_changes", 0),
        ]

    def test_notes_are_required(self, two_stage):
        with pytest.raises(ValidationError) as exc:
            approval_engine.request_changes(two_stage.asset_id, "bob", "   ", organization_id=ORG)
        assert exc.value.kind == "notes_required"
        summary = approval_engine.compute_stage_summary(two_stage.asset_id, ORG)
        assert summary["review_round"] == 0

    def test_cannot_reject_stage_that_is_not_current(self, two_stage):
        with pytest.raises(PreconditionFailed) as exc:
            approval_engine.request_changes(
                two_stage.asset_id, "carol", "Too early", stage_order=2, organization_id=ORG,
            )
        assert exc.value.kind == "stage_not_current"


# ═════════════════════════════════════════════════════════════════════════
# PRECONDITIONS
# ═════════════════════════════════════════════════════════════════════════


class TestPreconditions:
    def test_non_reviewer_is_forbidden(self, two_stage):
        aid = two_stage.asset_id
        approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        approval_engine.submit_approval(aid, "bob", organization_id=ORG)
        before = approval_engine.compute_stage_summary(aid, ORG)

        with pytest.raises(PreconditionFailed) as exc:
            approval_engine.submit_approval(aid, "mallory", organization_id=ORG)
        assert exc.value.kind == "not_reviewer"
        assert exc.value.forbidden is True
        assert approval_engine.compute_stage_summary(aid, ORG) == before

    def test_reviewer_of_later_stage_cannot_jump_ahead(self, two_stage):
        with pytest.raises(PreconditionFailed) as exc:
            approval_engine.submit_approval(two_stage.asset_id, "carol", stage_order=2, organization_id=ORG)
        assert exc.value.kind == "stage_not_current"
        assert exc.value.forbidden is False

    def test_unknown_stage(self, two_stage):
        with pytest.raises(ValidationError) as exc:
            approval_engine.submit_approval(two_stage.asset_id, "alice", stage_order=9, organization_id=ORG)
        assert exc.value.kind == "unknown_stage"

    def test_other_organization_sees_nothing(self, two_stage):
        with pytest.raises(NotFoundError):
            approval_engine.submit_approval(two_stage.asset_id, "alice", organization_id=OTHER_ORG)
        with pytest.raises(NotFoundError):
            approval_engine.compute_stage_summary(two_stage.asset_id, OTHER_ORG)

    def test_final_approve_requires_every_stage(self, two_stage):
        with pytest.raises(PreconditionFailed) as exc:
            approval_engine.final_approve(two_stage.asset_id, OWNER, organization_id=ORG)
        assert exc.value.kind == "not_pending_final_approval"

    def test_final_approve_requires_owner(self, make_pipeline):
        p = make_pipeline(stages=("Review",), reviewers={1: ["alice"]})
        approval_engine.submit_approval(p.asset_id, "alice", organization_id=ORG)
        with pytest.raises(PreconditionFailed) as exc:
            approval_engine.final_approve(p.asset_id, "alice", organization_id=ORG)
        assert exc.value.kind == "not_owner"
        assert exc.value.forbidden is True
        summary = approval_engine.compute_stage_summary(p.asset_id, ORG)
        assert summary["state"] == "pending_final_approval"
        assert summary["final_approval"] is None

    def test_fully_approved_asset_is_closed(self, make_pipeline):
        p = make_pipeline(stages=("Review",), reviewers={1: ["alice"]})
        approval_engine.submit_approval(p.asset_id, "alice", organization_id=ORG)
        approval_engine.final_approve(p.asset_id, OWNER, organization_id=ORG)
        with pytest.raises(PreconditionFailed) as exc:
            approval_engine.request_changes(p.asset_id, "alice", "Actually no", organization_id=ORG)
        assert exc.value.kind == "not_in_review"
        with pytest.raises(PreconditionFailed):
            approval_engine.final_approve(p.asset_id, OWNER, organization_id=ORG)

    def test_asset_without_workflow(self):
        project = project_service.create_project(ORG, {"name": "Loose"}, created_by=OWNER)
        asset, result = project_service.create_asset(project.id, ORG, {"name": "Sketch"}, created_by=DESIGNER)
        assert result is None
        with pytest.raises(PreconditionFailed) as exc:
            approval_engine.submit_approval(asset.id, "alice", organization_id=ORG)
        assert exc.value.kind == "no_workflow"
        summary = approval_engine.compute_stage_summary(asset.id, ORG)
        assert summary["state"] == "no_workflow"
        assert summary["stages"] == []


# ═════════════════════════════════════════════════════════════════════════
# IDEMPOTENCE & ROSTER CHANGES
# ═════════════════════════════════════════════════════════════════════════


class TestIdempotence:
    def test_repeat_approval_counts_once(self, two_stage):
        aid = two_stage.asset_id
        approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        result = approval_engine.submit_approval(aid, "alice", notes="Still good", organization_id=ORG)
        assert _stage(result.summary, 1)["received"] == 1
        assert result.events == []
        history = approval_engine.approval_history(aid, ORG)
        assert len(history) == 1
        assert history[0]["notes"] == "Still good"

    def test_reapproving_completed_stage_is_noop(self, make_pipeline):
        p = make_pipeline(stages=("Concept", "Final"), reviewers={1: ["alice"], 2: ["bob"]})
        approval_engine.submit_approval(p.asset_id, "alice", organization_id=ORG)
        result = approval_engine.submit_approval(p.asset_id, "alice", stage_order=1, organization_id=ORG)
        assert result.events == []
        assert result.summary["current_stage"] == 2

    def test_enter_workflow_is_idempotent(self, two_stage):
        result = approval_engine.enter_workflow(two_stage.asset_id)
        assert result.events == []
        assert _in_review_count(two_stage.asset_id) == 1

    def test_roster_shrink_completes_on_next_approval(self, two_stage):
        aid = two_stage.asset_id
        approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        bob = next(r for r in reviewer_service.list_reviewers_for_stage(two_stage.project_id, 1)
                   if r.user_id == "bob")
        reviewer_service.remove_reviewer(bob.id, ORG)

        result = approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        assert result.summary["current_stage"] == 2
        assert _kinds(result) == [EventKind.STAGE_ADVANCED]

    def test_empty_stage_can_never_complete(self, make_pipeline):
        p = make_pipeline(stages=("Concept",), reviewers={})
        summary = approval_engine.compute_stage_summary(p.asset_id, ORG)
        assert _stage(summary, 1)["required"] == 0
        assert _stage(summary, 1)["is_complete"] is False
        with pytest.raises(PreconditionFailed):
            approval_engine.submit_approval(p.asset_id, OWNER, organization_id=ORG)


class TestLedgerInvariants:
    def test_single_in_review_stage_through_full_cycle(self, three_stage):
        aid = three_stage.asset_id
        assert _in_review_count(aid) == 1
        approval_engine.submit_approval(aid, "alice", organization_id=ORG)
        assert _in_review_count(aid) == 1
        approval_engine.request_changes(aid, "bob", "Crop tighter", organization_id=ORG)
        assert _in_review_count(aid) == 1
        for user in ("alice", "bob", "carol"):
            approval_engine.submit_approval(aid, user, organization_id=ORG)
        assert _in_review_count(aid) == 0
        approval_engine.final_approve(aid, OWNER, organization_id=ORG)
        assert _in_review_count(aid) == 0

    def test_stage_progress_rows_carry_stage_names(self, three_stage):
        approval_engine.submit_approval(three_stage.asset_id, "alice", organization_id=ORG)
        rows = approval_engine.stage_progress(three_stage.asset_id, ORG)
        assert [(r["stage_order"], r["stage_name"], r["status"]) for r in rows] == [
            (1, "Design", "approved"),
            (2, "Brand", "in_review"),
        ]
