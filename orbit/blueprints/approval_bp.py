"""
Approval Blueprint: stage reviews and owner sign-off.

Routes:
  POST   /assets/<aid>/approve            – approve the current stage
  POST   /assets/<aid>/request-changes    – reject, back to stage 1 (notes required)
  POST   /assets/<aid>/final-approve      – project owner sign-off
  GET    /assets/<aid>/stage-summary      – per-stage quorum view
  GET    /assets/<aid>/stage-progress     – raw ledger rows
  GET    /assets/<aid>/approvals          – reviewer action history, all rounds
  GET    /reviews/mine                    – assets waiting on the caller

The acting user always comes from the request identity, never the body.
Notifications are dispatched after the transition has been committed.
"""

import logging

from flask import Blueprint, g, jsonify

from orbit.blueprints import json_body
from orbit.services import approval_engine, reviewer_service
from orbit.services.notification import NotificationDispatcher
from orbit.utils.helpers import parse_optional_int

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")


def _transition_response(result):
    NotificationDispatcher.dispatch(result.events)
    body = dict(result.summary)
    body["events"] = [e.kind.value for e in result.events]
    return jsonify(body)


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/assets/<int:asset_id>/approve", methods=["POST"])
def approve(asset_id):
    """Approve the asset's current stage.

    Body: { notes?, stage_order? }
    """
    data = json_body()
    result = approval_engine.submit_approval(
        asset_id,
        g.user_id,
        notes=data.get("notes"),
        stage_order=parse_optional_int(data.get("stage_order"), "stage_order"),
        user_name=g.user_name,
        organization_id=g.organization_id,
    )
    return _transition_response(result)


@approval_bp.route("/assets/<int:asset_id>/request-changes", methods=["POST"])
def request_changes(asset_id):
    """Send the asset back to stage 1.

    Body: { notes, stage_order? }
    """
    data = json_body()
    result = approval_engine.request_changes(
        asset_id,
        g.user_id,
        data.get("notes"),
        stage_order=parse_optional_int(data.get("stage_order"), "stage_order"),
        user_name=g.user_name,
        organization_id=g.organization_id,
    )
    return _transition_response(result)


@approval_bp.route("/assets/<int:asset_id>/final-approve", methods=["POST"])
def final_approve(asset_id):
    """Owner sign-off once every stage is approved.

    Body: { notes? }
    """
    data = json_body()
    result = approval_engine.final_approve(
        asset_id,
        g.user_id,
        notes=data.get("notes"),
        user_name=g.user_name,
        organization_id=g.organization_id,
    )
    return _transition_response(result)


# ═════════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/assets/<int:asset_id>/stage-summary", methods=["GET"])
def stage_summary(asset_id):
    return jsonify(approval_engine.compute_stage_summary(asset_id, g.organization_id))


@approval_bp.route("/assets/<int:asset_id>/stage-progress", methods=["GET"])
def stage_progress(asset_id):
    return jsonify({"asset_id": asset_id,
                    "progress": approval_engine.stage_progress(asset_id, g.organization_id)})


@approval_bp.route("/assets/<int:asset_id>/approvals", methods=["GET"])
def approval_history(asset_id):
    history = approval_engine.approval_history(asset_id, g.organization_id)
    return jsonify({"asset_id": asset_id, "items": history, "total": len(history)})


@approval_bp.route("/reviews/mine", methods=["GET"])
def my_stage_reviews():
    """Assets currently waiting on the caller, grouped by project."""
    groups = reviewer_service.pending_reviews_for_user(g.user_id, g.organization_id)
    return jsonify({
        "projects": groups,
        "total": sum(len(group["assets"]) for group in groups),
    })
