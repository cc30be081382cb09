"""
Projects, Assets & Reviewer Roster Blueprint.

Routes:
  GET    /projects                                   – list projects (?status=)
  POST   /projects                                   – create project
  GET    /projects/<pid>                             – project detail
  PATCH  /projects/<pid>                             – update / attach workflow
  GET    /projects/<pid>/reviewers                   – roster grouped by stage
  POST   /projects/<pid>/reviewers                   – add reviewer to a stage
  GET    /projects/<pid>/stages/<order>/reviewers    – reviewers of one stage
  DELETE /reviewers/<rid>                            – remove reviewer
  GET    /projects/<pid>/assets                      – list assets with state
  POST   /projects/<pid>/assets                      – create asset
  GET    /assets/<aid>                               – asset + stage summary
  PATCH  /assets/<aid>                               – move asset to a project
"""

from flask import Blueprint, g, jsonify, request

from orbit.blueprints import json_body
from orbit.models.project import Asset, Project
from orbit.services import approval_engine, project_service, reviewer_service
from orbit.services.notification import NotificationDispatcher
from orbit.utils.errors import E, api_error
from orbit.utils.helpers import get_scoped, parse_optional_int

project_bp = Blueprint("project_bp", __name__, url_prefix="/api/v1")


def _project_payload(project):
    data = project.to_dict()
    data["asset_count"] = project.assets.count()
    return data


# ═════════════════════════════════════════════════════════════════════════════
# PROJECTS
# ═════════════════════════════════════════════════════════════════════════════

@project_bp.route("/projects", methods=["GET"])
def list_projects():
    projects = project_service.list_projects(g.organization_id, status=request.args.get("status"))
    return jsonify({"items": [_project_payload(p) for p in projects], "total": len(projects)})


@project_bp.route("/projects", methods=["POST"])
def create_project():
    """Create a project owned by the caller.

    Body: { name, client_name?, description?, color?, workflow_id? }
    """
    project = project_service.create_project(
        g.organization_id, json_body(), created_by=g.user_id, created_by_email=g.user_email,
    )
    return jsonify(_project_payload(project)), 201


@project_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    project = get_scoped(Project, project_id, g.organization_id)
    return jsonify(_project_payload(project))


@project_bp.route("/projects/<int:project_id>", methods=["PATCH", "PUT"])
def update_project(project_id):
    project, events = project_service.update_project(project_id, g.organization_id, json_body())
    NotificationDispatcher.dispatch(events)
    return jsonify(_project_payload(project))


# ═════════════════════════════════════════════════════════════════════════════
# REVIEWER ROSTER
# ═════════════════════════════════════════════════════════════════════════════

@project_bp.route("/projects/<int:project_id>/reviewers", methods=["GET"])
def list_reviewers(project_id):
    """Roster of every workflow stage, including stages with nobody assigned."""
    project = get_scoped(Project, project_id, g.organization_id)
    grouped = reviewer_service.list_reviewers_by_stage(project.id)
    stages = project.workflow.ordered_stages() if project.workflow else []
    return jsonify({
        "project_id": project.id,
        "stages": [
            {
                "stage_order": s["order"],
                "stage_name": s["name"],
                "stage_color": s["color"],
                "reviewers": [r.to_dict() for r in grouped.get(s["order"], [])],
            }
            for s in stages
        ],
    })


@project_bp.route("/projects/<int:project_id>/reviewers", methods=["POST"])
def add_reviewer(project_id):
    """Assign a user to a stage.  Re-adding the same user returns 200.

    Body: { stage_order, user_id, user_name, user_email? }
    """
    data = json_body()
    reviewer, created = reviewer_service.add_reviewer(
        project_id,
        parse_optional_int(data.get("stage_order"), "stage_order"),
        data.get("user_id"),
        data.get("user_name"),
        user_email=data.get("user_email"),
        added_by=g.user_id,
        organization_id=g.organization_id,
    )
    return jsonify(reviewer.to_dict()), 201 if created else 200


@project_bp.route("/projects/<int:project_id>/stages/<int:stage_order>/reviewers", methods=["GET"])
def list_stage_reviewers(project_id, stage_order):
    project = get_scoped(Project, project_id, g.organization_id)
    reviewers = reviewer_service.list_reviewers_for_stage(project.id, stage_order)
    return jsonify({
        "project_id": project.id,
        "stage_order": stage_order,
        "required_approvals": len(reviewers),
        "reviewers": [r.to_dict() for r in reviewers],
    })


@project_bp.route("/reviewers/<int:reviewer_id>", methods=["DELETE"])
def remove_reviewer(reviewer_id):
    reviewer_service.remove_reviewer(reviewer_id, organization_id=g.organization_id)
    return jsonify({"deleted": True, "id": reviewer_id})


# ═════════════════════════════════════════════════════════════════════════════
# ASSETS
# ═════════════════════════════════════════════════════════════════════════════

@project_bp.route("/projects/<int:project_id>/assets", methods=["GET"])
def list_assets(project_id):
    items = []
    for asset in project_service.list_assets(project_id, g.organization_id):
        data = asset.to_dict()
        summary = approval_engine.compute_stage_summary(asset.id)
        data["state"] = summary["state"]
        data["current_stage"] = summary["current_stage"]
        items.append(data)
    return jsonify({"items": items, "total": len(items)})


@project_bp.route("/projects/<int:project_id>/assets", methods=["POST"])
def create_asset(project_id):
    """Create an asset; it enters stage 1 when the project has a workflow.

    Body: { name, image_url? }
    """
    asset, result = project_service.create_asset(
        project_id, g.organization_id, json_body(),
        created_by=g.user_id, created_by_email=g.user_email,
    )
    if result is not None:
        NotificationDispatcher.dispatch(result.events)
    data = asset.to_dict()
    data["stage_summary"] = approval_engine.compute_stage_summary(asset.id)
    return jsonify(data), 201


@project_bp.route("/assets/<int:asset_id>", methods=["GET"])
def get_asset(asset_id):
    summary = approval_engine.compute_stage_summary(asset_id, g.organization_id)
    asset = get_scoped(Asset, asset_id, g.organization_id)
    data = asset.to_dict()
    data["stage_summary"] = summary
    return jsonify(data)


@project_bp.route("/assets/<int:asset_id>", methods=["PATCH", "PUT"])
def move_asset(asset_id):
    """Move an asset into (or out of) a project.

    Body: { project_id }
    """
    data = json_body()
    if "project_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "project_id is required", details={"kind": "validation"})
    asset, result = project_service.move_asset(asset_id, g.organization_id, data.get("project_id"))
    if result is not None:
        NotificationDispatcher.dispatch(result.events)
    payload = asset.to_dict()
    payload["stage_summary"] = approval_engine.compute_stage_summary(asset.id)
    return jsonify(payload)
