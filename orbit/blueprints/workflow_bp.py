"""
Workflow Definition Blueprint.

Routes:
  GET    /workflows              – list workflows (?include_archived=true)
  POST   /workflows              – create workflow
  GET    /workflows/<wid>        – workflow detail
  PATCH  /workflows/<wid>        – update name/stages/default/archived
  DELETE /workflows/<wid>        – delete an unreferenced workflow
"""

from flask import Blueprint, g, jsonify, request

from orbit.blueprints import json_body
from orbit.services import workflow_service

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    include_archived = request.args.get("include_archived", "false").lower() == "true"
    items = workflow_service.list_workflows(g.organization_id, include_archived=include_archived)
    return jsonify({"items": items, "total": len(items)})


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    """Create a workflow.

    Body: { name, description?, is_default?, stages: [{order, name, color}] }
    """
    wf = workflow_service.create_workflow(g.organization_id, json_body(), created_by=g.user_id)
    return jsonify(wf.to_dict(project_count=0)), 201


@workflow_bp.route("/workflows/<int:wid>", methods=["GET"])
def get_workflow(wid):
    wf = workflow_service.get_workflow(wid, g.organization_id)
    return jsonify(wf.to_dict(project_count=wf.projects.count()))


@workflow_bp.route("/workflows/<int:wid>", methods=["PATCH", "PUT"])
def update_workflow(wid):
    wf = workflow_service.update_workflow(wid, g.organization_id, json_body())
    return jsonify(wf.to_dict(project_count=wf.projects.count()))


@workflow_bp.route("/workflows/<int:wid>", methods=["DELETE"])
def delete_workflow(wid):
    workflow_service.delete_workflow(wid, g.organization_id)
    return jsonify({"deleted": True, "id": wid})
