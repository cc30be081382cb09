"""
Metrics Blueprint: dashboard rollups over the review ledger.

Routes:
  GET  /projects/metrics           – organization portfolio (?status=active|all)
  GET  /projects/<pid>/metrics     – one project
"""

from flask import Blueprint, g, jsonify, request

from orbit.services import metrics

metrics_bp = Blueprint("metrics_bp", __name__, url_prefix="/api/v1")


@metrics_bp.route("/projects/metrics", methods=["GET"])
def portfolio_metrics():
    status = request.args.get("status", "active")
    if status == "all":
        status = None
    return jsonify(metrics.portfolio_metrics(g.organization_id, g.user_id, status=status))


@metrics_bp.route("/projects/<int:project_id>/metrics", methods=["GET"])
def project_metrics(project_id):
    return jsonify(metrics.project_metrics(project_id, g.organization_id))
