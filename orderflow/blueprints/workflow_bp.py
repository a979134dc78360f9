"""
Workflow Blueprint: configuration diagnostics.

Endpoints:
    GET /api/v1/workflow/consistency   ?service_category_code=
        Edges on which the legacy map and the template disagree (workflow:admin).
"""

from flask import Blueprint, jsonify, request

from orderflow.blueprints import current_actor
from orderflow.services.permission_service import PermissionGate
from orderflow.services.transition_service import verify_mode_consistency
from orderflow.utils.errors import register_error_handlers

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")
register_error_handlers(workflow_bp)


@workflow_bp.route("/consistency", methods=["GET"])
def consistency():
    actor = current_actor()
    PermissionGate().require(actor, "workflow:admin")
    report = verify_mode_consistency(
        actor.tenant_id, request.args.get("service_category_code") or None,
    )
    return jsonify(report), 200
