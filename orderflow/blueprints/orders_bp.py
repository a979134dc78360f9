"""
Orders Blueprint: status transitions, history, split and issues.

Endpoints:
    GET    /api/v1/orders/<id>/transitions         ?mode=&screen=
    POST   /api/v1/orders/<id>/transition
           Body: { "to_status", "from_status"?, "notes"?, "metadata"?,
                   "screen"?, "mode"?, "rack_location"? }
    POST   /api/v1/orders/bulk-transition
           Body: { "order_ids": [...], "to_status", "notes"?, "mode"?, "screen"? }
    GET    /api/v1/orders/<id>/history
    POST   /api/v1/orders/<id>/split              Body: { "groups": [[item_id...]...], "reason"? }
    GET    /api/v1/orders/<id>/issues             ?include_resolved=false
    POST   /api/v1/orders/<id>/issue
           Body: { "order_item_id", "issue_code", "issue_text", "priority"?,
                   "photo_url"?, "force_return"? }
    PATCH  /api/v1/orders/<id>/issue/<issue_id>   Body: { "notes"? }

Layer contract:
    - Blueprint: parse input, build the Actor, call the service, return JSON.
    - NO db.session writes here: services own the transaction.
"""

import logging

from flask import Blueprint, jsonify, request

from orderflow.blueprints import current_actor
from orderflow.core.exceptions import PlatformError
from orderflow.models.order import BLOCKING_ISSUE_PRIORITIES
from orderflow.services import audit_service, issue_service, order_store, split_service
from orderflow.services.transition_service import (
    TransitionOptions,
    bulk_transition,
    get_allowed_transitions,
    transition_order,
)
from orderflow.services.workflow_config import load_snapshot
from orderflow.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/v1/orders")
register_error_handlers(orders_bp)


def _options_from(data: dict) -> TransitionOptions:
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {"value": metadata}
    metadata.setdefault("user_agent", request.headers.get("User-Agent", ""))
    return TransitionOptions(
        notes=data.get("notes"),
        metadata=metadata,
        screen=data.get("screen"),
        mode=data.get("mode"),
        rack_location=data.get("rack_location"),
    )


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


@orders_bp.route("/<order_id>/transitions", methods=["GET"])
def allowed_transitions(order_id):
    result = get_allowed_transitions(
        order_id, current_actor(),
        mode=request.args.get("mode"),
        screen=request.args.get("screen"),
    )
    return jsonify(result), 200


@orders_bp.route("/<order_id>/transition", methods=["POST"])
def transition(order_id):
    data = request.get_json(silent=True) or {}
    to_status = data.get("to_status")
    if not to_status:
        return api_error(E.VALIDATION_REQUIRED, "to_status is required")

    result = transition_order(
        order_id, data.get("from_status"), to_status, current_actor(), _options_from(data),
    )
    return jsonify(result.to_dict()), 200


@orders_bp.route("/bulk-transition", methods=["POST"])
def bulk_transition_route():
    data = request.get_json(silent=True) or {}
    order_ids = data.get("order_ids")
    to_status = data.get("to_status")
    if not isinstance(order_ids, list) or not order_ids:
        return api_error(E.VALIDATION_REQUIRED, "order_ids must be a non-empty list")
    if not to_status:
        return api_error(E.VALIDATION_REQUIRED, "to_status is required")

    result = bulk_transition(
        [str(i) for i in order_ids], to_status, current_actor(), _options_from(data),
    )
    return jsonify(result), 200


@orders_bp.route("/<order_id>/history", methods=["GET"])
def history(order_id):
    actor = current_actor()
    order = order_store.get_order(order_id, actor.tenant_id)
    records = audit_service.list_for_order(order.id, actor.tenant_id)
    return jsonify({
        "order_id": order.id,
        "items": [r.to_dict() for r in records],
        "total": len(records),
    }), 200


# ═════════════════════════════════════════════════════════════════════════
# Split
# ═════════════════════════════════════════════════════════════════════════


@orders_bp.route("/<order_id>/split", methods=["POST"])
def split(order_id):
    data = request.get_json(silent=True) or {}
    if "groups" not in data:
        return api_error(E.VALIDATION_REQUIRED, "groups is required")

    children = split_service.split_order(
        order_id, data["groups"], current_actor(), reason=data.get("reason"),
    )
    return jsonify({
        "parent_order_id": order_id,
        "child_order_ids": [c.id for c in children],
        "children": [c.to_dict(include_items=True) for c in children],
    }), 201


@orders_bp.route("/<order_id>/children", methods=["GET"])
def children(order_id):
    actor = current_actor()
    rows = split_service.list_children(order_id, actor.tenant_id)
    return jsonify({"items": [c.to_dict() for c in rows], "total": len(rows)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Issues
# ═════════════════════════════════════════════════════════════════════════


@orders_bp.route("/<order_id>/issues", methods=["GET"])
def list_issues(order_id):
    actor = current_actor()
    include_resolved = request.args.get("include_resolved", "true").lower() != "false"
    rows = issue_service.list_issues(order_id, actor.tenant_id, include_resolved=include_resolved)
    return jsonify({"items": [i.to_dict() for i in rows], "total": len(rows)}), 200


def _forced_return(order_id, issue, actor, force_return):
    """Send the order back for rework after a blocking issue; report the outcome."""
    order = order_store.get_order(order_id, actor.tenant_id)
    target = force_return if isinstance(force_return, str) else None
    if target is None:
        target = load_snapshot(actor.tenant_id, order.service_category_code).issue_return_status
    if not target or target == order.status:
        return None
    try:
        result = transition_order(
            order.id, order.status, target, actor,
            TransitionOptions(
                notes=f"Returned after {issue.priority} {issue.issue_code} issue: {issue.issue_text}",
                metadata={"issue_id": issue.id, "source": "issue_forced_return"},
                mode="legacy",
            ),
        )
    except PlatformError as exc:
        return {"applied": False, "to_status": target, **exc.to_dict()}
    return {"applied": True, "to_status": target, "order": result.order.to_dict()}


@orders_bp.route("/<order_id>/issue", methods=["POST"])
def create_issue(order_id):
    data = request.get_json(silent=True) or {}
    for field in ("order_item_id", "issue_code", "issue_text"):
        if not data.get(field):
            return api_error(E.VALIDATION_REQUIRED, f"{field} is required")

    actor = current_actor()
    issue = issue_service.create_issue(
        order_id,
        data["order_item_id"],
        data["issue_code"],
        data["issue_text"],
        data.get("priority", "normal"),
        actor=actor,
        photo_url=data.get("photo_url"),
    )
    body = {"issue": issue.to_dict()}

    force_return = data.get("force_return", True)
    if force_return and issue.priority in BLOCKING_ISSUE_PRIORITIES:
        outcome = _forced_return(order_id, issue, actor, force_return)
        if outcome is not None:
            body["transition"] = outcome
    return jsonify(body), 201


@orders_bp.route("/<order_id>/issue/<issue_id>", methods=["PATCH"])
def resolve_issue(order_id, issue_id):
    data = request.get_json(silent=True) or {}
    issue = issue_service.resolve_issue(order_id, issue_id, data.get("notes"), actor=current_actor())
    return jsonify({"issue": issue.to_dict()}), 200
