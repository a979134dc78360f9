"""
Screens Blueprint: screen contracts and screen work queues.

Endpoints:
    GET    /api/v1/screens/<screen>/contract    latest published contract
    POST   /api/v1/screens/<screen>/contract    publish next version (workflow:admin)
           Body: { "statuses": [...], "additional_filters"?: {...},
                   "required_permissions": [...] }
    GET    /api/v1/screens/<screen>/orders      work queue  ?limit=&offset=
"""

import logging

from flask import Blueprint, g, jsonify, request

from orderflow.blueprints import current_actor, paginate_query
from orderflow.core.exceptions import ValidationError
from orderflow.services import screen_contract_service
from orderflow.services.permission_service import PermissionGate
from orderflow.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

screens_bp = Blueprint("screens", __name__, url_prefix="/api/v1/screens")
register_error_handlers(screens_bp)

ADMIN_PERMISSION = "workflow:admin"


def _check_screen_enabled(screen):
    tenant = getattr(g, "tenant", None)
    settings = (tenant.settings or {}) if tenant else {}
    disabled = {str(s).lower() for s in (settings.get("disabled_screens") or [])}
    if screen_contract_service.normalize_screen(screen) in disabled:
        raise ValidationError(f"Screen '{screen}' is disabled for this tenant",
                              details={"field": "screen", "reason": "screen_disabled"})


@screens_bp.route("/<screen>/contract", methods=["GET"])
def get_contract(screen):
    contract = screen_contract_service.get_contract(screen)
    return jsonify(contract.to_dict()), 200


@screens_bp.route("/<screen>/contract", methods=["POST"])
def publish_contract(screen):
    actor = current_actor()
    PermissionGate().require(actor, ADMIN_PERMISSION)
    data = request.get_json(silent=True) or {}
    contract = screen_contract_service.publish_contract(
        screen,
        statuses=data.get("statuses"),
        additional_filters=data.get("additional_filters"),
        required_permissions=data.get("required_permissions"),
        published_by=str(actor.id),
    )
    return jsonify(contract.to_dict()), 201


@screens_bp.route("/<screen>/orders", methods=["GET"])
def queue(screen):
    actor = current_actor()
    _check_screen_enabled(screen)
    contract = screen_contract_service.get_contract(screen)
    PermissionGate().require(actor, contract.required_permissions)
    query = screen_contract_service.build_queue_query(actor.tenant_id, contract)
    items, total = paginate_query(query)
    return jsonify({
        "screen": contract.screen,
        "contract_version": contract.version,
        "filter": contract.queue_filter(),
        "items": [o.to_dict() for o in items],
        "total": total,
    }), 200
