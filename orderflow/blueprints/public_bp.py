"""
Public Blueprint: unauthenticated customer confirmation link.

Endpoints:
    POST /api/v1/public/orders/<tenant_id>/<order_no>/confirm-received

No JWT.  Possession of the tenant id + order number pair is the only
credential, so the response never echoes internal ids beyond the order's
own number and status.
"""

import logging

from flask import Blueprint, jsonify, request

from orderflow.services.public_order_service import confirm_received
from orderflow.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

public_bp = Blueprint("public", __name__, url_prefix="/api/v1/public")
register_error_handlers(public_bp)


@public_bp.route("/orders/<int:tenant_id>/<order_no>/confirm-received", methods=["POST"])
def confirm(tenant_id, order_no):
    metadata = {
        "remote_addr": request.remote_addr,
        "user_agent": request.headers.get("User-Agent", ""),
    }
    result = confirm_received(tenant_id, order_no, metadata=metadata)
    return jsonify({
        "order_no": result.order.order_no,
        "status": result.order.status,
        "idempotent": result.idempotent,
    }), 200
