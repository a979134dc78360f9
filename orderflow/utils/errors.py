"""Standardised API error responses.

Usage
-----
    from orderflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Order not found")
    return api_error(E.VALIDATION_REQUIRED, "to_status is required")

Service-layer ``PlatformError`` subclasses are translated by
``register_error_handlers(bp)``, which every blueprint calls once.
"""

from __future__ import annotations

import logging

from flask import jsonify, request

from orderflow.core.exceptions import PlatformError

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention: ``ERR_`` prefix for every application error.
    """

    # Authentication – HTTP 401
    UNAUTHORIZED = "ERR_UNAUTHORIZED"

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION = "ERR_VALIDATION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Workflow – HTTP 422
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    BLOCKED = "ERR_BLOCKED"

    # Quota – HTTP 429
    LIMIT_EXCEEDED = "ERR_LIMIT_EXCEEDED"

    # Server – HTTP 500
    CONFIGURATION = "ERR_CONFIGURATION"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.UNAUTHORIZED: 401,
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.INVALID_TRANSITION: 422,
    E.BLOCKED: 422,
    E.LIMIT_EXCEEDED: 429,
    E.CONFIGURATION: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Attach the platform error handlers to a blueprint."""

    @bp.errorhandler(PlatformError)
    def _handle_platform_error(error: PlatformError):
        if error.http_status >= 500:
            logger.error("%s in %s endpoint=%s: %s", type(error).__name__, bp.name,
                         request.endpoint, error.message,
                         extra={"error_code": error.error_code})
        return jsonify(error.to_dict()), error.http_status

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
