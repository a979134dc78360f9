"""
JWT Auth Middleware: Parses JWT from Authorization header, sets g.jwt_*.

Every ``/api/v1/`` route except the public confirmation link and health
checks requires ``Authorization: Bearer <token>``; missing or invalid
tokens are answered with 401 before the route handler runs.

Sets:
    g.jwt_user_id    int
    g.jwt_tenant_id  int
    g.jwt_name       str
"""

import logging

import jwt as pyjwt
from flask import g, request

from orderflow.services.jwt_service import decode_access_token
from orderflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/public/",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_name = ""

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None
        if request.method == "OPTIONS":
            return None

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return api_error(E.UNAUTHORIZED, "Authentication required")

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            return api_error(E.UNAUTHORIZED, "Token expired")
        except pyjwt.InvalidTokenError as exc:
            logger.info("Rejected JWT on %s: %s", path, exc)
            return api_error(E.UNAUTHORIZED, "Invalid token")

        try:
            g.jwt_user_id = int(payload["sub"])
            g.jwt_tenant_id = int(payload["tenant_id"])
        except (KeyError, TypeError, ValueError):
            return api_error(E.UNAUTHORIZED, "Token is missing subject or tenant")
        g.jwt_name = payload.get("name") or ""
        return None
