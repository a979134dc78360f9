"""
Tenant Context Middleware: Enforces tenant isolation on API requests.

When a JWT-authenticated user makes a request:
  1. g.jwt_tenant_id is already set by jwt_auth middleware
  2. This middleware verifies the tenant exists and is active
  3. Sets g.tenant for easy access to the Tenant model instance
  4. All downstream DB queries filter by tenant_id

Chain order:
  jwt_auth.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, request

from orderflow.models import db
from orderflow.models.auth import Tenant
from orderflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None

        if not request.path.startswith("/api/v1/"):
            return None

        tenant_id = getattr(g, "jwt_tenant_id", None)
        if tenant_id is None:
            return None  # public or health route

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("JWT tenant_id %d not found in DB", tenant_id,
                           extra={"tenant_id": tenant_id, "event_type": "scope_mismatch"})
            return api_error(E.FORBIDDEN, "Tenant not found")

        if not tenant.is_active:
            logger.warning("JWT tenant_id %d is deactivated", tenant_id,
                           extra={"tenant_id": tenant_id, "event_type": "scope_mismatch"})
            return api_error(E.FORBIDDEN, "Tenant account is deactivated")

        g.tenant = tenant
        return None

    logger.info("Tenant context middleware installed")
