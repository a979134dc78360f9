"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in orderflow/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from orderflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)


def tenant_rate_limit_key():
    """Dynamic rate limit key: tenant_id if available, else remote IP."""
    tenant_id = getattr(g, "jwt_tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Public confirmation link: 20/minute per IP (unauthenticated)
        - Order and workflow mutations: 120/minute
        - Screen queues (read-heavy polling): 300/minute
        - Health check: exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("public")
    if bp:
        limiter.limit("20/minute")(bp)

    for bp_name in ("orders", "workflow"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("120/minute", key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("screens")
    if bp:
        limiter.limit("300/minute", key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: public: 20/min, orders/workflow: 120/min, screens: 300/min"
    )
