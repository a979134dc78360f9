"""
Order Workflow Platform
Blueprint registry and shared request helpers.
"""

from flask import g, request

from orderflow.services.permission_service import Actor


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit: max items (default 200, capped at max_limit)
        offset: starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def current_actor() -> Actor:
    """Actor for the authenticated request (set by the JWT middleware)."""
    tenant = getattr(g, "tenant", None)
    name = getattr(g, "jwt_name", "") or f"user-{g.jwt_user_id}"
    return Actor(id=g.jwt_user_id, tenant_id=tenant.id if tenant else g.jwt_tenant_id,
                 display_name=name)
