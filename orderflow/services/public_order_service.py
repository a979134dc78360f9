"""
Public order confirmation: the unauthenticated "I received my order" link.

The link carries only a tenant id and an order number.  It goes through the
same ``transition_order`` code path as every other caller, acting as the
synthetic public-link actor, which holds nothing but
``orders:confirm_received``.  Source statuses and the target are fixed by
configuration, never by the request.
"""

import logging

from flask import current_app

from orderflow.core.exceptions import NotFoundError, ValidationError
from orderflow.models import db
from orderflow.models.auth import Tenant
from orderflow.services import order_store
from orderflow.services.permission_service import Actor
from orderflow.services.rule_resolvers import MODE_LEGACY
from orderflow.services.transition_service import TransitionOptions, transition_order

logger = logging.getLogger(__name__)

CONFIRM_ACTION_CODE = "orders:confirm_received"


def confirm_received(tenant_id: int, order_no: str, *, metadata: dict | None = None):
    """Mark an order delivered on behalf of the customer.

    Raises:
        NotFoundError: unknown or inactive tenant, or unknown order number.
        ValidationError: order is not in a confirmable status.
        (and everything ``transition_order`` raises)
    """
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None or not tenant.is_active:
        raise NotFoundError(resource="Order", resource_id=order_no)

    order = order_store.get_order_by_number(tenant_id, order_no)
    sources = tuple(current_app.config.get("PUBLIC_CONFIRM_SOURCE_STATUSES", ()))
    target = current_app.config.get("PUBLIC_CONFIRM_TARGET_STATUS", "delivered")

    current = (order.status or "").lower()
    if current not in sources:
        logger.warning("Public confirmation refused for order %s in status %s",
                       order.order_no, current,
                       extra={"tenant_id": tenant_id, "order_id": order.id})
        raise ValidationError(
            "Order cannot be confirmed in its current status",
            details={"reason": "status_not_confirmable", "allowed_sources": list(sources)},
        )

    options = TransitionOptions(
        notes="Receipt confirmed via public link",
        metadata={**(metadata or {}), "source": "public_link"},
        mode=MODE_LEGACY,
        action_code=CONFIRM_ACTION_CODE,
    )
    return transition_order(order.id, current, target, Actor.public_link(tenant_id), options)
