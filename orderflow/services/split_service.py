"""
Split Coordinator: divides one order into independent child orders.

Validation runs in full before anything is written:
  - permission ``orders:split`` and tenant setting ``orders_split_enabled``
  - at least two non-empty groups of the parent's item ids
  - every parent item in exactly one group (no duplicates, no orphans)
  - no unresolved issue on any moved item
  - the plan quota on active orders

The parent is then claimed by setting ``split_in_progress`` with a
conditional update, committed on its own.  While the claim stands the
``split_in_progress`` blocker stops transitions of the parent and a second
split of the same order is refused.  Children are created in one further
transaction that also clears the claim; any failure rolls the children back
and releases the claim, so a partially split order is never observable.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.exceptions import (
    BlockedError,
    InternalError,
    LimitExceededError,
    PlatformError,
    ValidationError,
)
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.auth import Tenant
from orderflow.models.order import Order
from orderflow.services import order_store
from orderflow.services.blocker_service import Blocker
from orderflow.services.permission_service import PermissionGate

logger = logging.getLogger(__name__)

SPLIT_PERMISSION = "orders:split"


def _validate_groups(order: Order, groups) -> list[list[str]]:
    if not isinstance(groups, (list, tuple)) or len(groups) < 2:
        raise ValidationError(
            "A split needs at least two item groups",
            details={"field": "groups", "reason": "too_few_groups"},
        )

    parent_ids = {item.id for item in order.items}
    seen: set[str] = set()
    duplicates: set[str] = set()
    unknown: set[str] = set()
    normalized = []
    for group in groups:
        if not isinstance(group, (list, tuple)) or not group:
            raise ValidationError(
                "Every item group must contain at least one item",
                details={"field": "groups", "reason": "empty_group"},
            )
        ids = [str(i) for i in group]
        for item_id in ids:
            if item_id not in parent_ids:
                unknown.add(item_id)
            elif item_id in seen:
                duplicates.add(item_id)
            seen.add(item_id)
        normalized.append(ids)

    missing = parent_ids - seen
    if unknown or duplicates or missing:
        raise ValidationError(
            "Item groups must assign every order item exactly once",
            details={
                "field": "groups",
                "reason": "not_a_partition",
                "unknown_items": sorted(unknown),
                "duplicate_items": sorted(duplicates),
                "unassigned_items": sorted(missing),
            },
        )
    return normalized


def _issue_blockers(order: Order) -> list[Blocker]:
    blockers = []
    for item in order.items:
        for issue in item.issues:
            if not issue.is_resolved:
                blockers.append(Blocker(
                    "unresolved_issue",
                    f"Item {item.product_name} has an unresolved {issue.issue_code} issue",
                    {"issue_id": issue.id, "order_item_id": item.id, "priority": issue.priority},
                ))
    return blockers


def _release_claim(order_id: str, tenant_id: int) -> None:
    try:
        order_store.release_split(order_id, tenant_id)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not clear split_in_progress on order %s", order_id,
                         extra={"tenant_id": tenant_id, "order_id": order_id})


def split_order(order_id: str, groups, actor, *, reason: str | None = None,
                gate: PermissionGate | None = None) -> list[Order]:
    """Split ``order_id`` into ``len(groups)`` children.

    Returns the children in group order.  The parent keeps its status and
    is flagged ``has_split``.
    """
    tenant_id = actor.tenant_id
    gate = gate or PermissionGate()
    claimed = False
    try:
        order = order_store.get_order(order_id, tenant_id)
        gate.require(actor, SPLIT_PERMISSION, resource_type="order", resource_id=order.id)

        tenant = db.session.get(Tenant, tenant_id)
        if tenant.setting("orders_split_enabled", True) is False:
            raise ValidationError("Order splitting is disabled for this tenant",
                                  details={"reason": "split_disabled"})
        if order.is_terminal:
            raise ValidationError(f"Cannot split an order in terminal status '{order.status}'",
                                  details={"reason": "order_terminal"})

        normalized = _validate_groups(order, groups)

        blockers = _issue_blockers(order)
        if blockers:
            raise BlockedError(blockers, "Resolve open issues before splitting the order")

        if tenant.max_active_orders is not None:
            active = order_store.count_active_orders(tenant_id)
            if active + len(normalized) > tenant.max_active_orders:
                raise LimitExceededError("active_orders", active, tenant.max_active_orders)

        if not order_store.claim_split(order.id, tenant_id):
            raise BlockedError(
                [Blocker("split_in_progress", "Order is being split", {"order_id": order.id})],
                "Order is already being split",
            )
        db.session.commit()
        claimed = True

        children = order_store.create_child_orders(order, normalized)
        order.has_split = True
        order.split_in_progress = False

        write_audit(
            entity_type="order",
            entity_id=order.id,
            action="order.split",
            actor=str(actor.id),
            tenant_id=tenant_id,
            diff={
                "reason": reason,
                "children": [{"id": c.id, "order_no": c.order_no} for c in children],
                "groups": normalized,
            },
        )
        for child in children:
            write_audit(
                entity_type="order",
                entity_id=child.id,
                action="order.created_from_split",
                actor=str(actor.id),
                tenant_id=tenant_id,
                diff={"parent_order_id": order.id, "parent_order_no": order.order_no},
            )
        db.session.commit()
    except PlatformError as exc:
        db.session.rollback()
        if claimed:
            _release_claim(order_id, tenant_id)
        logger.warning("Split of order %s rejected: %s", order_id, exc.message,
                       extra={"tenant_id": tenant_id, "order_id": order_id,
                              "error_code": exc.error_code})
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        if claimed:
            _release_claim(order_id, tenant_id)
        logger.exception("Split of order %s failed", order_id,
                         extra={"tenant_id": tenant_id, "order_id": order_id})
        raise InternalError("Order split failed", details={"order_id": order_id}) from exc

    logger.info("Order %s split into %d children", order.order_no, len(children),
                extra={"tenant_id": tenant_id, "order_id": order.id})
    return children


def list_children(order_id: str, tenant_id: int) -> list[Order]:
    parent = order_store.get_order(order_id, tenant_id)
    return (
        Order.query_for_tenant(tenant_id)
        .filter(Order.parent_order_id == parent.id)
        .order_by(Order.created_at.asc(), Order.order_no.asc())
        .all()
    )
