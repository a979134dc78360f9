"""
Order store: tenant-scoped reads and the conditional status update.

``compare_and_set_status`` is the only code path that writes
``Order.status``.  It issues a single ``UPDATE … WHERE lower(status) = :expected``
and reports whether exactly one row changed; a lost race shows up as
``False`` and nothing is overwritten.  Rows written outside the engine may
carry mixed-case statuses, so every status predicate here compares
lower-cased values.
"""

import logging
from datetime import datetime, timezone

import sqlalchemy as sa

from orderflow.core.exceptions import NotFoundError
from orderflow.models import db
from orderflow.models.order import TERMINAL_STATUSES, Order

logger = logging.getLogger(__name__)


def get_order(order_id: str, tenant_id: int) -> Order:
    """Fetch an order inside the tenant scope.

    Raises:
        NotFoundError: missing, or owned by another tenant.
    """
    order = Order.get_for_tenant(tenant_id, order_id)
    if order is None:
        raise NotFoundError(resource="Order", resource_id=order_id, tenant_id=tenant_id)
    return order


def get_order_by_number(tenant_id: int, order_no: str) -> Order:
    order = Order.query_for_tenant(tenant_id).filter_by(order_no=str(order_no)).first()
    if order is None:
        raise NotFoundError(resource="Order", resource_id=order_no, tenant_id=tenant_id)
    return order


def current_status(order_id: str, tenant_id: int) -> str | None:
    """Read the stored status, bypassing the identity map."""
    return db.session.execute(
        sa.select(Order.status).where(Order.id == order_id, Order.tenant_id == tenant_id)
    ).scalar_one_or_none()


def compare_and_set_status(order_id: str, tenant_id: int, expected_from: str, new_to: str,
                           extra_values: dict | None = None) -> bool:
    """Set ``status = new_to`` only where it still equals ``expected_from``
    (compared lower-cased).

    Bumps ``version`` and ``updated_at`` in the same statement.  Does not
    commit.
    """
    values = {
        "status": new_to,
        "version": Order.version + 1,
        "updated_at": datetime.now(timezone.utc),
    }
    values.update(extra_values or {})
    result = db.session.execute(
        sa.update(Order)
        .where(
            Order.id == order_id,
            Order.tenant_id == tenant_id,
            sa.func.lower(Order.status) == expected_from,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def count_active_orders(tenant_id: int) -> int:
    return (
        Order.query_for_tenant(tenant_id)
        .filter(sa.func.lower(Order.status).notin_(sorted(TERMINAL_STATUSES)))
        .count()
    )


def claim_split(order_id: str, tenant_id: int) -> bool:
    """Set ``split_in_progress`` unless another split already holds it.  Does not commit."""
    result = db.session.execute(
        sa.update(Order)
        .where(
            Order.id == order_id,
            Order.tenant_id == tenant_id,
            Order.split_in_progress.is_(False),
        )
        .values(split_in_progress=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_split(order_id: str, tenant_id: int) -> None:
    db.session.execute(
        sa.update(Order)
        .where(Order.id == order_id, Order.tenant_id == tenant_id)
        .values(split_in_progress=False)
        .execution_options(synchronize_session=False)
    )


def create_child_orders(parent: Order, groups: list[list]) -> list[Order]:
    """Create one child per item group and move the grouped items onto it.

    Issues follow their item.  Flushes but never commits; the caller owns
    the transaction so a failure leaves no child visible.
    """
    items_by_id = {item.id: item for item in parent.items}
    start = len(parent.children) + 1
    children = []
    for offset, group in enumerate(groups):
        child = Order(
            tenant_id=parent.tenant_id,
            order_no=f"{parent.order_no}-{start + offset}",
            status=parent.status,
            service_category_code=parent.service_category_code,
            priority=parent.priority,
            delivery_type=parent.delivery_type,
            delivery_address=parent.delivery_address,
            rack_location=parent.rack_location,
            parent_order_id=parent.id,
        )
        db.session.add(child)
        db.session.flush()
        for line_no, item_id in enumerate(group, start=1):
            item = items_by_id[item_id]
            item.order_id = child.id
            item.line_no = line_no
            for issue in item.issues:
                issue.order_id = child.id
        children.append(child)
    db.session.flush()
    logger.debug("Created %d child orders for %s", len(children), parent.order_no,
                 extra={"order_id": parent.id})
    return children
