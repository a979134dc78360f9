"""
Issue Subsystem: exceptions recorded against order items.

Lifecycle is one-way: open → resolved.  ``order.has_issue`` is kept in
step with the set of open issues.  Any automatic status change a
high-priority issue triggers is composed by the caller (create the issue,
then ask the transition engine), not done here.
"""

import logging
from datetime import datetime, timezone

from orderflow.core.exceptions import NotFoundError, ValidationError
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.order import ISSUE_CODES, ISSUE_PRIORITIES, OrderIssue, OrderItem
from orderflow.services import order_store
from orderflow.services.permission_service import PermissionGate

logger = logging.getLogger(__name__)

ISSUE_PERMISSION = "orders:issues"
ISSUE_TEXT_MIN = 3
ISSUE_TEXT_MAX = 1000


def _refresh_has_issue(order) -> None:
    open_count = (
        OrderIssue.query
        .filter(OrderIssue.order_id == order.id, OrderIssue.solved_at.is_(None))
        .count()
    )
    order.has_issue = open_count > 0


def _validate(issue_code, issue_text, priority) -> tuple[str, str, str]:
    code = str(issue_code or "").strip().lower()
    if code not in ISSUE_CODES:
        raise ValidationError(f"Invalid issue_code '{issue_code}'",
                              details={"field": "issue_code", "allowed": list(ISSUE_CODES)})
    prio = str(priority or "normal").strip().lower()
    if prio not in ISSUE_PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'",
                              details={"field": "priority", "allowed": list(ISSUE_PRIORITIES)})
    text = str(issue_text or "").strip()
    if not ISSUE_TEXT_MIN <= len(text) <= ISSUE_TEXT_MAX:
        raise ValidationError(
            f"issue_text must be {ISSUE_TEXT_MIN}-{ISSUE_TEXT_MAX} characters",
            details={"field": "issue_text"},
        )
    return code, text, prio


def create_issue(order_id: str, order_item_id: str, issue_code: str, issue_text: str,
                 priority: str = "normal", *, actor, photo_url: str | None = None,
                 gate: PermissionGate | None = None) -> OrderIssue:
    """Record an issue on one item of the order.  Commits."""
    tenant_id = actor.tenant_id
    order = order_store.get_order(order_id, tenant_id)
    (gate or PermissionGate()).require(actor, ISSUE_PERMISSION,
                                       resource_type="order", resource_id=order.id)
    code, text, prio = _validate(issue_code, issue_text, priority)

    item = OrderItem.get_for_tenant(tenant_id, str(order_item_id or ""))
    if item is None or item.order_id != order.id:
        raise NotFoundError(resource="OrderItem", resource_id=order_item_id, tenant_id=tenant_id)

    issue = OrderIssue(
        tenant_id=tenant_id,
        order_id=order.id,
        order_item_id=item.id,
        issue_code=code,
        issue_text=text,
        priority=prio,
        photo_url=photo_url,
        created_by=str(actor.id),
    )
    db.session.add(issue)
    db.session.flush()
    order.has_issue = True
    write_audit(
        entity_type="order_issue",
        entity_id=issue.id,
        action="issue.create",
        actor=str(actor.id),
        tenant_id=tenant_id,
        diff={"order_id": order.id, "order_item_id": item.id,
              "issue_code": code, "priority": prio},
    )
    db.session.commit()
    logger.info("Issue %s (%s/%s) created on order %s", issue.id, code, prio, order.order_no,
                extra={"tenant_id": tenant_id, "order_id": order.id})
    return issue


def resolve_issue(order_id: str, issue_id: str, notes: str | None, *, actor,
                  gate: PermissionGate | None = None) -> OrderIssue:
    """Mark an open issue resolved.  Resolving twice is a ValidationError."""
    tenant_id = actor.tenant_id
    order = order_store.get_order(order_id, tenant_id)
    (gate or PermissionGate()).require(actor, ISSUE_PERMISSION,
                                       resource_type="order", resource_id=order.id)

    issue = OrderIssue.get_for_tenant(tenant_id, str(issue_id or ""))
    if issue is None or issue.order_id != order.id:
        raise NotFoundError(resource="Issue", resource_id=issue_id, tenant_id=tenant_id)
    if issue.is_resolved:
        raise ValidationError("Issue is already resolved",
                              details={"reason": "already_resolved", "issue_id": issue.id})

    issue.solved_at = datetime.now(timezone.utc)
    issue.solved_by = str(actor.id)
    issue.solved_notes = (notes or "").strip() or None
    db.session.flush()
    _refresh_has_issue(order)
    write_audit(
        entity_type="order_issue",
        entity_id=issue.id,
        action="issue.resolve",
        actor=str(actor.id),
        tenant_id=tenant_id,
        diff={"order_id": order.id, "notes": issue.solved_notes},
    )
    db.session.commit()
    logger.info("Issue %s resolved on order %s", issue.id, order.order_no,
                extra={"tenant_id": tenant_id, "order_id": order.id})
    return issue


def list_issues(order_id: str, tenant_id: int, include_resolved: bool = True) -> list[OrderIssue]:
    order = order_store.get_order(order_id, tenant_id)
    query = OrderIssue.query_for_tenant(tenant_id).filter(OrderIssue.order_id == order.id)
    if not include_resolved:
        query = query.filter(OrderIssue.solved_at.is_(None))
    return query.order_by(OrderIssue.created_at.asc()).all()
