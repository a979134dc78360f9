"""
Audit Trail Writer: per-order transition timeline.

``append_transition_record`` adds one immutable ``TransitionRecord`` and
flushes; the transition engine commits it together with the status
update.  ``list_for_order`` reads the timeline oldest-first.
"""

from orderflow.models import db
from orderflow.models.history import TransitionRecord


def append_transition_record(
    *,
    order_id: str,
    tenant_id: int,
    from_status: str | None,
    to_status: str,
    actor_id,
    actor_name: str = "",
    notes: str | None = None,
    metadata: dict | None = None,
    mode: str = "legacy",
    screen: str | None = None,
) -> TransitionRecord:
    record = TransitionRecord(
        order_id=order_id,
        tenant_id=tenant_id,
        from_status=from_status,
        to_status=to_status,
        actor_id=str(actor_id),
        actor_name=actor_name or "",
        notes=notes,
        metadata_json=dict(metadata or {}),
        mode=mode,
        screen=screen,
    )
    db.session.add(record)
    db.session.flush()
    return record


def list_for_order(order_id: str, tenant_id: int) -> list[TransitionRecord]:
    return (
        TransitionRecord.query
        .filter_by(order_id=order_id, tenant_id=tenant_id)
        .order_by(TransitionRecord.id.asc())
        .all()
    )
