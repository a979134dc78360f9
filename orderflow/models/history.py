"""
Transition records: the per-order status timeline.

One row per successful transition, never updated or deleted.  Rows are
read back in insertion order (``id`` ascending), oldest first.
"""

from orderflow.models import db
from orderflow.models.base import _utcnow


class TransitionRecord(db.Model):
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("idx_osh_order", "order_id", "id"),
        db.Index("idx_osh_tenant", "tenant_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False,
    )
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False,
    )
    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=False)
    actor_id = db.Column(db.String(64), nullable=False)
    actor_name = db.Column(db.String(200), nullable=False, default="")
    notes = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=False, default=dict)
    mode = db.Column(db.String(20), nullable=False, default="legacy")
    screen = db.Column(db.String(40), nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "tenant_id": self.tenant_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "notes": self.notes,
            "metadata": self.metadata_json or {},
            "mode": self.mode,
            "screen": self.screen,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }

    def __repr__(self):
        return f"<TransitionRecord {self.id}: {self.from_status}->{self.to_status}>"
