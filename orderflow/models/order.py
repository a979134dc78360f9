"""
Order domain models: orders, order items and item issues.

Once an order exists, its status is mutated only by
``orderflow.services.transition_service`` through a compare-and-swap update.
ORM writes store the status lower-cased.

Models:
    - Order: one customer job (optionally a split child of another order)
    - OrderItem: a line on an order
    - OrderIssue: an exception recorded against an order item
"""

from sqlalchemy.orm import validates

from orderflow.models import db
from orderflow.models.base import TenantModel, _utcnow, _uuid


# ── Status vocabulary ────────────────────────────────────────────────────────

ORDER_STATUSES = (
    "draft",
    "intake",
    "preparation",
    "processing",
    "sorting",
    "washing",
    "drying",
    "finishing",
    "assembly",
    "qa",
    "packing",
    "ready",
    "out_for_delivery",
    "delivered",
    "closed",
    "cancelled",
)

TERMINAL_STATUSES = frozenset({"delivered", "closed", "cancelled"})

# Built-in legacy map, used when a tenant has no stored workflow definition.
DEFAULT_TRANSITIONS = {
    "draft": ["intake", "cancelled"],
    "intake": ["preparation", "processing", "cancelled"],
    "preparation": ["processing", "cancelled"],
    "processing": ["sorting", "washing", "assembly", "qa", "packing", "ready", "cancelled"],
    "sorting": ["washing"],
    "washing": ["drying"],
    "drying": ["finishing"],
    "finishing": ["assembly", "qa", "packing", "ready"],
    "assembly": ["qa", "packing", "ready"],
    "qa": ["packing", "ready", "processing"],
    "packing": ["ready"],
    "ready": ["out_for_delivery", "delivered"],
    "out_for_delivery": ["delivered", "ready"],
    "delivered": ["closed", "delivered"],
}

# Per-edge flags keyed "from->to"; "*" matches any source status.
DEFAULT_TRANSITION_RULES = {
    "*->cancelled": {"requires_notes": True},
    "qa->processing": {"requires_notes": True},
}

ORDER_PRIORITIES = ("normal", "urgent", "express")
DELIVERY_TYPES = ("pickup", "delivery")

ISSUE_CODES = ("damage", "stain", "complaint", "other")
ISSUE_PRIORITIES = ("low", "normal", "high", "urgent")
BLOCKING_ISSUE_PRIORITIES = frozenset({"high", "urgent"})


# ═════════════════════════════════════════════════════════════════════════════
# Order
# ═════════════════════════════════════════════════════════════════════════════


class Order(TenantModel):
    """
    One customer job moving through the tenant's workflow.

    ``version`` increments on every status change; ``parent_order_id`` is set
    once, when the order is created by a split, and never changes afterwards.
    """

    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "order_no", name="uq_order_tenant_no"),
        db.Index("idx_order_tenant_status", "tenant_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_no = db.Column(db.String(40), nullable=False)
    status = db.Column(
        db.String(30), nullable=False, default="draft",
        comment="Member of the tenant's configured status set",
    )
    service_category_code = db.Column(db.String(40), nullable=True)
    priority = db.Column(db.String(10), nullable=False, default="normal")
    delivery_type = db.Column(db.String(10), nullable=False, default="pickup")
    delivery_address = db.Column(db.String(500), nullable=True)
    rack_location = db.Column(db.String(50), nullable=True)

    parent_order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=True, index=True,
    )
    has_split = db.Column(db.Boolean, nullable=False, default=False)
    has_issue = db.Column(db.Boolean, nullable=False, default=False)
    split_in_progress = db.Column(db.Boolean, nullable=False, default=False)

    version = db.Column(db.Integer, nullable=False, default=1)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    items = db.relationship(
        "OrderItem", back_populates="order", lazy="select",
        order_by="OrderItem.line_no",
    )
    children = db.relationship(
        "Order", lazy="select", order_by="Order.order_no",
        backref=db.backref("parent", remote_side=[id]),
    )

    @validates("status")
    def _normalize_status(self, key, value):
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def is_terminal(self):
        return (self.status or "").lower() in TERMINAL_STATUSES

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "order_no": self.order_no,
            "status": self.status,
            "service_category_code": self.service_category_code,
            "priority": self.priority,
            "delivery_type": self.delivery_type,
            "delivery_address": self.delivery_address,
            "rack_location": self.rack_location,
            "parent_order_id": self.parent_order_id,
            "has_split": self.has_split,
            "has_issue": self.has_issue,
            "split_in_progress": self.split_in_progress,
            "version": self.version,
            "ready_at": self.ready_at.isoformat() if self.ready_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<Order {self.order_no}: {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# OrderItem
# ═════════════════════════════════════════════════════════════════════════════


class OrderItem(TenantModel):
    __tablename__ = "order_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    line_no = db.Column(db.Integer, nullable=False, default=1)
    product_name = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    service_category_code = db.Column(db.String(40), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    order = db.relationship("Order", back_populates="items")
    issues = db.relationship(
        "OrderIssue", back_populates="item", lazy="select",
        order_by="OrderIssue.created_at",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "line_no": self.line_no,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "service_category_code": self.service_category_code,
        }


# ═════════════════════════════════════════════════════════════════════════════
# OrderIssue
# ═════════════════════════════════════════════════════════════════════════════


class OrderIssue(TenantModel):
    """
    Exception recorded against an item (damage, stain, complaint …).

    Lifecycle is one-way: open → resolved.  Reopening means a new issue.
    ``order_id`` follows the item when a split moves it to a child order.
    """

    __tablename__ = "order_item_issues"
    __table_args__ = (
        db.Index("idx_issue_order_open", "order_id", "solved_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    order_item_id = db.Column(
        db.String(36), db.ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    issue_code = db.Column(
        db.String(20), nullable=False,
        comment="damage | stain | complaint | other",
    )
    issue_text = db.Column(db.Text, nullable=False)
    photo_url = db.Column(db.String(500), nullable=True)
    priority = db.Column(
        db.String(10), nullable=False, default="normal",
        comment="low | normal | high | urgent",
    )
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    solved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    solved_by = db.Column(db.String(64), nullable=True)
    solved_notes = db.Column(db.Text, nullable=True)

    item = db.relationship("OrderItem", back_populates="issues")

    @property
    def is_resolved(self):
        return self.solved_at is not None

    @property
    def is_blocking(self):
        return not self.is_resolved and self.priority in BLOCKING_ISSUE_PRIORITIES

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "issue_code": self.issue_code,
            "issue_text": self.issue_text,
            "photo_url": self.photo_url,
            "priority": self.priority,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved": self.is_resolved,
            "solved_at": self.solved_at.isoformat() if self.solved_at else None,
            "solved_by": self.solved_by,
            "solved_notes": self.solved_notes,
        }
