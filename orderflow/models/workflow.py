"""
Workflow configuration models.

Two coexisting rule sources describe which status changes are legal:

    - WorkflowDefinition: legacy per-tenant (optionally per service category)
      map ``{from_status: [to_status, ...]}`` plus per-edge flags.
    - WorkflowTemplate / WorkflowTemplateTransition: the newer template
      model, assigned to tenants through TenantWorkflowTemplate and used
      together with ScreenContract rows.

All rows are read-only to the transition engine; it reads them through
immutable snapshots built by ``orderflow.services.workflow_config``.
"""

from orderflow.models import db
from orderflow.models.base import _utcnow


# ═════════════════════════════════════════════════════════════════════════════
# Legacy definition
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowDefinition(db.Model):
    __tablename__ = "workflow_definitions"
    __table_args__ = (
        db.Index("idx_wfdef_tenant_cat", "tenant_id", "service_category_code", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False,
    )
    service_category_code = db.Column(
        db.String(40), nullable=True,
        comment="NULL = tenant-wide default definition",
    )
    workflow_steps = db.Column(db.JSON, nullable=False, default=list)
    status_transitions = db.Column(
        db.JSON, nullable=False, default=dict,
        comment='{"ready": ["out_for_delivery", "delivered"], ...}',
    )
    transition_rules = db.Column(
        db.JSON, nullable=False, default=dict,
        comment='{"qa->processing": {"requires_notes": true}, "*->cancelled": {...}}',
    )
    quality_gate_rules = db.Column(
        db.JSON, nullable=False, default=dict,
        comment='{"ready": {"requireNoUnresolvedIssues": true}}',
    )
    issue_return_status = db.Column(
        db.String(30), nullable=True,
        comment="Status a high-priority issue sends the order back to",
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "service_category_code": self.service_category_code,
            "workflow_steps": self.workflow_steps or [],
            "status_transitions": self.status_transitions or {},
            "transition_rules": self.transition_rules or {},
            "quality_gate_rules": self.quality_gate_rules or {},
            "issue_return_status": self.issue_return_status,
            "version": self.version,
            "is_active": self.is_active,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Template model
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    stages = db.Column(db.JSON, nullable=False, default=list, comment="Ordered stage codes")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    transitions = db.relationship(
        "WorkflowTemplateTransition", back_populates="template",
        lazy="select", cascade="all, delete-orphan",
    )


class WorkflowTemplateTransition(db.Model):
    __tablename__ = "workflow_template_transitions"
    __table_args__ = (
        db.UniqueConstraint("template_id", "from_status", "to_status", name="uq_wftt_edge"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False,
    )
    from_status = db.Column(db.String(30), nullable=False)
    to_status = db.Column(db.String(30), nullable=False)
    requires_notes = db.Column(db.Boolean, nullable=False, default=False)

    template = db.relationship("WorkflowTemplate", back_populates="transitions")


class TenantWorkflowTemplate(db.Model):
    __tablename__ = "tenant_workflow_templates"
    __table_args__ = (
        db.Index("idx_twt_tenant", "tenant_id", "service_category_code", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False,
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False,
    )
    service_category_code = db.Column(db.String(40), nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    template = db.relationship("WorkflowTemplate")


# ═════════════════════════════════════════════════════════════════════════════
# Screen contracts
# ═════════════════════════════════════════════════════════════════════════════


class ScreenContract(db.Model):
    """
    Published contract of one operational screen.

    A (screen, version) row never changes once published; republishing
    inserts the next version.
    """

    __tablename__ = "screen_contracts"
    __table_args__ = (
        db.UniqueConstraint("screen", "version", name="uq_screen_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    screen = db.Column(db.String(40), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    statuses = db.Column(db.JSON, nullable=False, default=list)
    additional_filters = db.Column(db.JSON, nullable=False, default=dict)
    required_permissions = db.Column(db.JSON, nullable=False, default=list)
    is_published = db.Column(db.Boolean, nullable=False, default=True)
    published_by = db.Column(db.String(64), nullable=True)
    published_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "screen": self.screen,
            "version": self.version,
            "statuses": self.statuses or [],
            "additional_filters": self.additional_filters or {},
            "required_permissions": self.required_permissions or [],
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }
