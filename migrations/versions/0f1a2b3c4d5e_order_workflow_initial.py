"""order_workflow_initial

Creates the order workflow schema:
  - tenants, users, roles, permissions, role_permissions, user_roles,
    resource_permissions
  - orders, order_items, order_item_issues
  - workflow_definitions, workflow_templates, workflow_template_transitions,
    tenant_workflow_templates, screen_contracts
  - order_status_history, audit_logs

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 0f1a2b3c4d5e
Revises:
Create Date: 2026-10-18 09:12:44.118203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '0f1a2b3c4d5e'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Tenants & auth ────────────────────────────────────────────────────
    if "tenants" not in existing:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("plan", sa.String(length=50), nullable=True),
            sa.Column("max_active_orders", sa.Integer(), nullable=True,
                      comment="Plan ceiling on non-terminal orders; NULL = unlimited"),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True,
                      comment="orders_split_enabled | disabled_screens | require_rack_location"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        )
        op.create_index("ix_users_tenant_id", "users", ["tenant_id"])

    if "roles" not in existing:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("is_system", sa.Boolean(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),
        )

    if "permissions" not in existing:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("codename", sa.String(length=100), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("codename"),
        )

    if "role_permissions" not in existing:
        op.create_table(
            "role_permissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("permission_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
        )

    if "user_roles" not in existing:
        op.create_table(
            "user_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True,
                      comment="NULL = inherits the user's tenant"),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role_id", "tenant_id", name="uq_user_role_scope"),
        )

    if "resource_permissions" not in existing:
        op.create_table(
            "resource_permissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("codename", sa.String(length=100), nullable=False),
            sa.Column("resource_type", sa.String(length=50), nullable=False),
            sa.Column("resource_id", sa.String(length=36), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_resperm_lookup", "resource_permissions",
                        ["user_id", "resource_type", "resource_id"])

    # ── Orders ────────────────────────────────────────────────────────────
    if "orders" not in existing:
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("order_no", sa.String(length=40), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False,
                      comment="Member of the tenant's configured status set"),
            sa.Column("service_category_code", sa.String(length=40), nullable=True),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="normal"),
            sa.Column("delivery_type", sa.String(length=10), nullable=False, server_default="pickup"),
            sa.Column("delivery_address", sa.String(length=500), nullable=True),
            sa.Column("rack_location", sa.String(length=50), nullable=True),
            sa.Column("parent_order_id", sa.String(length=36), nullable=True),
            sa.Column("has_split", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("has_issue", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("split_in_progress", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["parent_order_id"], ["orders.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "order_no", name="uq_order_tenant_no"),
        )
        op.create_index("idx_order_tenant_status", "orders", ["tenant_id", "status"])
        op.create_index("ix_orders_tenant_id", "orders", ["tenant_id"])
        op.create_index("ix_orders_parent_order_id", "orders", ["parent_order_id"])

    if "order_items" not in existing:
        op.create_table(
            "order_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("line_no", sa.Integer(), nullable=False),
            sa.Column("product_name", sa.String(length=200), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("service_category_code", sa.String(length=40), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
        op.create_index("ix_order_items_tenant_id", "order_items", ["tenant_id"])

    if "order_item_issues" not in existing:
        op.create_table(
            "order_item_issues",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("order_item_id", sa.String(length=36), nullable=False),
            sa.Column("issue_code", sa.String(length=20), nullable=False,
                      comment="damage | stain | complaint | other"),
            sa.Column("issue_text", sa.Text(), nullable=False),
            sa.Column("photo_url", sa.String(length=500), nullable=True),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="normal",
                      comment="low | normal | high | urgent"),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("solved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("solved_by", sa.String(length=64), nullable=True),
            sa.Column("solved_notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_issue_order_open", "order_item_issues", ["order_id", "solved_at"])
        op.create_index("ix_order_item_issues_order_item_id", "order_item_issues", ["order_item_id"])
        op.create_index("ix_order_item_issues_tenant_id", "order_item_issues", ["tenant_id"])

    # ── Workflow configuration ────────────────────────────────────────────
    if "workflow_definitions" not in existing:
        op.create_table(
            "workflow_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("service_category_code", sa.String(length=40), nullable=True,
                      comment="NULL = tenant-wide default definition"),
            sa.Column("workflow_steps", sa.JSON(), nullable=False),
            sa.Column("status_transitions", sa.JSON(), nullable=False),
            sa.Column("transition_rules", sa.JSON(), nullable=False),
            sa.Column("quality_gate_rules", sa.JSON(), nullable=False),
            sa.Column("issue_return_status", sa.String(length=30), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_wfdef_tenant_cat", "workflow_definitions",
                        ["tenant_id", "service_category_code", "is_active"])

    if "workflow_templates" not in existing:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=40), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("stages", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "workflow_template_transitions" not in existing:
        op.create_table(
            "workflow_template_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=30), nullable=False),
            sa.Column("to_status", sa.String(length=30), nullable=False),
            sa.Column("requires_notes", sa.Boolean(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("template_id", "from_status", "to_status", name="uq_wftt_edge"),
        )

    if "tenant_workflow_templates" not in existing:
        op.create_table(
            "tenant_workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("service_category_code", sa.String(length=40), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default="1"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_twt_tenant", "tenant_workflow_templates",
                        ["tenant_id", "service_category_code", "is_active"])

    if "screen_contracts" not in existing:
        op.create_table(
            "screen_contracts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("screen", sa.String(length=40), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("statuses", sa.JSON(), nullable=False),
            sa.Column("additional_filters", sa.JSON(), nullable=False),
            sa.Column("required_permissions", sa.JSON(), nullable=False),
            sa.Column("is_published", sa.Boolean(), nullable=False, server_default="1"),
            sa.Column("published_by", sa.String(length=64), nullable=True),
            sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("screen", "version", name="uq_screen_version"),
        )
        op.create_index("ix_screen_contracts_screen", "screen_contracts", ["screen"])

    # ── History & audit ───────────────────────────────────────────────────
    if "order_status_history" not in existing:
        op.create_table(
            "order_status_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=30), nullable=True),
            sa.Column("to_status", sa.String(length=30), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("actor_name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("mode", sa.String(length=20), nullable=False, server_default="legacy"),
            sa.Column("screen", sa.String(length=40), nullable=True),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_osh_order", "order_status_history", ["order_id", "id"])
        op.create_index("idx_osh_tenant", "order_status_history", ["tenant_id"])

    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False,
                      comment="order | order_issue | screen_contract | workflow"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("order_status_history")
    op.drop_table("screen_contracts")
    op.drop_table("tenant_workflow_templates")
    op.drop_table("workflow_template_transitions")
    op.drop_table("workflow_templates")
    op.drop_table("workflow_definitions")
    op.drop_table("order_item_issues")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("resource_permissions")
    op.drop_table("user_roles")
    op.drop_table("role_permissions")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
    op.drop_table("tenants")
