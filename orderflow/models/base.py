"""
TenantModel: Abstract base class for tenant-scoped models.

All models that need tenant isolation should inherit from TenantModel
instead of db.Model directly. This adds:
  - tenant_id FK column with index
  - query_for_tenant(tenant_id) classmethod
  - get_for_tenant(tenant_id, pk) scoped primary-key lookup
"""

import uuid
from datetime import datetime, timezone

from orderflow.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)

    @classmethod
    def get_for_tenant(cls, tenant_id, pk):
        """Primary-key lookup that returns None for rows of another tenant."""
        obj = db.session.get(cls, pk)
        if obj is None or obj.tenant_id != tenant_id:
            return None
        return obj
