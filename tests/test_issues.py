"""
Issue Subsystem Tests:
  - create: validation, item ownership, has_issue flag, audit row
  - resolve: one-way lifecycle, has_issue recomputed
  - list with / without resolved issues
"""

import pytest

from orderflow.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from orderflow.models import db
from orderflow.models.audit import AuditLog
from orderflow.models.order import Order
from orderflow.services.issue_service import create_issue, list_issues, resolve_issue


class TestCreateIssue:

    def test_create_sets_flag_and_audits(self, operator, actor_for, make_order):
        order = make_order("qa")
        issue = create_issue(order.id, order.items[0].id, "Damage", "Torn sleeve", "HIGH",
                             actor=actor_for(operator))
        assert issue.issue_code == "damage"
        assert issue.priority == "high"
        assert issue.is_blocking
        assert db.session.get(Order, order.id).has_issue is True
        row = AuditLog.query.filter_by(action="issue.create").one()
        assert row.diff["order_item_id"] == order.items[0].id

    @pytest.mark.parametrize("code,text,priority,field", [
        ("scratch", "Deep scratch", "normal", "issue_code"),
        ("damage", "ok", "normal", "issue_text"),
        ("damage", "x" * 1001, "normal", "issue_text"),
        ("damage", "Torn sleeve", "critical", "priority"),
    ])
    def test_validation(self, operator, actor_for, make_order, code, text, priority, field):
        order = make_order("qa")
        with pytest.raises(ValidationError) as exc:
            create_issue(order.id, order.items[0].id, code, text, priority, actor=actor_for(operator))
        assert exc.value.details["field"] == field

    def test_item_must_belong_to_order(self, operator, actor_for, make_order):
        order = make_order("qa")
        other = make_order("qa")
        with pytest.raises(NotFoundError):
            create_issue(order.id, other.items[0].id, "damage", "Torn sleeve",
                         actor=actor_for(operator))

    def test_requires_issue_permission(self, make_user, actor_for, make_order):
        driver = make_user(role_name="driver")
        order = make_order("qa")
        with pytest.raises(PermissionDenied):
            create_issue(order.id, order.items[0].id, "damage", "Torn sleeve", actor=actor_for(driver))


class TestResolveIssue:

    def test_resolve_once(self, operator, actor_for, make_order):
        order = make_order("qa")
        actor = actor_for(operator)
        issue = create_issue(order.id, order.items[0].id, "stain", "Coffee stain", actor=actor)

        resolved = resolve_issue(order.id, issue.id, "  re-washed ", actor=actor)
        assert resolved.is_resolved
        assert resolved.solved_notes == "re-washed"
        assert resolved.solved_by == str(operator.id)
        assert db.session.get(Order, order.id).has_issue is False

        with pytest.raises(ValidationError) as exc:
            resolve_issue(order.id, issue.id, None, actor=actor)
        assert exc.value.details["reason"] == "already_resolved"

    def test_flag_stays_while_other_issue_open(self, operator, actor_for, make_order):
        order = make_order("qa")
        actor = actor_for(operator)
        first = create_issue(order.id, order.items[0].id, "stain", "Coffee stain", actor=actor)
        create_issue(order.id, order.items[1].id, "damage", "Missing button", actor=actor)
        resolve_issue(order.id, first.id, None, actor=actor)
        assert db.session.get(Order, order.id).has_issue is True

    def test_issue_from_other_order(self, operator, actor_for, make_order):
        a = make_order("qa")
        b = make_order("qa")
        actor = actor_for(operator)
        issue = create_issue(a.id, a.items[0].id, "stain", "Coffee stain", actor=actor)
        with pytest.raises(NotFoundError):
            resolve_issue(b.id, issue.id, None, actor=actor)


class TestListIssues:

    def test_filter_resolved(self, tenant, operator, actor_for, make_order):
        order = make_order("qa")
        actor = actor_for(operator)
        first = create_issue(order.id, order.items[0].id, "stain", "Coffee stain", actor=actor)
        create_issue(order.id, order.items[1].id, "other", "Label missing", actor=actor)
        resolve_issue(order.id, first.id, None, actor=actor)

        assert len(list_issues(order.id, tenant.id)) == 2
        open_only = list_issues(order.id, tenant.id, include_resolved=False)
        assert [i.issue_code for i in open_only] == ["other"]

    def test_cross_tenant(self, other_tenant, make_order):
        order = make_order("qa")
        with pytest.raises(NotFoundError):
            list_issues(order.id, other_tenant.id)
