"""
Split Coordinator Tests:
  - items partitioned exactly once across children
  - validation: too few groups, empty groups, non-partitions
  - permission, tenant setting, terminal orders, quota
  - unresolved issues refuse the split
  - the parent is claimed (split_in_progress) while children are created
  - any failure rolls the whole split back and releases the claim
"""

from datetime import datetime, timezone

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError

from orderflow.core.exceptions import (
    BlockedError,
    InternalError,
    LimitExceededError,
    PermissionDenied,
    ValidationError,
)
from orderflow.models import db
from orderflow.models.audit import AuditLog
from orderflow.models.order import Order, OrderIssue, OrderItem
from orderflow.services import order_store
from orderflow.services.split_service import list_children, split_order


def _item_ids(order):
    return [i.id for i in order.items]


def _split_flag(order_id):
    return db.session.execute(
        sa.select(Order.split_in_progress).where(Order.id == order_id)
    ).scalar_one()


class TestSplitHappyPath:

    def test_children_partition_items(self, manager, actor_for, make_order):
        parent = make_order("processing", items=3, priority="urgent")
        a, b, c = _item_ids(parent)

        children = split_order(parent.id, [[a, c], [b]], actor_for(manager), reason="two racks")

        assert [ch.order_no for ch in children] == ["ORD-0001-1", "ORD-0001-2"]
        assert all(ch.parent_order_id == parent.id for ch in children)
        assert all(ch.status == "processing" and ch.priority == "urgent" for ch in children)
        assert {i.id for i in children[0].items} == {a, c}
        assert [i.line_no for i in children[0].items] == [1, 2]
        assert {i.id for i in children[1].items} == {b}

        parent = db.session.get(Order, parent.id)
        assert parent.has_split is True
        assert parent.status == "processing"
        assert parent.items == []

    def test_audit_rows(self, manager, actor_for, make_order):
        parent = make_order("processing", items=2)
        a, b = _item_ids(parent)
        children = split_order(parent.id, [[a], [b]], actor_for(manager))

        split_row = AuditLog.query.filter_by(action="order.split").one()
        assert split_row.entity_id == parent.id
        assert split_row.diff["groups"] == [[a], [b]]
        created = AuditLog.query.filter_by(action="order.created_from_split").all()
        assert {r.entity_id for r in created} == {c.id for c in children}

    def test_list_children(self, manager, actor_for, make_order, tenant):
        parent = make_order("processing", items=2)
        a, b = _item_ids(parent)
        split_order(parent.id, [[a], [b]], actor_for(manager))
        assert [c.order_no for c in list_children(parent.id, tenant.id)] == ["ORD-0001-1", "ORD-0001-2"]

    def test_resolved_issues_travel_with_item(self, manager, actor_for, make_order, add_issue):
        parent = make_order("processing", items=2)
        a, b = _item_ids(parent)
        issue = add_issue(parent, priority="low", item=parent.items[1])
        issue.solved_at = datetime.now(timezone.utc)
        db.session.commit()

        children = split_order(parent.id, [[a], [b]], actor_for(manager))
        assert db.session.get(OrderIssue, issue.id).order_id == children[1].id


class TestSplitValidation:

    @pytest.mark.parametrize("groups_fn,reason", [
        (lambda ids: [ids], "too_few_groups"),
        (lambda ids: [ids, []], "empty_group"),
        (lambda ids: [[ids[0]], [ids[0], ids[1]]], "not_a_partition"),
        (lambda ids: [[ids[0]], ["nope"]], "not_a_partition"),
    ])
    def test_rejected_groups(self, manager, actor_for, make_order, groups_fn, reason):
        parent = make_order("processing", items=2)
        with pytest.raises(ValidationError) as exc:
            split_order(parent.id, groups_fn(_item_ids(parent)), actor_for(manager))
        assert exc.value.details["reason"] == reason
        assert Order.query.count() == 1

    def test_partition_details(self, manager, actor_for, make_order):
        parent = make_order("processing", items=3)
        a, b, c = _item_ids(parent)
        with pytest.raises(ValidationError) as exc:
            split_order(parent.id, [[a], [a, "ghost"]], actor_for(manager))
        details = exc.value.details
        assert details["duplicate_items"] == [a]
        assert details["unknown_items"] == ["ghost"]
        assert details["unassigned_items"] == sorted([b, c])

    def test_requires_split_permission(self, operator, actor_for, make_order):
        parent = make_order("processing", items=2)
        with pytest.raises(PermissionDenied):
            split_order(parent.id, [[i] for i in _item_ids(parent)], actor_for(operator))

    def test_disabled_for_tenant(self, tenant, manager, actor_for, make_order):
        tenant.settings = {"orders_split_enabled": False}
        db.session.commit()
        parent = make_order("processing", items=2)
        with pytest.raises(ValidationError) as exc:
            split_order(parent.id, [[i] for i in _item_ids(parent)], actor_for(manager))
        assert exc.value.details["reason"] == "split_disabled"

    def test_terminal_order(self, manager, actor_for, make_order):
        parent = make_order("delivered", items=2)
        with pytest.raises(ValidationError) as exc:
            split_order(parent.id, [[i] for i in _item_ids(parent)], actor_for(manager))
        assert exc.value.details["reason"] == "order_terminal"

    def test_open_issue_blocks(self, manager, actor_for, make_order, add_issue):
        parent = make_order("processing", items=2)
        add_issue(parent, priority="low")
        with pytest.raises(BlockedError) as exc:
            split_order(parent.id, [[i] for i in _item_ids(parent)], actor_for(manager))
        assert exc.value.blockers[0].code == "unresolved_issue"
        assert Order.query.count() == 1

    def test_quota(self, tenant, manager, actor_for, make_order):
        tenant.max_active_orders = 2
        db.session.commit()
        parent = make_order("processing", items=2)
        with pytest.raises(LimitExceededError) as exc:
            split_order(parent.id, [[i] for i in _item_ids(parent)], actor_for(manager))
        assert exc.value.details == {"limit_type": "active_orders", "current": 1, "limit": 2}


class TestSplitAtomicity:

    def test_store_failure_leaves_no_children(self, manager, actor_for, make_order, monkeypatch):
        parent = make_order("processing", items=2)
        a, b = _item_ids(parent)
        real_create = order_store.create_child_orders

        def create_then_fail(order, groups):
            real_create(order, groups)
            raise OperationalError("INSERT", {}, Exception("disk full"))

        monkeypatch.setattr(order_store, "create_child_orders", create_then_fail)

        with pytest.raises(InternalError):
            split_order(parent.id, [[a], [b]], actor_for(manager))

        assert Order.query.count() == 1
        assert {i.order_id for i in OrderItem.query.all()} == {parent.id}
        assert db.session.get(Order, parent.id).has_split is False
        assert AuditLog.query.filter_by(action="order.split").count() == 0
        assert _split_flag(parent.id) is False

    def test_parent_claimed_while_children_are_created(self, manager, actor_for, make_order, monkeypatch):
        parent = make_order("processing", items=2)
        a, b = _item_ids(parent)
        real_create = order_store.create_child_orders
        seen = []

        def observe_claim(order, groups):
            seen.append(_split_flag(order.id))
            return real_create(order, groups)

        monkeypatch.setattr(order_store, "create_child_orders", observe_claim)

        split_order(parent.id, [[a], [b]], actor_for(manager))

        assert seen == [True]
        assert _split_flag(parent.id) is False

    def test_second_split_refused_while_claimed(self, manager, actor_for, make_order):
        parent = make_order("processing", items=2, split_in_progress=True)
        a, b = _item_ids(parent)
        with pytest.raises(BlockedError) as exc:
            split_order(parent.id, [[a], [b]], actor_for(manager))
        assert [bl.code for bl in exc.value.blockers] == ["split_in_progress"]
        assert Order.query.count() == 1
        # The running split still owns the claim
        assert _split_flag(parent.id) is True
