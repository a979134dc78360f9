"""
Transition Engine Tests:
  - legality (edge map, unknown statuses, self-transitions)
  - notes requirement
  - permission check
  - blockers: every active blocker is reported
  - compare-and-swap: lost race -> Conflict, no record
  - exactly one TransitionRecord per success, none per failure
  - side effects (ready_at / delivered_at / rack_location)
  - tenant isolation
  - bulk transitions with partial success
"""

from datetime import datetime, timezone

import pytest
import sqlalchemy as sa

from orderflow.core.exceptions import (
    BlockedError,
    ConflictError,
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from orderflow.models import db
from orderflow.models.history import TransitionRecord
from orderflow.models.order import Order
from orderflow.services.audit_service import list_for_order
from orderflow.services.blocker_service import Blocker, BlockerEvaluator
from orderflow.services.permission_service import Actor
from orderflow.services.transition_service import (
    TransitionOptions,
    bulk_transition,
    get_allowed_transitions,
    transition_order,
)
from orderflow.services.workflow_config import build_snapshot


def _records(order_id):
    return TransitionRecord.query.filter_by(order_id=order_id).count()


def _o1_snapshot(tenant_id, **kwargs):
    return build_snapshot(
        tenant_id,
        transitions={
            "ready": ["out_for_delivery", "delivered"],
            "out_for_delivery": ["delivered"],
            "delivered": ["closed"],
        },
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Walk-through
# ═══════════════════════════════════════════════════════════════════════════


class TestReadyToDeliveredScenario:

    def test_full_walkthrough(self, tenant, make_user, operator, actor_for, make_order, add_issue):
        order = make_order("ready")
        snap = _o1_snapshot(tenant.id)
        opts = TransitionOptions(notes="confirmed")

        with pytest.raises(InvalidTransitionError) as exc:
            transition_order(order.id, "ready", "qa", actor_for(operator), opts, snapshot=snap)
        assert exc.value.details["allowed_transitions"] == ["out_for_delivery", "delivered"]

        clerk = make_user(["orders:issues"])
        with pytest.raises(PermissionDenied) as exc:
            transition_order(order.id, "ready", "delivered", actor_for(clerk), opts, snapshot=snap)
        assert exc.value.missing == ["orders:transition"]

        issue = add_issue(order, priority="high")
        with pytest.raises(BlockedError) as exc:
            transition_order(order.id, "ready", "delivered", actor_for(operator), opts, snapshot=snap)
        assert [b.code for b in exc.value.blockers] == ["unresolved_issue"]
        assert exc.value.blockers[0].details["issue_id"] == issue.id
        assert _records(order.id) == 0

        issue.solved_at = datetime.now(timezone.utc)
        db.session.commit()

        result = transition_order(order.id, "ready", "delivered", actor_for(operator), opts, snapshot=snap)
        assert result.order.status == "delivered"
        records = list_for_order(order.id, tenant.id)
        assert len(records) == 1
        assert (records[0].from_status, records[0].to_status) == ("ready", "delivered")
        assert records[0].notes == "confirmed"
        assert records[0].actor_id == str(operator.id)


# ═══════════════════════════════════════════════════════════════════════════
# Legality & notes
# ═══════════════════════════════════════════════════════════════════════════


class TestLegality:

    def test_unknown_target_status(self, operator, actor_for, make_order):
        order = make_order("ready")
        with pytest.raises(InvalidTransitionError) as exc:
            transition_order(order.id, "ready", "teleported", actor_for(operator))
        assert exc.value.reason == "unknown_status"

    def test_self_transition_rejected_unless_configured(self, operator, actor_for, make_order):
        order = make_order("ready")
        with pytest.raises(InvalidTransitionError) as exc:
            transition_order(order.id, "ready", "ready", actor_for(operator))
        assert exc.value.reason == "self_transition_not_allowed"
        assert _records(order.id) == 0

    def test_configured_self_transition_is_recorded(self, operator, actor_for, make_order):
        order = make_order("delivered")
        result = transition_order(order.id, "delivered", "delivered", actor_for(operator))
        assert result.idempotent is True
        assert _records(order.id) == 1

    def test_configured_self_transition_leaves_order_untouched(self, operator, actor_for, make_order):
        delivered_at = datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc)
        order = make_order("delivered", delivered_at=delivered_at)
        before_version = order.version
        before_updated = order.updated_at

        transition_order(order.id, "delivered", "delivered", actor_for(operator))

        db.session.expire_all()
        stored = db.session.get(Order, order.id)
        assert stored.delivered_at.replace(tzinfo=None) == delivered_at.replace(tzinfo=None)
        assert stored.version == before_version
        assert stored.updated_at == before_updated

    def test_terminal_status_has_no_edges(self, operator, actor_for, make_order):
        order = make_order("cancelled")
        with pytest.raises(InvalidTransitionError) as exc:
            transition_order(order.id, "cancelled", "intake", actor_for(operator))
        assert exc.value.details["allowed_transitions"] == []

    def test_status_input_normalised(self, operator, actor_for, make_order):
        order = make_order("qa")
        result = transition_order(order.id, " QA ", "Packing", actor_for(operator))
        assert result.to_status == "packing"


class TestNotes:

    def test_notes_required_for_cancel(self, operator, actor_for, make_order):
        order = make_order("intake")
        with pytest.raises(ValidationError) as exc:
            transition_order(order.id, "intake", "cancelled", actor_for(operator),
                             TransitionOptions(notes="   "))
        assert exc.value.details["reason"] == "notes_required"
        assert _records(order.id) == 0

        transition_order(order.id, "intake", "cancelled", actor_for(operator),
                         TransitionOptions(notes="customer called"))
        assert _records(order.id) == 1

    def test_notes_optional_elsewhere(self, operator, actor_for, make_order):
        order = make_order("intake")
        result = transition_order(order.id, "intake", "processing", actor_for(operator))
        assert result.record.notes is None


# ═══════════════════════════════════════════════════════════════════════════
# Blockers
# ═══════════════════════════════════════════════════════════════════════════


class TestBlockers:

    def test_all_blockers_reported(self, tenant, operator, actor_for, make_order, add_issue):
        order = make_order("ready", delivery_type="delivery")
        add_issue(order, priority="urgent", item=order.items[0])
        add_issue(order, priority="high", code="stain", item=order.items[1])
        with pytest.raises(BlockedError) as exc:
            transition_order(order.id, "ready", "out_for_delivery", actor_for(operator))
        codes = [b.code for b in exc.value.blockers]
        assert codes == ["unresolved_issue", "unresolved_issue", "missing_delivery_address"]
        assert len(exc.value.to_dict()["blockers"]) == 3

    def test_split_in_progress_blocks(self, operator, actor_for, make_order):
        order = make_order("packing", split_in_progress=True)
        with pytest.raises(BlockedError) as exc:
            transition_order(order.id, "packing", "ready", actor_for(operator))
        assert [b.code for b in exc.value.blockers] == ["split_in_progress"]
        assert _records(order.id) == 0

    def test_low_priority_issue_only_blocks_under_quality_gate(
        self, tenant, operator, actor_for, make_order, add_issue,
    ):
        order = make_order("packing")
        add_issue(order, priority="low")
        gated = build_snapshot(tenant.id, quality_gate_rules={"ready": {"requireNoUnresolvedIssues": True}})
        with pytest.raises(BlockedError) as exc:
            transition_order(order.id, "packing", "ready", actor_for(operator), snapshot=gated)
        assert exc.value.blockers[0].code == "quality_gate"

        result = transition_order(order.id, "packing", "ready", actor_for(operator))
        assert result.order.status == "ready"

    def test_return_to_rework_not_blocked_by_issue(self, operator, actor_for, make_order, add_issue):
        order = make_order("qa")
        add_issue(order, priority="high")
        result = transition_order(order.id, "qa", "processing", actor_for(operator),
                                  TransitionOptions(notes="rework sleeve"))
        assert result.order.status == "processing"

    def test_rack_location_required(self, tenant, operator, actor_for, make_order):
        order = make_order("packing")
        snap = build_snapshot(tenant.id, settings={"require_rack_location": True})
        with pytest.raises(BlockedError) as exc:
            transition_order(order.id, "packing", "ready", actor_for(operator), snapshot=snap)
        assert exc.value.blockers[0].code == "rack_location_required"

        result = transition_order(order.id, "packing", "ready", actor_for(operator),
                                  TransitionOptions(rack_location=" B-12 "), snapshot=snap)
        assert result.order.rack_location == "B-12"
        assert result.order.ready_at is not None

    def test_custom_evaluator(self, operator, actor_for, make_order):
        order = make_order("intake")
        evaluator = BlockerEvaluator([lambda ctx: [Blocker("hold", "Manual hold")]])
        with pytest.raises(BlockedError):
            transition_order(order.id, "intake", "processing", actor_for(operator), evaluator=evaluator)

    def test_evaluator_failure_is_internal_error(self, operator, actor_for, make_order):
        def broken(ctx):
            raise RuntimeError("issue service down")

        order = make_order("intake")
        with pytest.raises(InternalError):
            transition_order(order.id, "intake", "processing", actor_for(operator),
                             evaluator=BlockerEvaluator([broken]))
        assert db.session.get(Order, order.id).status == "intake"
        assert _records(order.id) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════════════════


class TestCompareAndSwap:

    def test_stale_from_status(self, operator, actor_for, make_order):
        order = make_order("packing")
        with pytest.raises(ConflictError) as exc:
            transition_order(order.id, "qa", "packing", actor_for(operator))
        assert exc.value.details == {"expected": "qa", "actual": "packing"}

    def test_permission_checked_before_stale_from_status(self, make_user, actor_for, make_order):
        outsider = make_user([])
        order = make_order("packing")
        with pytest.raises(PermissionDenied) as exc:
            transition_order(order.id, "qa", "packing", actor_for(outsider))
        assert "actual" not in exc.value.details
        assert _records(order.id) == 0

    def test_mixed_case_stored_status(self, operator, actor_for, make_order):
        order = make_order("ready")
        # Intake systems write rows without going through the ORM
        db.session.execute(sa.update(Order).where(Order.id == order.id).values(status="Ready"))
        db.session.commit()
        db.session.expire_all()

        result = transition_order(order.id, "ready", "delivered", actor_for(operator))
        assert result.from_status == "ready"
        assert result.order.status == "delivered"
        assert _records(order.id) == 1

    def test_status_lowercased_on_write(self, make_order):
        order = make_order(" Ready ")
        db.session.expire_all()
        assert db.session.get(Order, order.id).status == "ready"

    def test_lost_race_writes_nothing(self, tenant, operator, actor_for, make_order):
        order = make_order("ready")

        def racing_writer(ctx):
            # Another worker moves the order between our read and our update
            db.session.execute(
                sa.update(Order).where(Order.id == ctx.order.id).values(status="out_for_delivery")
            )
            db.session.commit()
            return []

        with pytest.raises(ConflictError) as exc:
            transition_order(order.id, "ready", "delivered", actor_for(operator),
                             evaluator=BlockerEvaluator([racing_writer]))
        assert exc.value.actual == "out_for_delivery"
        assert _records(order.id) == 0
        assert db.session.get(Order, order.id).status == "out_for_delivery"

    def test_version_increments(self, operator, actor_for, make_order):
        order = make_order("intake")
        before = order.version
        result = transition_order(order.id, None, "processing", actor_for(operator))
        assert result.order.version == before + 1
        assert result.from_status == "intake"


# ═══════════════════════════════════════════════════════════════════════════
# Scope & side effects
# ═══════════════════════════════════════════════════════════════════════════


class TestScopeAndSideEffects:

    def test_other_tenant_order_not_found(self, other_tenant, operator, actor_for, make_order):
        foreign = make_order("ready", for_tenant=other_tenant)
        with pytest.raises(NotFoundError):
            transition_order(foreign.id, "ready", "delivered", actor_for(operator))
        assert _records(foreign.id) == 0

    def test_delivered_at_set(self, operator, actor_for, make_order):
        order = make_order("ready")
        result = transition_order(order.id, "ready", "delivered", actor_for(operator),
                                  TransitionOptions(metadata={"source": "counter"}))
        assert result.order.delivered_at is not None
        assert result.record.metadata_json == {"source": "counter"}
        assert {t["to_status"] for t in result.allowed_transitions} == {"closed", "delivered"}

    def test_preloaded_actor_permissions(self, tenant, make_order):
        order = make_order("intake")
        kiosk = Actor(id="kiosk-1", tenant_id=tenant.id, permissions=frozenset({"orders:*"}))
        result = transition_order(order.id, "intake", "processing", kiosk)
        assert result.record.actor_id == "kiosk-1"


class TestAllowedTransitions:

    def test_lists_edges_with_notes_flags(self, operator, actor_for, make_order):
        order = make_order("qa")
        data = get_allowed_transitions(order.id, actor_for(operator))
        assert data["current_status"] == "qa"
        assert {"to_status": "processing", "requires_notes": True} in data["allowed_transitions"]
        assert {"to_status": "packing", "requires_notes": False} in data["allowed_transitions"]

    def test_screen_mode_off_screen_is_empty(self, operator, actor_for, make_order):
        order = make_order("intake")
        data = get_allowed_transitions(order.id, actor_for(operator),
                                       mode="screen_contract", screen="qa")
        assert data["allowed_transitions"] == []
        assert data["mode"] == "screen_contract"


class TestBulkTransition:

    def test_partial_success(self, operator, actor_for, make_order):
        ok = make_order("packing")
        illegal = make_order("intake")
        result = bulk_transition([ok.id, illegal.id, "missing-id"], "ready", actor_for(operator))
        assert [s["order_id"] for s in result["success"]] == [ok.id]
        codes = {e["order_id"]: e["code"] for e in result["errors"]}
        assert codes == {illegal.id: "ERR_INVALID_TRANSITION", "missing-id": "ERR_NOT_FOUND"}
        assert _records(ok.id) == 1
