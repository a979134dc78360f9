"""
Rule resolver & dual-mode tests.

Covers:
  - legacy vs screen-contract resolvers agree on the built-in workflow
  - screen context checks (missing / disabled screen, status not on screen)
  - divergence between configured rule sources is refused and audited
  - verify_mode_consistency report
"""

import pytest

from orderflow.core.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from orderflow.models.audit import AuditLog
from orderflow.models.history import TransitionRecord
from orderflow.services.rule_resolvers import (
    LegacyRuleResolver,
    ScreenContractRuleResolver,
    get_rule_resolver,
)
from orderflow.services.transition_service import (
    TransitionOptions,
    transition_order,
    verify_mode_consistency,
)
from orderflow.services.workflow_config import build_snapshot


class TestResolverSelection:

    def test_modes(self):
        assert isinstance(get_rule_resolver(None), LegacyRuleResolver)
        assert isinstance(get_rule_resolver(" Legacy "), LegacyRuleResolver)
        assert isinstance(get_rule_resolver("screen_contract"), ScreenContractRuleResolver)

    def test_unknown_mode(self):
        with pytest.raises(ValidationError) as exc:
            get_rule_resolver("graph")
        assert exc.value.details["allowed"] == ["legacy", "screen_contract"]


class TestDualModeEquivalence:

    @pytest.mark.parametrize("from_status,to_status", [
        ("qa", "packing"),
        ("qa", "processing"),
        ("qa", "delivered"),
        ("ready", "delivered"),
        ("packing", "qa"),
    ])
    def test_same_decision_on_default_workflow(self, from_status, to_status):
        snap = build_snapshot(1)
        legacy = LegacyRuleResolver().decide(snap, from_status, to_status)
        screen = ScreenContractRuleResolver().decide(snap, from_status, to_status)
        assert legacy == screen

    def test_permissions_differ_by_mode(self):
        snap = build_snapshot(1)
        assert LegacyRuleResolver().required_permissions(snap, TransitionOptions()) == ["orders:transition"]
        assert ScreenContractRuleResolver().required_permissions(
            snap, TransitionOptions(screen="qa")) == ["orders:qa"]

    def test_both_modes_move_order(self, operator, actor_for, make_order):
        actor = actor_for(operator)
        a = make_order("qa")
        b = make_order("qa")

        transition_order(a.id, "qa", "packing", actor, TransitionOptions(mode="legacy"))
        transition_order(b.id, "qa", "packing", actor,
                         TransitionOptions(mode="screen_contract", screen="qa"))

        records = TransitionRecord.query.order_by(TransitionRecord.id).all()
        assert [(r.from_status, r.to_status, r.mode) for r in records] == [
            ("qa", "packing", "legacy"),
            ("qa", "packing", "screen_contract"),
        ]
        assert records[1].screen == "qa"


class TestScreenContext:

    def test_screen_required(self):
        snap = build_snapshot(1)
        with pytest.raises(ValidationError) as exc:
            ScreenContractRuleResolver().required_permissions(snap, TransitionOptions())
        assert exc.value.details["reason"] == "screen_required"

    def test_screen_disabled_for_tenant(self):
        snap = build_snapshot(1, settings={"disabled_screens": ["QA"]})
        with pytest.raises(ValidationError) as exc:
            ScreenContractRuleResolver().check_context(
                snap, "qa", "packing", TransitionOptions(screen="qa"))
        assert exc.value.details["reason"] == "screen_disabled"

    def test_status_not_on_screen(self, operator, actor_for, make_order):
        order = make_order("intake")
        with pytest.raises(InvalidTransitionError) as exc:
            transition_order(order.id, "intake", "processing", actor_for(operator),
                             TransitionOptions(mode="screen_contract", screen="qa"))
        assert exc.value.reason == "status_not_on_screen"
        assert TransitionRecord.query.count() == 0

    def test_unpublished_screen(self):
        snap = build_snapshot(1)
        with pytest.raises(NotFoundError):
            ScreenContractRuleResolver().required_permissions(
                snap, TransitionOptions(screen="laundromat"))


# ═══════════════════════════════════════════════════════════════════════════
# Divergence
# ═══════════════════════════════════════════════════════════════════════════


def _diverging_snapshot(tenant_id):
    return build_snapshot(
        tenant_id,
        transitions={"ready": ["delivered"], "delivered": ["closed"]},
        template_transitions={"ready": ["delivered", "out_for_delivery"], "delivered": ["closed"]},
        template_rules={"delivered->closed": {"requires_notes": True}},
    )


class TestDivergence:

    def test_diverging_edge_refused_and_audited(self, tenant, operator, actor_for, make_order):
        order = make_order("ready")
        with pytest.raises(ConfigurationError) as exc:
            transition_order(order.id, "ready", "out_for_delivery", actor_for(operator),
                             snapshot=_diverging_snapshot(tenant.id))
        assert exc.value.details["legacy"]["legal"] is False
        assert exc.value.details["template"]["legal"] is True

        alerts = AuditLog.query.filter_by(action="workflow.divergence").all()
        assert len(alerts) == 1
        assert alerts[0].diff["order_id"] == order.id
        assert TransitionRecord.query.count() == 0

    def test_agreeing_edge_proceeds(self, tenant, operator, actor_for, make_order):
        order = make_order("ready")
        result = transition_order(order.id, "ready", "delivered", actor_for(operator),
                                  snapshot=_diverging_snapshot(tenant.id))
        assert result.to_status == "delivered"

    def test_unconfigured_side_never_diverges(self, tenant, operator, actor_for, make_order):
        order = make_order("ready")
        snap = build_snapshot(tenant.id, transitions={"ready": ["out_for_delivery"],
                                                      "out_for_delivery": ["delivered"]})
        transition_order(order.id, "ready", "out_for_delivery", actor_for(operator), snapshot=snap)
        assert AuditLog.query.filter_by(action="workflow.divergence").count() == 0

    def test_consistency_report(self, tenant):
        report = verify_mode_consistency(tenant.id, snapshot=_diverging_snapshot(tenant.id))
        assert report["compared"] is True
        assert report["consistent"] is False
        edges = {(d["from_status"], d["to_status"]) for d in report["divergences"]}
        assert edges == {("ready", "out_for_delivery"), ("delivered", "closed")}

    def test_consistency_report_without_config(self, tenant):
        report = verify_mode_consistency(tenant.id)
        assert report["compared"] is False
        assert report["consistent"] is True
        assert report["legacy_source"] == "default"
