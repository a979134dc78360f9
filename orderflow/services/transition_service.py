"""
Order Transition Engine

Moves an order from one status to another:
  1. Permission: options.action_code in legacy mode, the screen's
     required permissions in screen mode
  2. Legality: the selected RuleResolver decides the edge; when the
     tenant configures both rule sources they must agree
  3. Notes: edges flagged ``requires_notes`` need non-empty notes
  4. Blockers: every active blocker is reported, never just the first
  5. Update: compare-and-swap on the stored status
  6. Audit: one TransitionRecord per success, committed with (5)

Failures raise a ``PlatformError`` subclass, roll back, are logged, and
never write a TransitionRecord.  There is no retry on Conflict; callers
re-fetch and decide.

Usage:
    from orderflow.services.transition_service import TransitionOptions, transition_order

    result = transition_order(
        order_id, "ready", "delivered", actor,
        TransitionOptions(notes="confirmed"),
    )
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.exceptions import (
    BlockedError,
    ConfigurationError,
    ConflictError,
    InternalError,
    InvalidTransitionError,
    PlatformError,
    ValidationError,
)
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.services import order_store
from orderflow.services.audit_service import append_transition_record
from orderflow.services.blocker_service import BlockerEvaluator
from orderflow.services.permission_service import PermissionGate
from orderflow.services.rule_resolvers import (
    DEFAULT_ACTION_CODE,
    MODE_LEGACY,
    get_rule_resolver,
)
from orderflow.services.workflow_config import load_snapshot, normalize_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionOptions:
    notes: str | None = None
    metadata: dict = field(default_factory=dict)
    screen: str | None = None
    mode: str | None = None
    rack_location: str | None = None
    action_code: str = DEFAULT_ACTION_CODE


@dataclass(frozen=True)
class TransitionResult:
    order: object
    record: object
    from_status: str
    to_status: str
    allowed_transitions: list
    idempotent: bool = False

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "transition": self.record.to_dict(),
            "allowed_transitions": self.allowed_transitions,
            "idempotent": self.idempotent,
        }


def _default_mode() -> str:
    if has_app_context():
        return current_app.config.get("WORKFLOW_DEFAULT_MODE", MODE_LEGACY)
    return MODE_LEGACY


def _side_effects(to_status: str, options: TransitionOptions) -> dict:
    now = datetime.now(timezone.utc)
    values = {}
    if to_status == "ready":
        values["ready_at"] = now
    elif to_status == "delivered":
        values["delivered_at"] = now
    if options.rack_location and options.rack_location.strip():
        values["rack_location"] = options.rack_location.strip()
    return values


# ── Dual-mode consistency ────────────────────────────────────────────────────

def _edge_divergence(snapshot, from_status: str, to_status: str) -> dict | None:
    legacy, template = snapshot.legacy, snapshot.template
    legacy_decision = (
        legacy.is_legal(from_status, to_status),
        legacy.is_legal(from_status, to_status) and legacy.requires_notes(from_status, to_status),
    )
    template_decision = (
        template.is_legal(from_status, to_status),
        template.is_legal(from_status, to_status) and template.requires_notes(from_status, to_status),
    )
    if legacy_decision == template_decision:
        return None
    return {
        "from_status": from_status,
        "to_status": to_status,
        "legacy": {"legal": legacy_decision[0], "requires_notes": legacy_decision[1]},
        "template": {"legal": template_decision[0], "requires_notes": template_decision[1]},
    }


def _both_configured(snapshot, from_status: str) -> bool:
    return (
        snapshot.legacy_configured
        and snapshot.template_configured
        and snapshot.legacy.has_source(from_status)
        and snapshot.template.has_source(from_status)
    )


def _check_divergence(snapshot, from_status: str, to_status: str, order_id, actor) -> None:
    """Raise ConfigurationError (and record an alert) if the rule sources disagree."""
    if not _both_configured(snapshot, from_status):
        return
    divergence = _edge_divergence(snapshot, from_status, to_status)
    if divergence is None:
        return

    divergence = {**divergence, "order_id": order_id,
                  "service_category_code": snapshot.service_category_code}
    logger.error(
        "Workflow divergence for tenant %s: %s->%s legacy=%s template=%s",
        snapshot.tenant_id, from_status, to_status,
        divergence["legacy"], divergence["template"],
        extra={"event_type": "workflow_divergence", "tenant_id": snapshot.tenant_id,
               "order_id": order_id, "from_status": from_status, "to_status": to_status},
    )
    db.session.rollback()
    write_audit(
        entity_type="workflow",
        entity_id=str(snapshot.tenant_id),
        action="workflow.divergence",
        actor=str(actor.id),
        tenant_id=snapshot.tenant_id,
        diff=divergence,
    )
    db.session.commit()
    raise ConfigurationError(
        "Legacy and template workflow configuration disagree on this transition",
        details=divergence,
    )


def verify_mode_consistency(tenant_id: int, service_category_code: str | None = None,
                            *, snapshot=None) -> dict:
    """Report every edge on which the legacy map and the template disagree."""
    snap = snapshot or load_snapshot(tenant_id, service_category_code)
    divergences = []
    if snap.legacy_configured and snap.template_configured:
        common = sorted(set(snap.legacy.edges) & set(snap.template.edges))
        for from_status in common:
            targets = list(snap.legacy.allowed(from_status))
            targets += [t for t in snap.template.allowed(from_status) if t not in targets]
            for to_status in targets:
                d = _edge_divergence(snap, from_status, to_status)
                if d is not None:
                    divergences.append(d)
    return {
        "tenant_id": tenant_id,
        "service_category_code": service_category_code,
        "legacy_source": snap.legacy.source,
        "template_source": snap.template.source,
        "compared": snap.legacy_configured and snap.template_configured,
        "consistent": not divergences,
        "divergences": divergences,
    }


# ── Engine ───────────────────────────────────────────────────────────────────

def _log_failure(exc: PlatformError, *, tenant_id, order_id, from_status, to_status, actor, mode):
    extra = {
        "tenant_id": tenant_id,
        "order_id": order_id,
        "from_status": from_status,
        "to_status": to_status,
        "actor_id": str(actor.id),
        "mode": mode,
        "error_code": exc.error_code,
    }
    level = logging.ERROR if exc.http_status >= 500 else logging.WARNING
    logger.log(level, "Transition %s->%s rejected for order %s: %s",
               from_status, to_status, order_id, exc.message, extra=extra)


def transition_order(
    order_id: str,
    from_status: str | None,
    to_status: str,
    actor,
    options: TransitionOptions | None = None,
    *,
    snapshot=None,
    gate: PermissionGate | None = None,
    evaluator: BlockerEvaluator | None = None,
    contracts=None,
) -> TransitionResult:
    """
    Apply one status transition.

    Args:
        order_id: Order PK (scoped to ``actor.tenant_id``).
        from_status: Status the caller believes the order is in; ``None``
            means "whatever it is now".
        to_status: Requested target status.
        actor: ``Actor`` performing the change.
        options: notes / metadata / screen / mode / rack_location / action_code.
        snapshot, gate, evaluator, contracts: injectable collaborators.

    Raises:
        NotFoundError, PermissionDenied, InvalidTransitionError,
        ValidationError, BlockedError, ConflictError, ConfigurationError,
        InternalError
    """
    opts = options or TransitionOptions()
    tenant_id = actor.tenant_id
    to_status = normalize_status(to_status)
    requested_from = normalize_status(from_status) or None
    mode = normalize_status(opts.mode) or _default_mode()
    gate = gate or PermissionGate()
    evaluator = evaluator or BlockerEvaluator()

    try:
        resolver = get_rule_resolver(mode, contracts)
        order = order_store.get_order(order_id, tenant_id)
        snap = snapshot or load_snapshot(tenant_id, order.service_category_code)

        # 1. Permission
        gate.require(actor, resolver.required_permissions(snap, opts),
                     resource_type="order", resource_id=order.id)

        current = normalize_status(order.status)
        if requested_from is None:
            requested_from = current
        elif requested_from != current:
            raise ConflictError("Order", order.id, expected=requested_from, actual=current)

        # 2. Legality
        for status in (requested_from, to_status):
            if not snap.is_known_status(status):
                raise InvalidTransitionError(requested_from, to_status, reason="unknown_status")
        resolver.check_context(snap, requested_from, to_status, opts)
        _check_divergence(snap, requested_from, to_status, order.id, actor)
        decision = resolver.decide(snap, requested_from, to_status)
        if not decision.legal:
            raise InvalidTransitionError(
                requested_from, to_status,
                reason="self_transition_not_allowed" if requested_from == to_status else "edge_not_allowed",
                allowed=list(decision.allowed),
            )

        # 3. Notes
        notes = (opts.notes or "").strip() or None
        if decision.requires_notes and not notes:
            raise ValidationError(
                f"notes are required for {requested_from} -> {to_status}",
                details={"field": "notes", "reason": "notes_required"},
            )

        # 4. Blockers
        try:
            blockers = evaluator.evaluate(order, to_status=to_status, snapshot=snap,
                                          rack_location=opts.rack_location)
        except PlatformError:
            raise
        except Exception as exc:
            logger.exception("Blocker evaluation failed for order %s", order_id,
                             extra={"order_id": order_id, "tenant_id": tenant_id})
            raise InternalError("Blocker evaluation failed",
                                details={"order_id": order_id}) from exc
        if blockers:
            raise BlockedError(blockers)

        # 5. Compare-and-swap; a configured self-transition leaves the row untouched
        if requested_from == to_status:
            stored = order_store.current_status(order_id, tenant_id)
            swapped = normalize_status(stored) == requested_from
        else:
            swapped = order_store.compare_and_set_status(
                order_id, tenant_id, requested_from, to_status, _side_effects(to_status, opts),
            )
        if not swapped:
            actual = order_store.current_status(order_id, tenant_id)
            raise ConflictError("Order", order_id, expected=requested_from, actual=actual)

        # 6. Audit
        record = append_transition_record(
            order_id=order_id,
            tenant_id=tenant_id,
            from_status=requested_from,
            to_status=to_status,
            actor_id=actor.id,
            actor_name=actor.display_name,
            notes=notes,
            metadata=opts.metadata,
            mode=resolver.mode,
            screen=opts.screen,
        )
        db.session.commit()
    except PlatformError as exc:
        db.session.rollback()
        _log_failure(exc, tenant_id=tenant_id, order_id=order_id, from_status=requested_from,
                     to_status=to_status, actor=actor, mode=mode)
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Order store failure during transition of %s", order_id,
                         extra={"order_id": order_id, "tenant_id": tenant_id})
        raise InternalError("Order store failure", details={"order_id": order_id}) from exc

    db.session.refresh(order)
    logger.info("Order %s: %s -> %s by %s", order.order_no, requested_from, to_status, actor.id,
                extra={"tenant_id": tenant_id, "order_id": order_id, "from_status": requested_from,
                       "to_status": to_status, "actor_id": str(actor.id), "mode": resolver.mode})
    return TransitionResult(
        order=order,
        record=record,
        from_status=requested_from,
        to_status=to_status,
        allowed_transitions=resolver.allowed_transitions(snap, to_status),
        idempotent=requested_from == to_status,
    )


def get_allowed_transitions(order_id: str, actor, *, mode: str | None = None,
                            screen: str | None = None, snapshot=None, contracts=None) -> dict:
    """Current status plus the edges reachable from it under the selected mode."""
    order = order_store.get_order(order_id, actor.tenant_id)
    snap = snapshot or load_snapshot(actor.tenant_id, order.service_category_code)
    mode = normalize_status(mode) or _default_mode()
    resolver = get_rule_resolver(mode, contracts)
    current = normalize_status(order.status)
    opts = TransitionOptions(mode=mode, screen=screen)
    try:
        resolver.check_context(snap, current, "", opts)
        allowed = resolver.allowed_transitions(snap, current)
    except InvalidTransitionError:
        allowed = []
    return {
        "order_id": order.id,
        "current_status": current,
        "mode": resolver.mode,
        "allowed_transitions": allowed,
    }


def bulk_transition(order_ids: list[str], to_status: str, actor,
                    options: TransitionOptions | None = None, **kwargs) -> dict:
    """
    Transition several orders independently.  Partial success allowed.

    Returns:
        {"success": [...], "errors": [...]}
    """
    results = {"success": [], "errors": []}

    for order_id in order_ids:
        try:
            result = transition_order(order_id, None, to_status, actor, options, **kwargs)
            results["success"].append({
                "order_id": order_id,
                "from_status": result.from_status,
                "to_status": result.to_status,
            })
        except PlatformError as e:
            results["errors"].append({"order_id": order_id, **e.to_dict()})

    return results
