"""
Blocker Evaluator.

A blocker is a structured reason an otherwise legal, permitted transition
cannot proceed.  Each source inspects one fact about the order and adds
zero or more blockers; the evaluator runs every source and returns the
full list so the caller can show all remediation steps at once.

Sources:
    unresolved_issue          open high/urgent issues on the order's items
    quality_gate              open low/normal issues when the target's gate
                              sets ``requireNoUnresolvedIssues``
    split_in_progress         the order is being split
    missing_delivery_address  delivery orders heading out without an address
    rack_location_required    tenant demands a rack slot before ``ready``
"""

import logging
from dataclasses import dataclass, field

from orderflow.models.order import OrderIssue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Blocker:
    code: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True)
class BlockerContext:
    order: object
    to_status: str | None = None
    snapshot: object = None
    rack_location: str | None = None


# ── Sources ──────────────────────────────────────────────────────────────────

def _open_issues(order):
    return (
        OrderIssue.query
        .filter(
            OrderIssue.tenant_id == order.tenant_id,
            OrderIssue.order_id == order.id,
            OrderIssue.solved_at.is_(None),
        )
        .order_by(OrderIssue.created_at.asc())
        .all()
    )


def issue_blockers(ctx: BlockerContext) -> list[Blocker]:
    # Cancelling and returning to rework are the remediation paths themselves
    exempt = {"cancelled"}
    if ctx.snapshot is not None and ctx.snapshot.issue_return_status:
        exempt.add(ctx.snapshot.issue_return_status)
    if ctx.to_status in exempt:
        return []

    gate = {}
    if ctx.snapshot is not None and ctx.to_status:
        gate = ctx.snapshot.gate_rule(ctx.to_status)
    strict = bool(gate.get("requireNoUnresolvedIssues"))

    blockers = []
    for issue in _open_issues(ctx.order):
        details = {
            "issue_id": issue.id,
            "order_item_id": issue.order_item_id,
            "issue_code": issue.issue_code,
            "priority": issue.priority,
        }
        if issue.is_blocking:
            blockers.append(Blocker(
                "unresolved_issue",
                f"Unresolved {issue.priority} {issue.issue_code} issue must be resolved first",
                details,
            ))
        elif strict:
            blockers.append(Blocker(
                "quality_gate",
                f"Quality gate for '{ctx.to_status}' requires all issues resolved",
                details,
            ))
    return blockers


def split_blockers(ctx: BlockerContext) -> list[Blocker]:
    if ctx.order.split_in_progress:
        return [Blocker("split_in_progress", "Order is being split", {"order_id": ctx.order.id})]
    return []


def delivery_address_blockers(ctx: BlockerContext) -> list[Blocker]:
    order = ctx.order
    if (
        ctx.to_status == "out_for_delivery"
        and order.delivery_type == "delivery"
        and not (order.delivery_address or "").strip()
    ):
        return [Blocker(
            "missing_delivery_address",
            "Delivery address is required before dispatch",
            {"field": "delivery_address"},
        )]
    return []


def rack_location_blockers(ctx: BlockerContext) -> list[Blocker]:
    if ctx.to_status != "ready" or ctx.snapshot is None:
        return []
    if not ctx.snapshot.setting("require_rack_location", False):
        return []
    if (ctx.rack_location or ctx.order.rack_location or "").strip():
        return []
    return [Blocker(
        "rack_location_required",
        "A rack location is required before marking the order ready",
        {"field": "rack_location"},
    )]


DEFAULT_SOURCES = (
    issue_blockers,
    split_blockers,
    delivery_address_blockers,
    rack_location_blockers,
)


class BlockerEvaluator:
    """Runs every blocker source; exceptions propagate to the caller."""

    def __init__(self, sources=None):
        self.sources = tuple(sources) if sources is not None else DEFAULT_SOURCES

    def evaluate(self, order, *, to_status: str | None = None, snapshot=None,
                 rack_location: str | None = None) -> list[Blocker]:
        ctx = BlockerContext(order=order, to_status=to_status, snapshot=snapshot,
                             rack_location=rack_location)
        blockers: list[Blocker] = []
        for source in self.sources:
            blockers.extend(source(ctx))
        if blockers:
            logger.debug("Order %s has %d blocker(s) for %s", order.id, len(blockers), to_status,
                         extra={"order_id": order.id})
        return blockers
