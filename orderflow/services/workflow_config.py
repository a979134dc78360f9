"""
Workflow configuration snapshots.

The transition engine never reads workflow tables directly.  It asks for a
``WorkflowSnapshot``: an immutable view of one tenant's (optionally one
service category's) configuration taken at the start of a request.  Tests
build snapshots with ``build_snapshot`` and inject them.

Snapshot contents:
    statuses: the tenant's status set (workflow_steps)
    legacy: TransitionMap from WorkflowDefinition (or defaults)
    template: TransitionMap from the assigned WorkflowTemplate
        (or a built-in template mirroring the defaults)
    quality_gate_rules: per-target gate flags
    issue_return_status: where a blocking issue sends an order back to
    settings: tenant settings at load time
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from orderflow.core.exceptions import ConfigurationError, NotFoundError
from orderflow.models import db
from orderflow.models.auth import Tenant
from orderflow.models.order import (
    DEFAULT_TRANSITION_RULES,
    DEFAULT_TRANSITIONS,
    ORDER_STATUSES,
)
from orderflow.models.workflow import (
    TenantWorkflowTemplate,
    WorkflowDefinition,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)

DEFAULT_ISSUE_RETURN_STATUS = "processing"


def normalize_status(value) -> str:
    """Lower-case and strip a status value; ``None`` becomes ``""``."""
    return str(value or "").strip().lower()


def _freeze(mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class TransitionMap:
    """``{from: (to, ...)}`` plus per-edge rules keyed ``"from->to"``.

    Rule keys may use ``*`` for either side; the concrete edge wins over
    ``from->*``, which wins over ``*->to``.
    """

    edges: Mapping[str, tuple[str, ...]]
    rules: Mapping[str, Mapping] = field(default_factory=lambda: MappingProxyType({}))
    source: str = "default"

    def has_source(self, from_status: str) -> bool:
        return from_status in self.edges

    def allowed(self, from_status: str) -> tuple[str, ...]:
        return self.edges.get(from_status, ())

    def is_legal(self, from_status: str, to_status: str) -> bool:
        return to_status in self.allowed(from_status)

    def rule_for(self, from_status: str, to_status: str) -> Mapping:
        for key in (f"{from_status}->{to_status}", f"{from_status}->*", f"*->{to_status}"):
            if key in self.rules:
                return self.rules[key]
        return {}

    def requires_notes(self, from_status: str, to_status: str) -> bool:
        return bool(self.rule_for(from_status, to_status).get("requires_notes", False))

    def statuses(self) -> set[str]:
        found = set(self.edges)
        for targets in self.edges.values():
            found.update(targets)
        return found


def _restrict(tmap: TransitionMap, statuses) -> TransitionMap:
    keep = set(statuses)
    edges = {
        f: tuple(t for t in targets if t in keep)
        for f, targets in tmap.edges.items() if f in keep
    }
    return TransitionMap(edges=_freeze(edges), rules=tmap.rules, source=tmap.source)


def make_transition_map(transitions: dict, rules: dict | None = None,
                        source: str = "default") -> TransitionMap:
    """Normalise a raw ``{from: [to]}`` mapping into a TransitionMap."""
    edges = {}
    for from_status, targets in (transitions or {}).items():
        key = normalize_status(from_status)
        ordered = []
        for t in targets or []:
            t = normalize_status(t)
            if t and t not in ordered:
                ordered.append(t)
        edges[key] = tuple(ordered)
    norm_rules = {}
    for key, rule in (rules or {}).items():
        from_part, sep, to_part = str(key).partition("->")
        if not sep:
            continue
        norm_rules[f"{normalize_status(from_part)}->{normalize_status(to_part)}"] = _freeze(rule or {})
    return TransitionMap(edges=_freeze(edges), rules=_freeze(norm_rules), source=source)


@dataclass(frozen=True)
class WorkflowSnapshot:
    tenant_id: int
    statuses: tuple[str, ...]
    legacy: TransitionMap
    template: TransitionMap
    service_category_code: str | None = None
    legacy_configured: bool = False
    template_configured: bool = False
    quality_gate_rules: Mapping = field(default_factory=lambda: MappingProxyType({}))
    issue_return_status: str | None = DEFAULT_ISSUE_RETURN_STATUS
    settings: Mapping = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0

    def is_known_status(self, status: str) -> bool:
        return status in self.statuses

    def setting(self, key, default=None):
        return self.settings.get(key, default)

    def gate_rule(self, to_status: str) -> Mapping:
        return self.quality_gate_rules.get(to_status, {})


def build_snapshot(
    tenant_id: int,
    *,
    transitions: dict | None = None,
    rules: dict | None = None,
    template_transitions: dict | None = None,
    template_rules: dict | None = None,
    statuses=None,
    service_category_code: str | None = None,
    quality_gate_rules: dict | None = None,
    issue_return_status: str | None = DEFAULT_ISSUE_RETURN_STATUS,
    settings: dict | None = None,
    version: int = 0,
) -> WorkflowSnapshot:
    """Assemble and validate a snapshot from plain data.

    ``transitions``/``template_transitions`` left as ``None`` fall back to
    the built-in defaults and mark that side as not tenant-configured.

    Raises:
        ConfigurationError: an edge references a status outside ``statuses``.
    """
    legacy_configured = transitions is not None
    template_configured = template_transitions is not None

    legacy = make_transition_map(
        transitions if legacy_configured else DEFAULT_TRANSITIONS,
        rules if legacy_configured else (rules if rules is not None else DEFAULT_TRANSITION_RULES),
        source="definition" if legacy_configured else "default",
    )
    template = make_transition_map(
        template_transitions if template_configured else DEFAULT_TRANSITIONS,
        template_rules if template_configured else DEFAULT_TRANSITION_RULES,
        source="template" if template_configured else "default",
    )

    status_set = tuple(normalize_status(s) for s in (statuses or ORDER_STATUSES))
    # Built-in defaults follow the tenant status set; stored config must fit it
    if not legacy_configured:
        legacy = _restrict(legacy, status_set)
    if not template_configured:
        template = _restrict(template, status_set)
    for name, tmap in (("legacy", legacy), ("template", template)):
        unknown = sorted(tmap.statuses() - set(status_set))
        if unknown:
            raise ConfigurationError(
                f"{name} workflow for tenant {tenant_id} references unknown statuses",
                details={"tenant_id": tenant_id, "source": name, "unknown_statuses": unknown},
            )

    return_status = normalize_status(issue_return_status) or None
    if return_status and return_status not in status_set:
        if return_status == DEFAULT_ISSUE_RETURN_STATUS:
            return_status = None
        else:
            raise ConfigurationError(
                f"issue_return_status '{return_status}' is not a configured status",
                details={"tenant_id": tenant_id},
            )

    return WorkflowSnapshot(
        tenant_id=tenant_id,
        service_category_code=service_category_code,
        statuses=status_set,
        legacy=legacy,
        template=template,
        legacy_configured=legacy_configured,
        template_configured=template_configured,
        quality_gate_rules=_freeze({
            normalize_status(k): _freeze(v or {}) for k, v in (quality_gate_rules or {}).items()
        }),
        issue_return_status=return_status,
        settings=_freeze(settings or {}),
        version=version,
    )


# ── Loading from the database ────────────────────────────────────────────────

def _active_definition(tenant_id: int, service_category_code: str | None):
    base = WorkflowDefinition.query.filter_by(tenant_id=tenant_id, is_active=True)
    if service_category_code:
        scoped = (
            base.filter(WorkflowDefinition.service_category_code == service_category_code)
            .order_by(WorkflowDefinition.version.desc())
            .first()
        )
        if scoped is not None:
            return scoped
    return (
        base.filter(WorkflowDefinition.service_category_code.is_(None))
        .order_by(WorkflowDefinition.version.desc())
        .first()
    )


def _active_template(tenant_id: int, service_category_code: str | None):
    base = (
        TenantWorkflowTemplate.query
        .join(WorkflowTemplate, WorkflowTemplate.id == TenantWorkflowTemplate.template_id)
        .filter(
            TenantWorkflowTemplate.tenant_id == tenant_id,
            TenantWorkflowTemplate.is_active.is_(True),
            WorkflowTemplate.is_active.is_(True),
        )
    )
    if service_category_code:
        scoped = base.filter(
            TenantWorkflowTemplate.service_category_code == service_category_code
        ).first()
        if scoped is not None:
            return scoped.template
    assignment = (
        base.filter(TenantWorkflowTemplate.service_category_code.is_(None))
        .order_by(TenantWorkflowTemplate.is_default.desc())
        .first()
    )
    return assignment.template if assignment else None


def load_snapshot(tenant_id: int, service_category_code: str | None = None) -> WorkflowSnapshot:
    """Read the tenant's active configuration into a WorkflowSnapshot.

    Raises:
        NotFoundError: tenant does not exist.
        ConfigurationError: stored configuration is contradictory.
    """
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)

    definition = _active_definition(tenant_id, service_category_code)
    template = _active_template(tenant_id, service_category_code)

    template_transitions = None
    template_rules = None
    if template is not None:
        template_transitions = {}
        template_rules = {}
        for edge in template.transitions:
            template_transitions.setdefault(edge.from_status, []).append(edge.to_status)
            if edge.requires_notes:
                template_rules[f"{edge.from_status}->{edge.to_status}"] = {"requires_notes": True}

    kwargs = {}
    if definition is not None:
        kwargs = {
            "transitions": definition.status_transitions or {},
            "rules": definition.transition_rules or {},
            "statuses": definition.workflow_steps or None,
            "quality_gate_rules": definition.quality_gate_rules or {},
            "version": definition.version,
        }
        if definition.issue_return_status:
            kwargs["issue_return_status"] = definition.issue_return_status

    snapshot = build_snapshot(
        tenant_id,
        template_transitions=template_transitions,
        template_rules=template_rules,
        service_category_code=service_category_code,
        settings=tenant.settings or {},
        **kwargs,
    )
    logger.debug(
        "Loaded workflow snapshot tenant=%s category=%s legacy=%s template=%s",
        tenant_id, service_category_code, snapshot.legacy.source, snapshot.template.source,
    )
    return snapshot
