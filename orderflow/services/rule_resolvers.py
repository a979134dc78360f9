"""
Rule resolvers: the two coexisting ways of deciding whether an edge is legal.

    LegacyRuleResolver          WorkflowDefinition map + fixed action code
    ScreenContractRuleResolver  screen contract statuses / permissions +
                                the tenant's workflow template

Both implement ``RuleResolver``; the transition engine picks one per call
through ``get_rule_resolver(mode)`` and never branches on the mode again.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from orderflow.core.exceptions import (
    InvalidTransitionError,
    ValidationError,
)
from orderflow.services.screen_contract_service import ScreenContractResolver, normalize_screen

MODE_LEGACY = "legacy"
MODE_SCREEN_CONTRACT = "screen_contract"
WORKFLOW_MODES = (MODE_LEGACY, MODE_SCREEN_CONTRACT)

DEFAULT_ACTION_CODE = "orders:transition"


@dataclass(frozen=True)
class EdgeDecision:
    legal: bool
    requires_notes: bool
    allowed: tuple[str, ...] = ()


class RuleResolver(ABC):
    mode: str

    @abstractmethod
    def transition_map(self, snapshot):
        """The TransitionMap this resolver validates against."""

    @abstractmethod
    def required_permissions(self, snapshot, options) -> list[str]:
        """Permission codes the actor needs for a transition in this mode."""

    def check_context(self, snapshot, from_status: str, to_status: str, options) -> None:
        """Raise if the call context (e.g. the originating screen) rules the request out."""

    def decide(self, snapshot, from_status: str, to_status: str) -> EdgeDecision:
        tmap = self.transition_map(snapshot)
        legal = tmap.is_legal(from_status, to_status)
        return EdgeDecision(
            legal=legal,
            requires_notes=legal and tmap.requires_notes(from_status, to_status),
            allowed=tmap.allowed(from_status),
        )

    def allowed_transitions(self, snapshot, from_status: str) -> list[dict]:
        tmap = self.transition_map(snapshot)
        return [
            {"to_status": to, "requires_notes": tmap.requires_notes(from_status, to)}
            for to in tmap.allowed(from_status)
        ]


class LegacyRuleResolver(RuleResolver):
    mode = MODE_LEGACY

    def transition_map(self, snapshot):
        return snapshot.legacy

    def required_permissions(self, snapshot, options) -> list[str]:
        return [getattr(options, "action_code", None) or DEFAULT_ACTION_CODE]


class ScreenContractRuleResolver(RuleResolver):
    mode = MODE_SCREEN_CONTRACT

    def __init__(self, contracts=None):
        self.contracts = contracts or ScreenContractResolver()

    def transition_map(self, snapshot):
        return snapshot.template

    def _contract(self, snapshot, options):
        screen = normalize_screen(getattr(options, "screen", None))
        if not screen:
            raise ValidationError(
                "screen is required in screen_contract mode",
                details={"field": "screen", "reason": "screen_required"},
            )
        disabled = {normalize_screen(s) for s in snapshot.setting("disabled_screens", []) or []}
        if screen in disabled:
            raise ValidationError(
                f"Screen '{screen}' is disabled for this tenant",
                details={"field": "screen", "reason": "screen_disabled"},
            )
        return self.contracts.get_contract(screen)

    def required_permissions(self, snapshot, options) -> list[str]:
        return list(self._contract(snapshot, options).required_permissions)

    def check_context(self, snapshot, from_status: str, to_status: str, options) -> None:
        contract = self._contract(snapshot, options)
        if not contract.covers(from_status):
            raise InvalidTransitionError(
                from_status, to_status, reason="status_not_on_screen",
                allowed=list(contract.statuses),
            )


def get_rule_resolver(mode: str | None, contracts=None) -> RuleResolver:
    mode = (mode or MODE_LEGACY).strip().lower()
    if mode == MODE_LEGACY:
        return LegacyRuleResolver()
    if mode == MODE_SCREEN_CONTRACT:
        return ScreenContractRuleResolver(contracts)
    raise ValidationError(
        f"Unknown workflow mode '{mode}'",
        details={"field": "mode", "allowed": list(WORKFLOW_MODES)},
    )
