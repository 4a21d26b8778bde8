from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .conditions import ConditionEvaluator, Diagnostic, EvaluationContext
from .models import FLOW_END, ActionType, FlowConfig, FlowScreenConfig, NavigationCondition, ServiceCall

logger = logging.getLogger(__name__)


class UnknownScreenError(LookupError):
    """Raised when the current screen is not part of the flow."""

    def __init__(self, flow_id: str, screen_id: str) -> None:
        super().__init__(f"screen {screen_id!r} is not part of flow {flow_id!r}")
        self.flow_id = flow_id
        self.screen_id = screen_id


@dataclass(slots=True)
class NavigationDecision:
    action: ActionType
    target_screen: str | None
    source: str
    condition_id: str | None = None
    condition_name: str | None = None
    service: ServiceCall | None = None
    metadata: dict[str, Any] | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "targetScreen": self.target_screen,
            "source": self.source,
            "conditionId": self.condition_id,
            "conditionName": self.condition_name,
            "service": self.service.to_dict() if self.service else None,
            "metadata": self.metadata,
            "diagnostics": [diagnostic.to_dict() for diagnostic in self.diagnostics],
        }


@dataclass(slots=True, frozen=True)
class JourneyPolicy:
    allow_back: bool
    allow_skip: bool
    max_retries: int | None

    def to_dict(self) -> dict[str, Any]:
        return {"allowBack": self.allow_back, "allowSkip": self.allow_skip, "maxRetries": self.max_retries}


def journey_policy(screen: FlowScreenConfig) -> JourneyPolicy:
    return JourneyPolicy(
        allow_back=bool(screen.allow_back),
        allow_skip=bool(screen.allow_skip),
        max_retries=screen.max_retries,
    )


def ordered_conditions(screen: FlowScreenConfig) -> list[tuple[int, NavigationCondition]]:
    enabled = [(index, condition) for index, condition in enumerate(screen.conditions) if condition.enabled]
    return sorted(enabled, key=lambda item: -item[1].priority)


def decide(
    flow: FlowConfig,
    current_screen_id: str,
    context: EvaluationContext,
    evaluator: ConditionEvaluator | None = None,
) -> NavigationDecision:
    screen = flow.screen(current_screen_id)
    if screen is None:
        logger.warning("unknown_screen", extra={"flow_id": flow.flow_id, "screen_id": current_screen_id})
        raise UnknownScreenError(flow.flow_id, current_screen_id)

    evaluator = evaluator or ConditionEvaluator()
    diagnostics: list[Diagnostic] = []

    for rule_index, rule in ordered_conditions(screen):
        if rule.condition is None or rule.action is None:
            missing = "condition" if rule.condition is None else "action"
            diagnostics.append(
                Diagnostic(
                    code="incomplete_rule",
                    message=f"rule is missing its {missing} and was skipped",
                    screen_id=screen.screen_id,
                    condition_id=rule.id or None,
                    rule_index=rule_index,
                )
            )
            continue

        outcome = evaluator.evaluate_with_trace(
            rule.condition,
            context,
            screen_id=screen.screen_id,
            condition_id=rule.id or None,
            rule_index=rule_index,
        )
        diagnostics.extend(outcome.diagnostics)
        if not outcome.result:
            continue

        decision = NavigationDecision(
            action=rule.action.type,
            target_screen=rule.action.target_screen,
            source="condition",
            condition_id=rule.id or None,
            condition_name=rule.name or None,
            service=rule.action.service,
            metadata=dict(rule.action.metadata) if rule.action.metadata is not None else None,
            diagnostics=diagnostics,
        )
        _log_decision(flow, screen, decision)
        return decision

    if screen.default_next == FLOW_END:
        decision = NavigationDecision(ActionType.END_FLOW, None, "default", diagnostics=diagnostics)
    elif not screen.default_next:
        diagnostics.append(
            Diagnostic(
                code="missing_default_next",
                message="no rule matched and defaultNext is empty; ending flow",
                screen_id=screen.screen_id,
            )
        )
        decision = NavigationDecision(ActionType.END_FLOW, None, "default", diagnostics=diagnostics)
    else:
        decision = NavigationDecision(ActionType.NAVIGATE, screen.default_next, "default", diagnostics=diagnostics)
    _log_decision(flow, screen, decision)
    return decision


def _log_decision(flow: FlowConfig, screen: FlowScreenConfig, decision: NavigationDecision) -> None:
    logger.info(
        "navigation_decided",
        extra={
            "flow_id": flow.flow_id,
            "screen_id": screen.screen_id,
            "action": decision.action.value,
            "target_screen": decision.target_screen,
            "source": decision.source,
            "condition_id": decision.condition_id,
            "diagnostic_count": len(decision.diagnostics),
        },
    )
