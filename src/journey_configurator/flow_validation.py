from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .models import FLOW_END, ActionType, ConditionGroup, ConditionTree, FlowConfig, OnErrorPolicy, ScopeType

logger = logging.getLogger(__name__)

TARGETED_ACTIONS = {ActionType.NAVIGATE, ActionType.LOOP_BACK}


@dataclass(slots=True)
class FlowValidationResult:
    is_valid: bool
    errors: list[str]
    warnings: list[str]
    summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "summary": dict(self.summary),
        }


def _check_scope(flow: FlowConfig, errors: list[str]) -> None:
    scope = flow.scope
    if not scope.product_code:
        errors.append("Flow scope requires a product code")
    if scope.type is ScopeType.BRANCH:
        errors.append("Flow scope must be PRODUCT or PARTNER; BRANCH-level flows are not supported")
    elif scope.type is ScopeType.PARTNER and not scope.partner_code:
        errors.append("Flow scope of type PARTNER requires a partner code")


def _check_serializable(flow: FlowConfig, errors: list[str]) -> None:
    try:
        json.dumps(flow.to_dict(), allow_nan=False)
    except (TypeError, ValueError) as exc:
        errors.append(f"Flow is not JSON-serializable: {exc}")


def _leaf_defects(tree: ConditionTree, path: str = "condition") -> list[str]:
    if isinstance(tree, ConditionGroup):
        return [
            problem
            for index, child in enumerate(tree.conditions)
            for problem in _leaf_defects(child, f"{path}.conditions[{index}]")
        ]
    return [f"{path} {problem}" for problem in tree.defects()]


def _check_screens(flow: FlowConfig, warnings: list[str]) -> None:
    screen_ids = {screen.screen_id for screen in flow.screens}

    for screen in flow.screens:
        label = f'Screen "{screen.screen_id}"'
        if not screen.display_name:
            warnings.append(f"{label} is missing a display name")

        if not screen.default_next:
            warnings.append(f"{label} is missing defaultNext")
        elif screen.default_next != FLOW_END and screen.default_next not in screen_ids:
            warnings.append(f'{label} defaultNext references unknown screen "{screen.default_next}"')

        for index, condition in enumerate(screen.conditions, start=1):
            rule = f'{label} condition {index}{f" ({condition.id})" if condition.id else ""}'
            if condition.condition is None:
                warnings.append(f"{rule} is missing its condition")
            else:
                warnings.extend(f"{rule} {problem}" for problem in _leaf_defects(condition.condition))
            if condition.action is None:
                warnings.append(f"{rule} is missing its action")
                continue
            target = condition.action.target_screen
            if target is None:
                if condition.action.type in TARGETED_ACTIONS:
                    warnings.append(f"{rule} {condition.action.type.value} action has no targetScreen")
            elif condition.enabled and target != FLOW_END and target not in screen_ids:
                warnings.append(f'{rule} targets unknown screen "{target}"')

        for phase, service in screen.iter_services():
            service_label = f'{label} {phase} service "{service.service_id or "?"}"'
            if not service.endpoint:
                warnings.append(f"{service_label} has no endpoint")
            if service.on_error is None:
                warnings.append(f"{service_label} has no error handling configured")
            elif service.on_error is OnErrorPolicy.ROUTE_TO_SCREEN and not service.error_screen:
                warnings.append(f"{service_label} routes errors to a screen but has no errorScreen")


def validate_flow(flow: FlowConfig | Mapping[str, Any]) -> FlowValidationResult:
    if not isinstance(flow, FlowConfig):
        flow = FlowConfig.from_dict(flow)

    errors: list[str] = []
    warnings: list[str] = []

    if not flow.flow_id:
        errors.append("Flow ID is required")
    _check_scope(flow, errors)

    screen_ids = {screen.screen_id for screen in flow.screens}
    if not flow.start_screen:
        errors.append("Start screen is required")
    elif flow.start_screen not in screen_ids:
        errors.append(f'Start screen "{flow.start_screen}" not configured in flow screens')

    if not any(screen.default_next == FLOW_END for screen in flow.screens):
        errors.append(f"Flow must have at least one screen whose default next is Flow End ({FLOW_END})")

    _check_serializable(flow, errors)
    _check_screens(flow, warnings)

    summary = {
        "screens": len(flow.screens),
        "conditionalRoutes": sum(len(screen.conditions) for screen in flow.screens),
        "services": sum(len(screen.iter_services()) for screen in flow.screens),
        "warnings": len(warnings),
    }
    logger.info(
        "flow_validated",
        extra={"flow_id": flow.flow_id, "error_count": len(errors), "warning_count": len(warnings)},
    )
    return FlowValidationResult(is_valid=not errors, errors=errors, warnings=warnings, summary=summary)
