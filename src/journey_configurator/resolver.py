from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from .conditions import Diagnostic
from .models import ConfigRecord, ConfigScope, ConfigStatus, ScopeType

logger = logging.getLogger(__name__)

SCREEN_RESOLUTION_LEVELS = (ScopeType.BRANCH, ScopeType.PARTNER, ScopeType.PRODUCT)
FLOW_RESOLUTION_LEVELS = (ScopeType.PARTNER, ScopeType.PRODUCT)


class ConfigNotFoundError(LookupError):
    """Raised when no active configuration exists at any level, PRODUCT included."""

    def __init__(self, entity_id: str, scope: ConfigScope, chain: list[str]) -> None:
        super().__init__(
            f"no active PRODUCT-level configuration for {entity_id!r} and product {scope.product_code!r}"
        )
        self.entity_id = entity_id
        self.scope = scope
        self.chain = chain


@dataclass(slots=True)
class ResolvedConfig:
    config: ConfigRecord
    resolved_from: ScopeType
    inheritance_chain: list[str]
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "resolvedFrom": self.resolved_from.value,
            "inheritanceChain": list(self.inheritance_chain),
            "diagnostics": [diagnostic.to_dict() for diagnostic in self.diagnostics],
        }


@dataclass(slots=True)
class ScopeValidationResult:
    is_valid: bool
    errors: list[str]


@dataclass(slots=True)
class ActivationCheck:
    can_activate: bool
    errors: list[str]
    warnings: list[str]
    conflicting_ids: list[Any] = field(default_factory=list)
    affected_branches: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "canActivate": self.can_activate,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "conflictingIds": list(self.conflicting_ids),
        }
        if self.affected_branches is not None:
            payload["impact"] = {
                "affectedBranches": self.affected_branches,
                "message": f"Will affect {self.affected_branches} branches",
            }
        return payload


def scope_identifier(scope: ConfigScope) -> str:
    if scope.type is ScopeType.BRANCH:
        return f"{scope.product_code} > {scope.partner_code} > {scope.branch_code}"
    if scope.type is ScopeType.PARTNER:
        return f"{scope.product_code} > {scope.partner_code}"
    return scope.product_code


def _level_scope(scope: ConfigScope, level: ScopeType) -> ConfigScope | None:
    if level is ScopeType.BRANCH:
        if not (scope.branch_code and scope.partner_code):
            return None
        return ConfigScope(ScopeType.BRANCH, scope.product_code, scope.partner_code, scope.branch_code)
    if level is ScopeType.PARTNER:
        if not scope.partner_code:
            return None
        return ConfigScope(ScopeType.PARTNER, scope.product_code, scope.partner_code)
    return ConfigScope(ScopeType.PRODUCT, scope.product_code)


def _matches(record: ConfigRecord, target: ConfigScope) -> bool:
    scope = record.scope
    if scope.type is not target.type or scope.product_code != target.product_code:
        return False
    if target.type in (ScopeType.PARTNER, ScopeType.BRANCH) and scope.partner_code != target.partner_code:
        return False
    if target.type is ScopeType.BRANCH and scope.branch_code != target.branch_code:
        return False
    return True


def _recency_key(record: ConfigRecord) -> tuple[str, int, int, str]:
    numeric_id = record.id if isinstance(record.id, int) else -1
    return (record.updated_at or "", record.version, numeric_id, str(record.id))


def resolve(
    entity_id: str,
    scope: ConfigScope,
    candidates: Iterable[ConfigRecord],
    levels: Sequence[ScopeType] = SCREEN_RESOLUTION_LEVELS,
) -> ResolvedConfig:
    active = [
        record
        for record in candidates
        if record.entity_id == entity_id
        and record.status is ConfigStatus.ACTIVE
        and record.scope.product_code == scope.product_code
    ]
    chain: list[str] = []
    diagnostics: list[Diagnostic] = []

    for level in levels:
        target = _level_scope(scope, level)
        if target is None:
            continue
        label = f"{level.value}: {scope_identifier(target)}"
        matches = [record for record in active if _matches(record, target)]
        if not matches:
            chain.append(f"{label} (not found)")
            continue

        chosen = max(matches, key=_recency_key)
        if len(matches) > 1:
            diagnostic = Diagnostic(
                code="duplicate_active_config",
                message=(
                    f"{len(matches)} ACTIVE configurations share scope {scope_identifier(target)}; "
                    f"using most recently updated record {chosen.id}"
                ),
            )
            diagnostics.append(diagnostic)
            logger.warning(
                "duplicate_active_config",
                extra={
                    "entity_id": entity_id,
                    "scope": target.to_dict(),
                    "record_ids": [record.id for record in matches],
                    "chosen_id": chosen.id,
                },
            )
        chain.append(f"{label} (matched)")
        logger.debug(
            "config_resolved",
            extra={"entity_id": entity_id, "resolved_from": level.value, "record_id": chosen.id},
        )
        return ResolvedConfig(config=chosen, resolved_from=level, inheritance_chain=chain, diagnostics=diagnostics)

    logger.warning(
        "config_not_found",
        extra={"entity_id": entity_id, "scope": scope.to_dict(), "chain": chain},
    )
    raise ConfigNotFoundError(entity_id, scope, chain)


def resolve_flow(flow_id: str, scope: ConfigScope, candidates: Iterable[ConfigRecord]) -> ResolvedConfig:
    return resolve(flow_id, scope, candidates, levels=FLOW_RESOLUTION_LEVELS)


def validate_scope(scope: ConfigScope) -> ScopeValidationResult:
    errors: list[str] = []
    kind = scope.type.value
    if not scope.product_code:
        errors.append(f"Product code is required for {kind} scope")

    if scope.type is ScopeType.PRODUCT:
        if scope.partner_code:
            errors.append("Partner code must not be provided for PRODUCT scope")
    elif not scope.partner_code:
        errors.append(f"Partner code is required for {kind} scope")

    if scope.type is ScopeType.BRANCH:
        if not scope.branch_code:
            errors.append("Branch code is required for BRANCH scope")
    elif scope.branch_code:
        errors.append(f"Branch code must not be provided for {kind} scope")

    return ScopeValidationResult(is_valid=not errors, errors=errors)


def validate_scope_change(old: ConfigScope, new: ConfigScope) -> ScopeValidationResult:
    if old != new:
        return ScopeValidationResult(False, ["Scope is immutable and cannot be changed after creation"])
    return ScopeValidationResult(True, [])


def validate_activation(record: ConfigRecord, existing: Iterable[ConfigRecord]) -> ActivationCheck:
    others = [item for item in existing if item.id != record.id and item.config_type is record.config_type]
    errors: list[str] = []
    warnings: list[str] = []

    conflicts = [
        item
        for item in others
        if item.entity_id == record.entity_id and item.status is ConfigStatus.ACTIVE and item.scope == record.scope
    ]
    if conflicts:
        errors.append(
            f"Cannot activate: {len(conflicts)} other ACTIVE configuration(s) exist for the same "
            f"{record.config_type.value.lower()} and scope"
        )

    affected_branches = None
    scope = record.scope
    if scope.type is ScopeType.BRANCH:
        warnings.append(
            f"This configuration will override PARTNER/PRODUCT configurations for branch {scope.branch_code}"
        )
    elif scope.type is ScopeType.PARTNER:
        affected_branches = sum(
            1
            for item in others
            if item.entity_id == record.entity_id
            and item.status is ConfigStatus.ACTIVE
            and item.scope.type is ScopeType.BRANCH
            and item.scope.product_code == scope.product_code
            and item.scope.partner_code == scope.partner_code
        )
        if affected_branches:
            warnings.append(
                f"This configuration will serve as fallback for {affected_branches} branch(es) "
                "that don't have BRANCH-level overrides"
            )

    return ActivationCheck(
        can_activate=not errors,
        errors=errors,
        warnings=warnings,
        conflicting_ids=[item.id for item in conflicts],
        affected_branches=affected_branches,
    )
