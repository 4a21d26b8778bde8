import pytest

from journey_configurator.models import ConfigRecord, ConfigScope, ConfigStatus, ConfigType, ScopeType
from journey_configurator.resolver import (
    ConfigNotFoundError,
    resolve,
    resolve_flow,
    scope_identifier,
    validate_activation,
    validate_scope,
    validate_scope_change,
)

PRODUCT = ConfigScope(ScopeType.PRODUCT, "HL")
PARTNER = ConfigScope(ScopeType.PARTNER, "HL", "ACME")
BRANCH = ConfigScope(ScopeType.BRANCH, "HL", "ACME", "B01")
REQUEST = ConfigScope(ScopeType.BRANCH, "HL", "ACME", "B01")


def record(record_id, scope, status=ConfigStatus.ACTIVE, entity_id="applicant_details", **kwargs) -> ConfigRecord:
    return ConfigRecord(id=record_id, entity_id=entity_id, scope=scope, status=status, **kwargs)


def test_resolution_precedence_branch_partner_product() -> None:
    candidates = [record(1, PRODUCT), record(2, PARTNER), record(3, BRANCH)]

    resolved = resolve("applicant_details", REQUEST, candidates)
    assert resolved.config.id == 3
    assert resolved.resolved_from is ScopeType.BRANCH

    resolved = resolve("applicant_details", REQUEST, candidates[:2])
    assert resolved.config.id == 2
    assert resolved.resolved_from is ScopeType.PARTNER

    resolved = resolve("applicant_details", REQUEST, candidates[:1])
    assert resolved.config.id == 1
    assert resolved.resolved_from is ScopeType.PRODUCT

    with pytest.raises(ConfigNotFoundError, match="no active PRODUCT-level configuration"):
        resolve("applicant_details", REQUEST, [])


def test_inheritance_chain_lists_attempted_levels() -> None:
    resolved = resolve("applicant_details", REQUEST, [record(1, PRODUCT)])
    assert resolved.inheritance_chain == [
        "BRANCH: HL > ACME > B01 (not found)",
        "PARTNER: HL > ACME (not found)",
        "PRODUCT: HL (matched)",
    ]


def test_only_active_records_participate() -> None:
    candidates = [
        record(1, PRODUCT),
        record(2, BRANCH, status=ConfigStatus.DRAFT),
        record(3, PARTNER, status=ConfigStatus.DEPRECATED),
    ]
    resolved = resolve("applicant_details", REQUEST, candidates)
    assert resolved.config.id == 1


def test_branch_match_requires_same_partner_and_product() -> None:
    other_partner_branch = ConfigScope(ScopeType.BRANCH, "HL", "GLOBEX", "B01")
    other_product_partner = ConfigScope(ScopeType.PARTNER, "PL", "ACME")
    candidates = [record(1, PRODUCT), record(2, other_partner_branch), record(3, other_product_partner)]
    resolved = resolve("applicant_details", REQUEST, candidates)
    assert resolved.config.id == 1


def test_other_screens_are_ignored() -> None:
    with pytest.raises(ConfigNotFoundError) as excinfo:
        resolve("applicant_details", PRODUCT, [record(1, PRODUCT, entity_id="kyc_upload")])
    assert excinfo.value.chain == ["PRODUCT: HL (not found)"]


def test_product_only_request_skips_partner_and_branch_levels() -> None:
    resolved = resolve("applicant_details", PRODUCT, [record(1, PRODUCT), record(2, PARTNER)])
    assert resolved.config.id == 1
    assert resolved.inheritance_chain == ["PRODUCT: HL (matched)"]


def test_duplicate_active_records_pick_most_recent_deterministically() -> None:
    older = record(7, PARTNER, version=1, updated_at="2024-03-01 10:00:00")
    newer = record(4, PARTNER, version=2, updated_at="2024-04-01 10:00:00")
    for candidates in ([older, newer], [newer, older]):
        resolved = resolve("applicant_details", REQUEST, candidates)
        assert resolved.config.id == 4
        assert resolved.diagnostics[0].code == "duplicate_active_config"


def test_flow_resolution_ignores_branch_level() -> None:
    candidates = [
        record(1, PRODUCT, entity_id="home_loan", config_type=ConfigType.FLOW),
        record(2, BRANCH, entity_id="home_loan", config_type=ConfigType.FLOW),
    ]
    resolved = resolve_flow("home_loan", REQUEST, candidates)
    assert resolved.config.id == 1
    assert resolved.inheritance_chain[0] == "PARTNER: HL > ACME (not found)"


def test_resolved_config_serializes_boundary_shape() -> None:
    payload = resolve("applicant_details", REQUEST, [record(1, PRODUCT)]).to_dict()
    assert payload["resolvedFrom"] == "PRODUCT"
    assert payload["config"]["scope"] == {"type": "PRODUCT", "productCode": "HL"}
    assert payload["inheritanceChain"][-1] == "PRODUCT: HL (matched)"


@pytest.mark.parametrize(
    "scope, expected_errors",
    [
        (PRODUCT, []),
        (PARTNER, []),
        (BRANCH, []),
        (ConfigScope(ScopeType.PRODUCT, ""), ["Product code is required for PRODUCT scope"]),
        (ConfigScope(ScopeType.PARTNER, "HL"), ["Partner code is required for PARTNER scope"]),
        (ConfigScope(ScopeType.BRANCH, "HL", "ACME"), ["Branch code is required for BRANCH scope"]),
        (ConfigScope(ScopeType.PRODUCT, "HL", "ACME"), ["Partner code must not be provided for PRODUCT scope"]),
        (ConfigScope(ScopeType.PARTNER, "HL", "ACME", "B01"), ["Branch code must not be provided for PARTNER scope"]),
    ],
)
def test_validate_scope(scope, expected_errors) -> None:
    result = validate_scope(scope)
    assert result.errors == expected_errors
    assert result.is_valid is (not expected_errors)


def test_scope_is_immutable() -> None:
    assert validate_scope_change(PARTNER, PARTNER).is_valid is True
    assert validate_scope_change(PARTNER, BRANCH).is_valid is False


def test_activation_conflicts_with_other_active_record_on_same_scope() -> None:
    draft = record(5, PARTNER, status=ConfigStatus.DRAFT, version=2)
    check = validate_activation(draft, [record(2, PARTNER), draft])
    assert check.can_activate is False
    assert check.conflicting_ids == [2]
    assert "1 other ACTIVE configuration(s)" in check.errors[0]


def test_activation_warnings_describe_override_impact() -> None:
    partner_draft = record(5, PARTNER, status=ConfigStatus.DRAFT)
    check = validate_activation(partner_draft, [record(3, BRANCH), record(4, PRODUCT)])
    assert check.can_activate is True
    assert check.affected_branches == 1
    assert "fallback for 1 branch(es)" in check.warnings[0]

    branch_draft = record(6, BRANCH, status=ConfigStatus.DRAFT)
    check = validate_activation(branch_draft, [])
    assert "override PARTNER/PRODUCT" in check.warnings[0]


def test_scope_identifier() -> None:
    assert scope_identifier(PRODUCT) == "HL"
    assert scope_identifier(PARTNER) == "HL > ACME"
    assert scope_identifier(BRANCH) == "HL > ACME > B01"
