import pytest

from journey_configurator.flow_validation import validate_flow
from journey_configurator.models import FLOW_END, FlowConfig, FlowParseError


def minimal_flow(**overrides) -> dict:
    flow = {
        "flowId": "home_loan_journey",
        "scope": {"type": "PRODUCT", "productCode": "HL"},
        "startScreen": "a",
        "screens": [{"screenId": "a", "displayName": "Applicant", "defaultNext": FLOW_END}],
    }
    flow.update(overrides)
    return flow


def test_minimal_flow_is_valid() -> None:
    result = validate_flow(minimal_flow())
    assert result.is_valid is True
    assert result.errors == []
    assert result.warnings == []
    assert result.summary == {"screens": 1, "conditionalRoutes": 0, "services": 0, "warnings": 0}


def test_flow_without_flow_end_reports_exactly_one_error() -> None:
    flow = minimal_flow(
        screens=[
            {"screenId": "a", "displayName": "Applicant", "defaultNext": "b"},
            {"screenId": "b", "displayName": "Income", "defaultNext": "a"},
        ]
    )
    result = validate_flow(flow)
    assert result.is_valid is False
    assert len(result.errors) == 1
    assert "must have at least one screen" in result.errors[0]
    assert "Flow End" in result.errors[0]


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"flowId": ""}, "Flow ID is required"),
        ({"startScreen": ""}, "Start screen is required"),
        ({"startScreen": "zz"}, 'Start screen "zz" not configured in flow screens'),
        ({"scope": {"type": "PRODUCT", "productCode": ""}}, "Flow scope requires a product code"),
        ({"scope": {"type": "PARTNER", "productCode": "HL"}}, "Flow scope of type PARTNER requires a partner code"),
        (
            {"scope": {"type": "BRANCH", "productCode": "HL", "partnerCode": "ACME", "branchCode": "B01"}},
            "Flow scope must be PRODUCT or PARTNER; BRANCH-level flows are not supported",
        ),
    ],
)
def test_mandatory_checks_are_errors(overrides, expected) -> None:
    result = validate_flow(minimal_flow(**overrides))
    assert result.is_valid is False
    assert result.errors == [expected]


def test_dangling_references_and_missing_labels_are_warnings_only() -> None:
    flow = minimal_flow(
        screens=[
            {
                "screenId": "a",
                "defaultNext": "ghost",
                "conditions": [
                    {
                        "id": "r1",
                        "priority": 1,
                        "condition": {"source": "FORM_DATA", "field": "x", "operator": "EXISTS"},
                        "action": {"type": "NAVIGATE", "targetScreen": "missing_screen"},
                    },
                    {"id": "r2", "priority": 1, "action": {"type": "END_FLOW"}},
                    {
                        "id": "r3",
                        "condition": {"source": "FORM_DATA", "field": "x", "operator": "EXISTS"},
                    },
                ],
            },
            {"screenId": "done", "displayName": "Done", "defaultNext": FLOW_END},
        ]
    )
    result = validate_flow(flow)
    assert result.is_valid is True
    assert result.errors == []
    assert 'Screen "a" is missing a display name' in result.warnings
    assert 'Screen "a" defaultNext references unknown screen "ghost"' in result.warnings
    assert 'Screen "a" condition 1 (r1) targets unknown screen "missing_screen"' in result.warnings
    assert 'Screen "a" condition 2 (r2) is missing its condition' in result.warnings
    assert 'Screen "a" condition 3 (r3) is missing its action' in result.warnings
    assert result.summary["conditionalRoutes"] == 3
    assert result.summary["warnings"] == len(result.warnings)


def test_disabled_condition_targets_are_not_checked() -> None:
    flow = minimal_flow(
        screens=[
            {
                "screenId": "a",
                "displayName": "Applicant",
                "defaultNext": FLOW_END,
                "conditions": [
                    {
                        "id": "old",
                        "enabled": False,
                        "condition": {"source": "FORM_DATA", "field": "x", "operator": "EXISTS"},
                        "action": {"type": "NAVIGATE", "targetScreen": "retired_screen"},
                    }
                ],
            }
        ]
    )
    assert validate_flow(flow).warnings == []


def test_service_configuration_warnings() -> None:
    flow = minimal_flow(
        screens=[
            {
                "screenId": "a",
                "displayName": "Applicant",
                "defaultNext": FLOW_END,
                "services": {
                    "onSubmit": [
                        {"serviceId": "bureau", "endpoint": "/bureau/pull"},
                        {"serviceId": "pan", "endpoint": "", "onError": "ROUTE_TO_SCREEN"},
                    ]
                },
            }
        ]
    )
    result = validate_flow(flow)
    assert result.is_valid is True
    assert result.summary["services"] == 2
    assert 'Screen "a" onSubmit service "bureau" has no error handling configured' in result.warnings
    assert 'Screen "a" onSubmit service "pan" has no endpoint' in result.warnings
    assert 'Screen "a" onSubmit service "pan" routes errors to a screen but has no errorScreen' in result.warnings


def test_non_serializable_flow_is_an_error() -> None:
    metadata: dict = {}
    metadata["self"] = metadata
    flow = minimal_flow(
        screens=[
            {
                "screenId": "a",
                "displayName": "Applicant",
                "defaultNext": FLOW_END,
                "conditions": [
                    {
                        "id": "loop",
                        "condition": {"source": "FORM_DATA", "field": "x", "operator": "EXISTS"},
                        "action": {"type": "END_FLOW", "metadata": metadata},
                    }
                ],
            }
        ]
    )
    result = validate_flow(flow)
    assert result.is_valid is False
    assert result.errors[0].startswith("Flow is not JSON-serializable")


def test_validator_does_not_mutate_input() -> None:
    document = minimal_flow()
    flow = FlowConfig.from_dict(document)
    before = flow.to_dict()
    validate_flow(flow)
    assert flow.to_dict() == before
    assert document == minimal_flow()


def test_unparseable_flow_raises() -> None:
    with pytest.raises(FlowParseError, match="screens"):
        validate_flow(minimal_flow(screens="not-a-list"))
    with pytest.raises(FlowParseError, match="screenId"):
        validate_flow(minimal_flow(screens=[{"displayName": "No id"}]))


def test_legacy_top_level_scope_fields_are_accepted() -> None:
    flow = minimal_flow()
    del flow["scope"]
    flow.update({"productCode": "HL", "partnerCode": "ACME"})
    parsed = FlowConfig.from_dict(flow)
    assert parsed.scope.partner_code == "ACME"
    assert validate_flow(parsed).is_valid is True


def test_incomplete_leaves_are_reported_together() -> None:
    flow = minimal_flow(
        screens=[
            {
                "screenId": "a",
                "displayName": "Applicant",
                "defaultNext": FLOW_END,
                "conditions": [
                    {
                        "id": "r1",
                        "condition": {"source": "FORM_DATA", "field": "", "operator": "EQUALS", "value": 1},
                        "action": {"type": "END_FLOW"},
                    },
                    {
                        "id": "r2",
                        "condition": {
                            "operator": "OR",
                            "conditions": [
                                {"source": "FORM_DATA", "field": "x", "operator": "EXISTS"},
                                {"source": "FORM_DATA", "field": "y", "operator": "SIMILAR"},
                            ],
                        },
                        "action": {"type": "END_FLOW"},
                    },
                ],
            }
        ]
    )
    result = validate_flow(flow)
    assert result.is_valid is True
    assert result.warnings == [
        'Screen "a" condition 1 (r1) condition has no field',
        'Screen "a" condition 2 (r2) condition.conditions[1] has an unknown operator "SIMILAR"',
    ]
