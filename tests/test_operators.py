import pytest

from journey_configurator.operators import (
    MISSING,
    Operator,
    UnknownOperatorError,
    apply_operator,
    coerce_value,
    parse_operator,
    values_equal,
)

EXISTENCE_INPUTS = [MISSING, None, "", 0, False, "x", 0.0, [], ["a"]]


@pytest.mark.parametrize("value", EXISTENCE_INPUTS)
def test_exists_and_not_exists_are_complements(value) -> None:
    exists = apply_operator(Operator.EXISTS, value).matched
    not_exists = apply_operator(Operator.NOT_EXISTS, value).matched
    assert exists is not not_exists


def test_exists_treats_absent_null_and_empty_string_as_missing() -> None:
    assert apply_operator(Operator.EXISTS, MISSING).matched is False
    assert apply_operator(Operator.EXISTS, None).matched is False
    assert apply_operator(Operator.EXISTS, "").matched is False
    assert apply_operator(Operator.EXISTS, 0).matched is True
    assert apply_operator(Operator.EXISTS, False).matched is True


@pytest.mark.parametrize(
    "value, options",
    [
        ("SALARIED", ("SALARIED", "SELF_EMPLOYED")),
        ("RETIRED", ("SALARIED", "SELF_EMPLOYED")),
        (1, (1, 2)),
        (True, (1, 2)),
        (MISSING, ("a",)),
        (None, (None,)),
    ],
)
def test_in_and_not_in_are_complements(value, options) -> None:
    inside = apply_operator(Operator.IN, value, options).matched
    outside = apply_operator(Operator.NOT_IN, value, options).matched
    assert inside is not outside


def test_in_requires_array_operand() -> None:
    result = apply_operator(Operator.IN, "a", "a")
    assert result.matched is False
    assert "array" in result.diagnostic


def test_equality_never_coerces_types() -> None:
    assert apply_operator(Operator.EQUALS, "5", 5).matched is False
    assert apply_operator(Operator.EQUALS, True, 1).matched is False
    assert apply_operator(Operator.NOT_EQUALS, True, 1).matched is True
    assert apply_operator(Operator.EQUALS, 5, 5.0).matched is True


def test_absent_value_is_not_equal_to_anything() -> None:
    assert apply_operator(Operator.EQUALS, MISSING, None).matched is False
    assert apply_operator(Operator.NOT_EQUALS, MISSING, "x").matched is True


def test_ordering_on_numbers_and_iso_dates() -> None:
    assert apply_operator(Operator.GT, 750, 700).matched is True
    assert apply_operator(Operator.LTE, 700, 700).matched is True
    assert apply_operator(Operator.LT, "2024-01-01", "2024-06-30").matched is True
    assert apply_operator(Operator.GTE, "2024-06-30T10:00:00", "2024-06-30").matched is True


def test_ordering_on_incomparable_types_is_false_with_diagnostic() -> None:
    result = apply_operator(Operator.GT, "abc", 5)
    assert result.matched is False
    assert result.diagnostic

    result = apply_operator(Operator.GT, "abc", "abd")
    assert result.matched is False
    assert result.diagnostic

    result = apply_operator(Operator.LT, MISSING, 5)
    assert result.matched is False


def test_contains_supports_strings_and_arrays() -> None:
    assert apply_operator(Operator.CONTAINS, "home loan", "loan").matched is True
    assert apply_operator(Operator.CONTAINS, ["PAN", "AADHAAR"], "PAN").matched is True
    assert apply_operator(Operator.CONTAINS, 42, 4).matched is False


def test_starts_with_and_ends_with() -> None:
    assert apply_operator(Operator.STARTS_WITH, "ABCDE1234F", "ABC").matched is True
    assert apply_operator(Operator.ENDS_WITH, "ABCDE1234F", "F").matched is True
    assert apply_operator(Operator.ENDS_WITH, 10, "0").matched is False


def test_coerce_value_parses_numeric_strings() -> None:
    assert coerce_value("42") == 42
    assert isinstance(coerce_value("42"), int)
    assert coerce_value("-3.5") == -3.5
    assert coerce_value("1e3") == 1000.0
    assert coerce_value("42a") == "42a"
    assert coerce_value(True) is True
    assert coerce_value(["1", "x"]) == (1, "x")


def test_values_equal_compares_arrays_elementwise() -> None:
    assert values_equal([1, "a"], (1, "a")) is True
    assert values_equal([1, "a"], [1, "b"]) is False
    assert values_equal([True], [1]) is False


def test_parse_operator_accepts_legacy_aliases() -> None:
    assert parse_operator("GREATER_THAN") is Operator.GT
    assert parse_operator("less_than_or_equals") is Operator.LTE
    assert parse_operator("IN") is Operator.IN
    with pytest.raises(UnknownOperatorError):
        parse_operator("BETWEEN")
