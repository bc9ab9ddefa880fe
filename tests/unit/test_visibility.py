"""Unit tests for conditional field visibility and form modes."""

import pytest

from witness.engines.schema.visibility import (
    FormMode,
    effective_fields,
    evaluate_condition,
    is_empty,
    is_field_visible,
    strict_equals,
)
from witness.kernel.models.schema import FieldDefinition


def make_field(slug, sort_order=0, config=None, **flags):
    defaults = {
        "show_in_guest_form": True,
        "show_in_review_form": True,
        "show_in_validation_form": True,
        "show_in_public_view": True,
    }
    defaults.update(flags)
    return FieldDefinition(
        slug=slug,
        name=slug.title(),
        field_type="text",
        config=config or {},
        sort_order=sort_order,
        **defaults,
    )


class TestEmptiness:
    @pytest.mark.parametrize("value", [None, "", [], {}])
    def test_empty_values(self, value):
        assert is_empty(value) is True

    @pytest.mark.parametrize("value", [0, False, " ", [None], {"a": 1}])
    def test_non_empty_values(self, value):
        assert is_empty(value) is False


class TestConditions:
    """show_when operators."""

    def test_booleans_never_equal_numbers(self):
        assert strict_equals(True, 1) is False
        assert strict_equals(0, False) is False
        assert evaluate_condition("equals", True, True) is True
        assert evaluate_condition("equals", 1, True) is False

    def test_not_equals(self):
        assert evaluate_condition("not_equals", "car", "bike") is True
        assert evaluate_condition("not_equals", "car", "car") is False

    def test_empty_operators(self):
        assert evaluate_condition("is_empty", [], None) is True
        assert evaluate_condition("is_not_empty", "x", None) is True

    def test_contains_on_list_and_scalar(self):
        assert evaluate_condition("contains", ["taser", "baton"], "baton") is True
        assert evaluate_condition("contains", "baton", "baton") is True
        assert evaluate_condition("contains", ["taser"], "baton") is False

    def test_contains_any(self):
        assert evaluate_condition("contains_any", ["a", "b"], ["b", "c"]) is True
        assert evaluate_condition("contains_any", ["a"], ["b", "c"]) is False
        assert evaluate_condition("contains_any", "b", ["b", "c"]) is True

    def test_unknown_operator_falls_back_to_membership(self):
        assert evaluate_condition("overlaps", ["x"], "x") is True
        assert evaluate_condition("overlaps", "x", "y") is False


class TestFieldVisibility:
    def test_field_without_rule_is_visible(self):
        assert is_field_visible(make_field("title"), {}) is True

    def test_rule_reads_selected_wrapper(self):
        field = make_field(
            "weapon",
            config={"show_when": {"field": "force_type", "operator": "equals", "value": "firearm"}},
        )
        assert is_field_visible(field, {"force_type": {"selected": "firearm"}}) is True
        assert is_field_visible(field, {"force_type": "taser"}) is False

    def test_missing_operator_means_equals(self):
        field = make_field("injuries", config={"show_when": {"field": "force_used", "value": True}})
        assert is_field_visible(field, {"force_used": True}) is True
        assert is_field_visible(field, {"force_used": 1}) is False


class TestEffectiveFields:
    def test_mode_flags_and_order(self):
        fields = [
            make_field("c", sort_order=3),
            make_field("a", sort_order=1),
            make_field("internal", sort_order=2, show_in_guest_form=False),
        ]
        assert [f.slug for f in effective_fields(fields, FormMode.GUEST)] == ["a", "c"]
        assert [f.slug for f in effective_fields(fields, FormMode.REVIEW)] == ["a", "internal", "c"]

    def test_hidden_by_rule_only_when_data_given(self):
        rule = {"show_when": {"field": "force_used", "operator": "equals", "value": True}}
        fields = [make_field("force_used", 1), make_field("injuries", 2, config=rule)]
        assert len(effective_fields(fields, FormMode.REVIEW)) == 2
        visible = effective_fields(fields, FormMode.REVIEW, {"force_used": False})
        assert [f.slug for f in visible] == ["force_used"]
