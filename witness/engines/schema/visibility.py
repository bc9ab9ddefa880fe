"""
Conditional field visibility.

A field's `config.show_when = {field, operator, value}` makes it visible only
when the referenced field's current value satisfies the operator. Hidden
fields are not rendered and are not required.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from witness.kernel.models.schema import FieldDefinition


class FormMode(str, Enum):
    GUEST = "guest"
    REVIEW = "review"
    VALIDATION = "validation"
    PUBLIC = "public"


_MODE_FLAGS = {
    FormMode.GUEST: "show_in_guest_form",
    FormMode.REVIEW: "show_in_review_form",
    FormMode.VALIDATION: "show_in_validation_form",
    FormMode.PUBLIC: "show_in_public_view",
}


def is_empty(value: Any) -> bool:
    """Absent, None, empty string, empty list and empty dict are all empty."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def strict_equals(left: Any, right: Any) -> bool:
    """Equality that never treats booleans as numbers."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(
            strict_equals(a, b) for a, b in zip(left, right)
        )
    return left == right


def _contains(items: List[Any], value: Any) -> bool:
    return any(strict_equals(item, value) for item in items)


def _resolve(data: Mapping[str, Any], slug: str) -> Any:
    value = data.get(slug)
    if isinstance(value, dict) and "selected" in value:
        return value["selected"]
    return value


def evaluate_condition(operator: str, actual: Any, expected: Any) -> bool:
    """Apply a show_when operator to the dependent field's resolved value."""
    if operator == "equals":
        return strict_equals(actual, expected)
    if operator == "not_equals":
        return not strict_equals(actual, expected)
    if operator == "is_empty":
        return is_empty(actual)
    if operator == "is_not_empty":
        return not is_empty(actual)
    if operator == "contains":
        if isinstance(actual, list):
            return _contains(actual, expected)
        return strict_equals(actual, expected)

    # contains_any, and the fallback for operators we do not know
    if isinstance(actual, list) and isinstance(expected, list):
        return any(_contains(expected, item) for item in actual)
    if isinstance(actual, list):
        return _contains(actual, expected)
    if isinstance(expected, list):
        return _contains(expected, actual)
    return strict_equals(actual, expected)


def is_field_visible(field: FieldDefinition, data: Mapping[str, Any]) -> bool:
    """Whether a field's show_when rule (if any) is satisfied by `data`."""
    rule: Optional[Dict[str, Any]] = (field.config or {}).get("show_when")
    if not rule or not rule.get("field"):
        return True
    actual = _resolve(data, rule["field"])
    return evaluate_condition(rule.get("operator") or "equals", actual, rule.get("value"))


def shown_in_mode(field: FieldDefinition, mode: FormMode) -> bool:
    return bool(getattr(field, _MODE_FLAGS[FormMode(mode)]))


def effective_fields(
    fields: Iterable[FieldDefinition],
    mode: FormMode,
    data: Optional[Mapping[str, Any]] = None,
) -> List[FieldDefinition]:
    """
    Fields shown in `mode`, ordered by sort_order.

    When `data` is given, fields whose show_when rule is not met are dropped.
    """
    shown = [f for f in fields if shown_in_mode(f, mode)]
    if data is not None:
        shown = [f for f in shown if is_field_visible(f, data)]
    return sorted(shown, key=lambda f: (f.sort_order, f.slug))
