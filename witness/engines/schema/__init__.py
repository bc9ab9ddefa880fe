"""
Schema Registry Engine

Record types, typed field definitions and conditional visibility.
"""

from witness.engines.schema.field_types import (
    CONFIG_MODELS,
    FieldConfigBase,
    ShowWhen,
    check_value,
    parse_field_config,
)
from witness.engines.schema.registry import SchemaRegistry, SubmissionCheck
from witness.engines.schema.visibility import (
    FormMode,
    effective_fields,
    evaluate_condition,
    is_empty,
    is_field_visible,
    strict_equals,
)

__all__ = [
    "CONFIG_MODELS",
    "FieldConfigBase",
    "ShowWhen",
    "check_value",
    "parse_field_config",
    "SchemaRegistry",
    "SubmissionCheck",
    "FormMode",
    "effective_fields",
    "evaluate_condition",
    "is_empty",
    "is_field_visible",
    "strict_equals",
]
