"""
Typed field configuration.

Each FieldType selects one config model; unknown keys are refused when a
field is written, so a typo in a schema never silently disables a check.
"""

import re
from datetime import date
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from witness.errors import ValidationError
from witness.kernel.models.schema import FieldType


class ShowWhen(BaseModel):
    """Conditional visibility rule: show this field when `field` matches."""

    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1)
    operator: str = "equals"
    value: Any = None


class FieldConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    show_when: Optional[ShowWhen] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None


class TextConfig(FieldConfigBase):
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=1)
    pattern: Optional[str] = None
    placeholder: Optional[str] = None
    rows: Optional[int] = Field(default=None, ge=1)

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"pattern is not a valid regular expression: {exc}")
        return value


class NumberConfig(FieldConfigBase):
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    unit: Optional[str] = None


class DateConfig(FieldConfigBase):
    min_date: Optional[date] = None
    max_date: Optional[date] = None


class SelectOption(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: str
    label: str
    description: Optional[str] = None
    color: Optional[str] = None


class ChoiceConfig(FieldConfigBase):
    options: List[SelectOption] = Field(default_factory=list)
    allow_custom: bool = False


class LocationConfig(FieldConfigBase):
    require_city: bool = False
    require_state: bool = False
    require_country: bool = False
    country_options: List[str] = Field(default_factory=list)


class RecordLinkConfig(FieldConfigBase):
    linked_record_type_slug: Optional[str] = None
    allow_multiple: bool = False


class PlainConfig(FieldConfigBase):
    pass


CONFIG_MODELS: Dict[FieldType, Type[FieldConfigBase]] = {
    FieldType.TEXT: TextConfig,
    FieldType.TEXTAREA: TextConfig,
    FieldType.RICH_TEXT: TextConfig,
    FieldType.URL: TextConfig,
    FieldType.EMAIL: TextConfig,
    FieldType.NUMBER: NumberConfig,
    FieldType.DATE: DateConfig,
    FieldType.DATETIME: DateConfig,
    FieldType.SELECT: ChoiceConfig,
    FieldType.MULTI_SELECT: ChoiceConfig,
    FieldType.RADIO: ChoiceConfig,
    FieldType.CHECKBOX_GROUP: ChoiceConfig,
    FieldType.INCIDENT_TYPES: ChoiceConfig,
    FieldType.VIOLATIONS: ChoiceConfig,
    FieldType.LOCATION: LocationConfig,
    FieldType.RECORD_LINK: RecordLinkConfig,
    FieldType.BOOLEAN: PlainConfig,
    FieldType.PERSON: PlainConfig,
    FieldType.TRI_STATE: PlainConfig,
    FieldType.MEDIA: PlainConfig,
    FieldType.CUSTOM_FIELDS: PlainConfig,
}

SINGLE_CHOICE_TYPES = frozenset({FieldType.SELECT, FieldType.RADIO})
MULTI_CHOICE_TYPES = frozenset({
    FieldType.MULTI_SELECT,
    FieldType.CHECKBOX_GROUP,
    FieldType.INCIDENT_TYPES,
    FieldType.VIOLATIONS,
})

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)


def coerce_field_type(value: Any) -> FieldType:
    try:
        return FieldType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown field type: {value}",
            {"field_type": value, "allowed": [t.value for t in FieldType]},
        )


def parse_field_config(field_type: Any, config: Optional[Dict[str, Any]]) -> FieldConfigBase:
    """
    Parse a raw config dict into the model selected by `field_type`.

    Raises ValidationError for an unknown type or any unknown/ill-typed key.
    """
    ftype = coerce_field_type(field_type)
    model = CONFIG_MODELS[ftype]
    try:
        return model.model_validate(config or {})
    except PydanticValidationError as exc:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(
            f"Invalid config for {ftype.value} field",
            {"errors": errors},
        )


def dump_field_config(config: FieldConfigBase) -> Dict[str, Any]:
    """Serialize a parsed config for storage, dropping unset keys."""
    return config.model_dump(mode="json", exclude_none=True)


def _unwrap_selected(value: Any) -> Any:
    if isinstance(value, dict) and "selected" in value:
        return value["selected"]
    return value


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value) >= 10:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def check_value(field_type: FieldType, config: FieldConfigBase, value: Any) -> Optional[str]:
    """
    Check one non-empty value against its typed config.

    Returns a human-readable problem, or None when the value is acceptable.
    Composite types without a typed config are accepted as-is.
    """
    if isinstance(config, TextConfig):
        if not isinstance(value, str):
            return "must be text"
        if config.min_length is not None and len(value) < config.min_length:
            return f"must be at least {config.min_length} characters"
        if config.max_length is not None and len(value) > config.max_length:
            return f"must be at most {config.max_length} characters"
        if config.pattern and not re.fullmatch(config.pattern, value):
            return "does not match the required format"
        if field_type == FieldType.EMAIL and not _EMAIL_RE.match(value):
            return "must be an email address"
        if field_type == FieldType.URL and not _URL_RE.match(value):
            return "must be an http(s) URL"
        return None

    if isinstance(config, NumberConfig):
        number = value
        if isinstance(value, str):
            try:
                number = float(value)
            except ValueError:
                return "must be a number"
        if not _is_number(number):
            return "must be a number"
        if config.min is not None and number < config.min:
            return f"must be at least {config.min:g}"
        if config.max is not None and number > config.max:
            return f"must be at most {config.max:g}"
        return None

    if isinstance(config, DateConfig):
        parsed = _parse_date(value)
        if parsed is None:
            return "must be an ISO date"
        if config.min_date is not None and parsed < config.min_date:
            return f"must be on or after {config.min_date.isoformat()}"
        if config.max_date is not None and parsed > config.max_date:
            return f"must be on or before {config.max_date.isoformat()}"
        return None

    if isinstance(config, ChoiceConfig):
        allowed = {opt.value for opt in config.options}
        if not allowed or config.allow_custom:
            return None
        selected = _unwrap_selected(value)
        if field_type in SINGLE_CHOICE_TYPES:
            if not _is_scalar(selected) or selected not in allowed:
                return "is not one of the allowed options"
            return None
        values = selected if isinstance(selected, list) else [selected]
        unknown = [v for v in values if not _is_scalar(v) or v not in allowed]
        if unknown:
            return f"contains options that are not allowed: {', '.join(map(str, unknown))}"
        return None

    if isinstance(config, LocationConfig):
        if not isinstance(value, dict):
            return "must be a location object"
        for part in ("city", "state", "country"):
            if getattr(config, f"require_{part}") and not value.get(part):
                return f"requires a {part}"
        country = value.get("country")
        if config.country_options and country and country not in config.country_options:
            return "country is not one of the allowed options"
        return None

    if isinstance(config, RecordLinkConfig):
        if isinstance(value, list) and not config.allow_multiple:
            return "links to a single record only"
        return None

    if field_type == FieldType.BOOLEAN and not isinstance(value, bool):
        return "must be true or false"
    return None
