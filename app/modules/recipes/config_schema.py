"""
Typed-field interpreter for recipe configuration.

A recipe declares its configuration surface as a map of typed fields
(string, integer, number, boolean, enum). User-supplied configuration is
checked against that map; unknown fields are rejected and every problem is
reported with the field it belongs to.
"""

import re
from typing import Any, Dict, List, Optional

from app.core.exceptions import ValidationError
from app.modules.recipes.schemas import ConfigField, SecretField


def _check_field(name: str, field: ConfigField, value: Any) -> Optional[str]:
    if field.type == "string":
        if not isinstance(value, str):
            return "Must be a string"
        if field.min_length is not None and len(value) < field.min_length:
            return f"Must be at least {field.min_length} characters"
        if field.max_length is not None and len(value) > field.max_length:
            return f"Must be at most {field.max_length} characters"
        if field.pattern and not re.fullmatch(field.pattern, value):
            return f"Must match pattern {field.pattern}"
        return None

    if field.type in ("integer", "number"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return "Must be an integer" if field.type == "integer" else "Must be a number"
        if field.type == "integer" and isinstance(value, float) and not value.is_integer():
            return "Must be an integer"
        if field.min is not None and value < field.min:
            return f"Must be >= {_format_bound(field.min)}"
        if field.max is not None and value > field.max:
            return f"Must be <= {_format_bound(field.max)}"
        return None

    if field.type == "boolean":
        if not isinstance(value, bool):
            return "Must be a boolean"
        return None

    if field.type == "enum":
        choices = field.choices or []
        if value not in choices:
            return f"Must be one of: {', '.join(str(c) for c in choices)}"
        return None

    return f"Unsupported field type '{field.type}'"


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def collect_config_errors(schema: Dict[str, ConfigField], config: Dict[str, Any]) -> List[Dict[str, str]]:
    """Return field-level errors for config against schema (empty list when valid)."""
    errors: List[Dict[str, str]] = []
    for key in config:
        if key not in schema:
            errors.append({"field": key, "message": "Unknown field"})

    for name, field in schema.items():
        if name not in config or config[name] is None:
            if field.required and field.default is None:
                errors.append({"field": name, "message": "Field is required"})
            continue
        message = _check_field(name, field, config[name])
        if message:
            errors.append({"field": name, "message": message})
    return errors


def apply_defaults(schema: Dict[str, ConfigField], config: Dict[str, Any]) -> Dict[str, Any]:
    merged = {name: field.default for name, field in schema.items() if field.default is not None}
    merged.update({k: v for k, v in config.items() if v is not None})
    return merged


def validate_config(schema: Dict[str, ConfigField], config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate config and return it with schema defaults filled in.

    Raises ValidationError listing every offending field.
    """
    config = dict(config or {})
    errors = collect_config_errors(schema, config)
    if errors:
        raise ValidationError("Invalid configuration", errors)
    return apply_defaults(schema, config)


def validate_secret_values(schema: Dict[str, SecretField], values: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Check caller-supplied secret values: keys must be declared, values non-empty strings,
    and every secret that is not auto-generated must be supplied."""
    values = dict(values or {})
    errors: List[Dict[str, str]] = []
    for key, value in values.items():
        if key not in schema:
            errors.append({"field": f"secrets.{key}", "message": "Unknown secret"})
        elif not isinstance(value, str) or not value:
            errors.append({"field": f"secrets.{key}", "message": "Must be a non-empty string"})
    for key, field in schema.items():
        if not field.generate and key not in values:
            errors.append({"field": f"secrets.{key}", "message": "Secret is required"})
    if errors:
        raise ValidationError("Invalid secrets", errors)
    return values
