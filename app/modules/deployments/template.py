"""Release values rendering: Jinja2 template -> YAML document -> dict."""

import logging
from typing import Any, Dict

import jinja2
import yaml

logger = logging.getLogger(__name__)

_env = jinja2.Environment(
    loader=jinja2.BaseLoader(),
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
)


class TemplateRenderError(Exception):
    pass


def render_string(source: str, context: Dict[str, Any]) -> str:
    try:
        return _env.from_string(source).render(**context)
    except jinja2.TemplateError as e:
        raise TemplateRenderError(f"Template rendering failed: {e}") from e


def render_values(values_template: str, context: Dict[str, Any]) -> Dict[str, Any]:
    """Render the recipe's values template and parse the result as YAML.

    An empty template renders to an empty values map.
    """
    if not values_template or not values_template.strip():
        return {}
    rendered = render_string(values_template, context)
    try:
        values = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise TemplateRenderError(f"Rendered values are not valid YAML: {e}") from e
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise TemplateRenderError("Rendered values must be a YAML mapping")
    return values


def dump_values(values: Dict[str, Any]) -> str:
    return yaml.safe_dump(values, default_flow_style=False, sort_keys=False)
