"""
Template substitution for ``{{var}}`` placeholders.

Placeholders accept dotted paths (``{{ticket.number}}``). A missing or
null variable renders as an empty string; dicts and lists render as
compact JSON. Substitution never raises.
"""
from __future__ import annotations

import json
import re
from typing import Any

from utils.conditions import get_nested_value

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
_SINGLE_BRACE = re.compile(r"\{\s*([\w.\-]+)\s*\}")


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def substitute(template: Any, variables: dict[str, Any]) -> str:
    """Render every ``{{path}}`` in ``template`` against ``variables``."""
    if template is None:
        return ""
    text = str(template)
    if "{{" not in text:
        return text
    return _PLACEHOLDER.sub(
        lambda m: _render_value(get_nested_value(variables, m.group(1))), text,
    )


def render(content: Any, variables: dict[str, Any]) -> Any:
    """
    Render block content of any shape.

    Strings are substituted directly. Structured content is walked and
    every string leaf (and key) is substituted, so substituted values
    can never break the structure.
    """
    if isinstance(content, str):
        return substitute(content, variables)
    if isinstance(content, dict):
        return {substitute(k, variables): render(v, variables) for k, v in content.items()}
    if isinstance(content, list):
        return [render(item, variables) for item in content]
    return content


def substitute_ref(ref: Any, variables: dict[str, Any]) -> Any:
    """Resolve placeholders in a block reference (``{{x}}`` or ``{x}``)."""
    if not isinstance(ref, str) or "{" not in ref:
        return ref
    rendered = substitute(ref, variables)
    return _SINGLE_BRACE.sub(
        lambda m: _render_value(get_nested_value(variables, m.group(1))), rendered,
    )
