# /flowbot/utils/templating.py

import re
from typing import Any, Dict, Mapping

# Token substitution shared by message, webhook, assignment and formatter nodes.
# Both {{name}} and {name} forms are recognised; a token whose key is not in the
# variable map is left exactly as written.

TOKEN_RE = re.compile(r"\{\{([^{}]+)\}\}|\{([^{}]+)\}")


def to_text(value: Any) -> str:
    """String form of a variable value as it appears in rendered text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    if not template:
        return template or ""

    def _substitute(match: re.Match) -> str:
        key = (match.group(1) if match.group(1) is not None else match.group(2)).strip()
        if key in variables:
            return to_text(variables[key])
        return match.group(0)

    return TOKEN_RE.sub(_substitute, template)


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Renders every string leaf of a nested dict/list structure."""
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, list):
        return [render_value(item, variables) for item in value]
    if isinstance(value, tuple):
        return tuple(render_value(item, variables) for item in value)
    if isinstance(value, dict):
        return {key: render_value(item, variables) for key, item in value.items()}
    return value


def render_mapping(mapping: Mapping[str, Any] | None, variables: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: render_value(value, variables) for key, value in (mapping or {}).items()}
