"""
Render-time interpolation of {{user_state.KEY}} placeholders
"""
from typing import Any, Dict
import re

from flowlab.models.flow import CompiledNode

PLACEHOLDER_RE = re.compile(r"\{\{\s*user_state\.(\w+)\s*\}\}")


def interpolate(template: str, user_state: Dict[str, Any]) -> str:
    """
    Replace {{user_state.KEY}} with the state value.
    A key missing from user_state keeps its placeholder verbatim.
    """
    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in user_state:
            return match.group(0)
        return str(user_state[key])

    return PLACEHOLDER_RE.sub(replace, template)


def render_page(node: CompiledNode, user_state: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the presentation payload for a page: {components, userState}.
    Strings inside text components are interpolated; other components pass through.
    """
    def process_value(value: Any) -> Any:
        if isinstance(value, str):
            return interpolate(value, user_state)
        elif isinstance(value, dict):
            return {k: process_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [process_value(item) for item in value]
        else:
            return value

    components = []
    for component in node.components:
        data = component.model_dump(mode="json", by_alias=True, exclude_none=True)
        if component.type == "text":
            data["props"] = process_value(data["props"])
        components.append(data)

    return {"components": components, "userState": dict(user_state)}
