"""
Template resolver — ``{{path.to.value}}`` placeholders against a context dict.

Paths use dot notation with optional bracket indexes (``items[0].name``).
Missing values resolve to an empty string; resolution never raises.
"""
from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_SEGMENT = re.compile(r"([^\[\]]+)|\[(\d+)\]")


def _split_path(path: str) -> list[Any]:
    path = path.strip()
    if path.startswith("$."):
        path = path[2:]
    elif path == "$":
        return []
    keys: list[Any] = []
    for part in path.split("."):
        if not part:
            continue
        for name, index in _SEGMENT.findall(part):
            keys.append(int(index) if index else name)
    return keys


def get_nested_value(data: Any, path: str) -> Any:
    """Get a value using dot/bracket notation. e.g. 'order.items[0].sku'"""
    current = data
    for key in _split_path(path):
        if isinstance(key, int):
            if isinstance(current, list) and 0 <= key < len(current):
                current = current[key]
            else:
                return None
        elif isinstance(current, dict):
            current = current.get(key)
        else:
            return None
        if current is None:
            return None
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_template(template: Any, context: dict[str, Any]) -> str:
    """Replace every {{path}} in template with its value from context."""
    if template is None:
        return ""
    if not isinstance(template, str):
        template = str(template)
    return _PLACEHOLDER.sub(
        lambda m: _stringify(get_nested_value(context, m.group(1))), template,
    )


def resolve_object(obj: Any, context: dict[str, Any]) -> Any:
    """Resolve templates in every string of a nested dict/list structure."""
    if isinstance(obj, str):
        return resolve_template(obj, context)
    if isinstance(obj, dict):
        return {k: resolve_object(v, context) for k, v in obj.items()}
    if isinstance(obj, list):
        return [resolve_object(v, context) for v in obj]
    return obj
