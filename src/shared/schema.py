"""JSON Schema utilities for tool arguments."""

import copy
import hashlib
import json
from typing import Any

from jsonschema import Draft7Validator


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def apply_defaults(data: Any, schema: dict[str, Any]) -> Any:
    """
    Return a copy of data with schema defaults filled in.

    Defaults are taken from the ``default`` keyword of each declared object
    property and applied only where the key is absent. Nested objects are
    handled recursively, including defaults of objects that were themselves
    just defaulted. The input is never mutated.

    Args:
        data: Tool arguments (usually a dict)
        schema: JSON Schema describing the arguments

    Returns:
        A deep copy of data with defaults applied
    """
    result = copy.deepcopy(data)
    _fill_defaults(result, schema or {})
    return result


def _fill_defaults(data: Any, schema: dict[str, Any]) -> None:
    if isinstance(data, dict):
        properties = schema.get("properties") or {}
        for key, prop_schema in properties.items():
            if not isinstance(prop_schema, dict):
                continue
            if key not in data and "default" in prop_schema:
                data[key] = copy.deepcopy(prop_schema["default"])
            if key in data:
                _fill_defaults(data[key], prop_schema)
    elif isinstance(data, list):
        items = schema.get("items")
        if isinstance(items, dict):
            for item in data:
                _fill_defaults(item, items)


def canonical_json(data: Any) -> str:
    """Serialize data deterministically (sorted keys, compact separators)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(name: str, args: Any) -> str:
    """Stable cache key for a tool invocation."""
    digest = hashlib.sha256(canonical_json(args).encode("utf-8")).hexdigest()
    return f"{name}:{digest}"
