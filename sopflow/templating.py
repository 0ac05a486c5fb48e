"""Prompt and message interpolation against working data."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

logger = logging.getLogger(__name__)

# {{ key }} or {key}; dotted paths reach into nested mappings
_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}|\{([\w.]+)\}")

_MISSING = object()


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def interpolate(template: str, data: Mapping[str, Any]) -> str:
    """Substitute placeholders in ``template`` with values from ``data``.

    Missing variables render as an empty string and log a warning.
    """
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1) or match.group(2)
        value = _lookup(data, key)
        if value is _MISSING or value is None:
            logger.warning(f"Template variable '{key}' missing from working data")
            return ""
        return str(value)

    return _PLACEHOLDER_RE.sub(_replace, template)


def interpolate_values(value: Any, data: Mapping[str, Any]) -> Any:
    """Interpolate every string inside a (possibly nested) config value."""
    if isinstance(value, str):
        return interpolate(value, data)
    if isinstance(value, Mapping):
        return {k: interpolate_values(v, data) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_values(v, data) for v in value]
    return value
