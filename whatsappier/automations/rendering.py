"""Placeholder substitution for outbound message templates.

Templates reference event fields as ``{{customer_name}}`` and raw payload
values by dotted path as ``{{raw.node.customer.full_name}}``. Rendering is a
pure function of its inputs.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from .errors import TemplateRenderError

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")
RAW_PREFIX = "raw."


def referenced_variables(content: str) -> list[str]:
    """Return placeholder names in order of first appearance."""

    seen: list[str] = []
    for match in PLACEHOLDER_RE.finditer(content or ""):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def _lookup_path(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _stringify(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Mapping, list)):
        return None
    text = str(value)
    return text if text.strip() else None


def resolve_variable(
    name: str,
    fields: Mapping[str, Any],
    raw_payload: Mapping[str, Any] | None = None,
) -> str | None:
    if name.startswith(RAW_PREFIX):
        return _stringify(_lookup_path(raw_payload or {}, name[len(RAW_PREFIX):]))
    return _stringify(fields.get(name))


def render_template(
    content: str,
    fields: Mapping[str, Any],
    *,
    raw_payload: Mapping[str, Any] | None = None,
    fallbacks: Mapping[str, str] | None = None,
) -> str:
    """Substitute every placeholder in ``content``.

    Empty strings and ``None`` count as absent. Absent values use the
    matching entry of ``fallbacks``; when there is none the whole render
    fails with :class:`TemplateRenderError` listing every unresolved name.
    """

    fallbacks = fallbacks or {}
    values: dict[str, str] = {}
    missing: list[str] = []
    for name in referenced_variables(content):
        value = resolve_variable(name, fields, raw_payload)
        if value is None:
            value = fallbacks.get(name)
        if value is None:
            missing.append(name)
        else:
            values[name] = value
    if missing:
        raise TemplateRenderError(missing)
    return PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], content)


__all__ = ["referenced_variables", "render_template", "resolve_variable"]
