"""``{placeholder}`` rendering for alert titles, descriptions and notes."""

from __future__ import annotations

from typing import Any


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_template(template: str, context: dict[str, Any]) -> str:
    """Substitute ``{name}`` placeholders from *context*.

    Unknown placeholders render as empty strings. A template that is not a
    valid format string is returned unchanged.
    """
    try:
        return template.format_map(_Blank(context))
    except (ValueError, IndexError, AttributeError, KeyError):
        return template
