"""Template helpers: verbatim token substitution and ``{key}`` rendering."""

from __future__ import annotations

import re
from pathlib import Path

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

MODEL_ID_PLACEHOLDER = "MODEL_ID_PLACEHOLDER"

# Doubled braces are literal; {name} is a placeholder.
_PLACEHOLDER_RE = re.compile(r"\{\{|\}\}|\{(\w+)\}")


def substitute_token(content: str, token: str, value: str) -> str:
    """Replace every occurrence of ``token`` with ``value``.

    The value is inserted as-is: no quoting, escaping or validation. All
    other bytes of ``content`` are left untouched.
    """
    if not token:
        raise ValueError("token must be a non-empty string")
    return content.replace(token, value)


def render_string(template: str, replacements: dict[str, str]) -> str:
    """Fill ``{key}`` placeholders in one pass.

    Unknown keys are left in place. Values are never re-scanned, so a value
    containing ``{other}`` is not expanded.
    """

    def _replace(m: re.Match) -> str:
        whole = m.group(0)
        if whole == "{{":
            return "{"
        if whole == "}}":
            return "}"
        key = m.group(1)
        if key in replacements:
            return str(replacements[key])
        return whole

    return _PLACEHOLDER_RE.sub(_replace, template)


def render_template(name: str, replacements: dict[str, str]) -> str:
    """Render a packaged template from ``TEMPLATES_DIR``."""
    return render_string(read_template(name), replacements)


def read_template(name: str) -> str:
    return (TEMPLATES_DIR / name).read_text()
