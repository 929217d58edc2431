from __future__ import annotations

import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+)\s*\}\}")


class TemplateError(KeyError):
    pass


def render_template(template: str, variables: dict[str, Any], *, strict: bool = True) -> str:
    """Render `{{var}}` placeholders. Lists/tuples are joined with ", ".

    With `strict`, a placeholder missing from `variables` raises TemplateError.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group("key")
        if key not in variables:
            if strict:
                raise TemplateError(f"Missing template variable: {key}")
            return ""
        value = variables[key]
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _VAR_RE.sub(_replace, template)
