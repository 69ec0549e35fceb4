"""
`{{field}}` placeholder rendering for messages and webhook bodies.
"""

import re
from typing import Any, Dict, Optional

from ..rules.models import Record

_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def render_template(template: Optional[str], record: Record, extra: Optional[Dict[str, Any]] = None) -> str:
    """Replace `{{name}}` with record fields.

    Supports plain field names (`{{first_name}}`), `{{record.<field>}}`,
    dotted data paths (`{{data.address.city}}`) and any keys passed in
    `extra`. Unresolved placeholders render as an empty string.
    """
    if not template:
        return ""
    extra = extra or {}

    def replacer(match):
        path = match.group(1)
        if path in extra:
            value = extra[path]
        else:
            if path.startswith("record."):
                path = path[len("record."):]
            value = record.get_field(path)
        if value is None:
            return ""
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _PLACEHOLDER.sub(replacer, template)


def render_value(value: Any, record: Record, extra: Optional[Dict[str, Any]] = None) -> Any:
    """Render placeholders through nested dicts and lists."""
    if isinstance(value, str):
        return render_template(value, record, extra)
    if isinstance(value, dict):
        return {k: render_value(v, record, extra) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, record, extra) for v in value]
    return value
