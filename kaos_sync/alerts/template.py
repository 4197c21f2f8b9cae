"""
Alert Message Templates
Renders {placeholder} message templates from an evaluation context.
"""

import re
from typing import Any, Mapping

from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

PLACEHOLDER_RE = re.compile(r'\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\}')

_MISSING = object()


def format_value(value: Any) -> str:
    """Render one value: null as empty, integral floats without decimals."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return f"{value:.2f}".rstrip('0').rstrip('.')
    return str(value)


def _lookup(path: str, context: Mapping[str, Any]) -> Any:
    parts = path.split('.')
    if parts[0] not in context:
        return _MISSING

    value = context[parts[0]]
    for part in parts[1:]:
        if value is None:
            return None
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    return value


def render(template: str, context: Mapping[str, Any]) -> str:
    """
    Replace every {name} or {dotted.name} in ``template``.

    Placeholders that do not resolve against the context, and text that is
    not a well-formed placeholder, are left in the message unchanged.
    """
    if not template:
        return ''

    def substitute(match):
        value = _lookup(match.group(1), context)
        if value is _MISSING:
            logger.debug(f"Unresolved placeholder {match.group(0)} left as is")
            return match.group(0)
        return format_value(value)

    return PLACEHOLDER_RE.sub(substitute, template)
