"""Minimal ``{{KEY}}`` placeholder rendering for message templates."""
import re
from typing import Mapping, Optional

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


def apply_template(template: str, data: Optional[Mapping[str, object]] = None) -> str:
    """Replace ``{{KEY}}`` placeholders with values from ``data``.

    Keys are matched case-insensitively (``{{data}}`` and ``{{DATA}}`` are the
    same placeholder). Missing keys render as an empty string.

    Examples:
        >>> apply_template("Dia {{DATA}} às {{ hora }}", {"DATA": "10/03", "HORA": "09:00"})
        'Dia 10/03 às 09:00'
        >>> apply_template("Olá {{NOME}}!", {})
        'Olá !'
    """
    values = {str(k).upper(): v for k, v in (data or {}).items()}

    def _sub(match: re.Match) -> str:
        value = values.get(match.group(1).upper())
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, template or "")
