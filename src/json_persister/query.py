"""Render SQL fragments used while synchronising relations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Sequence

from .exceptions import TypeMismatchError

# Matches nothing, so "NOT IN" over it matches everything.
EMPTY_SET = "(SELECT NULL WHERE 1 = 0)"


@dataclass(frozen=True)
class InClause:
    """An ``IN (...)`` selector and the bind parameters it refers to."""

    selector: str
    params: Dict[str, Any]


def render_literal(value: Any) -> str:
    """Render ``value`` as an inline SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, (datetime, date)):
        value = value.isoformat()
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise TypeMismatchError(
        f"parameter type not supported: {type(value).__name__}",
        {"value": repr(value)},
    )


def in_clause(values: Sequence[Any], prefix: str = "in") -> InClause:
    if not values:
        return InClause(selector=f"IN {EMPTY_SET}", params={})

    params = {f"{prefix}_{index}": value for index, value in enumerate(values)}
    placeholders = ", ".join(f":{name}" for name in params)
    return InClause(selector=f"IN ({placeholders})", params=params)
