"""Coercion of loosely-typed task parameters.

Task params arrive as decoded JSON, so a port may be ``443`` or ``443.0``
and any key may be missing or hold garbage. Every accessor takes a default
and falls back to it instead of failing the task.
"""

from __future__ import annotations

import math
from typing import Any, Mapping, Optional, Sequence


def as_str(value: Any, default: str) -> str:
    if isinstance(value, str):
        trimmed = value.strip()
        if trimmed:
            return trimmed
    return default


def as_int(value: Any, default: int, minimum: Optional[int] = None) -> int:
    # bool is an int subclass but never a valid number here
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        result = value
    elif isinstance(value, float) and math.isfinite(value):
        result = int(value)
    else:
        return default
    if minimum is not None and result < minimum:
        return default
    return result


def as_int_list(value: Any, default: Sequence[int]) -> list[int]:
    if not isinstance(value, (list, tuple)):
        return list(default)
    result = []
    for item in value:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            result.append(item)
        elif isinstance(item, float) and math.isfinite(item):
            result.append(int(item))
    return result or list(default)


class TaskParams:
    """Read-only view over a task's params map with typed accessors."""

    def __init__(self, raw: Optional[Mapping[str, Any]] = None) -> None:
        self._raw = dict(raw) if isinstance(raw, Mapping) else {}

    def string(self, key: str, default: str) -> str:
        return as_str(self._raw.get(key), default)

    def integer(self, key: str, default: int, minimum: Optional[int] = None) -> int:
        return as_int(self._raw.get(key), default, minimum)

    def int_list(self, key: str, default: Sequence[int]) -> list[int]:
        return as_int_list(self._raw.get(key), default)

    def __contains__(self, key: object) -> bool:
        return key in self._raw

    def __repr__(self) -> str:
        return f"TaskParams({self._raw!r})"
