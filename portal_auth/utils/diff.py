from __future__ import annotations

import math
from typing import Any, Iterable, Mapping

_MISSING = object()


def _values_equal(left: Any, right: Any) -> bool:
    if left is right:
        return True
    if isinstance(left, float) and isinstance(right, float) and math.isnan(left) and math.isnan(right):
        return True
    return left == right


def extract_changed_values(
    old: Mapping[str, Any] | None,
    new: Mapping[str, Any] | None,
    include_keys: Iterable[str] | None = None,
    ignore_keys: Iterable[str] | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return the field-scoped ``(old_values, new_values)`` that differ.

    Keys absent from one side are left out of that side's result.
    """
    old = old or {}
    new = new or {}
    if include_keys:
        keys = list(dict.fromkeys(include_keys))
    else:
        keys = list(dict.fromkeys([*old.keys(), *new.keys()]))
    ignored = set(ignore_keys or ())

    old_values: dict[str, Any] = {}
    new_values: dict[str, Any] = {}
    for key in keys:
        if key in ignored:
            continue
        before = old.get(key, _MISSING)
        after = new.get(key, _MISSING)
        if _values_equal(before, after):
            continue
        if before is not _MISSING:
            old_values[key] = before
        if after is not _MISSING:
            new_values[key] = after
    return old_values, new_values
