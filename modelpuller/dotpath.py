"""Set string values inside JSON-like configuration dicts by dotted paths.

Only string values are supported, paths trace object keys only, and only
existing string values may be overwritten.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class DotpathError(ValueError):
    """Raised when an override cannot be applied."""


def apply_parameter_overrides(
    params: dict[str, Any] | None, overrides: Mapping[str, str] | None
) -> None:
    """Apply every ``dotpath -> value`` override to ``params`` in place."""
    for dotpath, value in (overrides or {}).items():
        _set(params, dotpath, value)


def _set(params: dict[str, Any] | None, dotpath: str, value: str) -> None:
    if params is None:
        raise DotpathError("got nil map, unable to set value")

    fields = dotpath.split(".")
    *parents, last = fields

    current = params
    for depth, field in enumerate(parents):
        if field not in current:
            nested: dict[str, Any] = {}
            current[field] = nested
            current = nested
            continue
        child = current[field]
        if not isinstance(child, dict):
            raise DotpathError(
                f"expected an object at '{'.'.join(fields[: depth + 1])}'"
            )
        current = child

    if last in current and not isinstance(current[last], str):
        raise DotpathError(
            f"expected a string at '{dotpath}', but got {current[last]!r}"
        )
    current[last] = value