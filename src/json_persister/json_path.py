"""Resolve dotted paths such as ``"root.users"`` inside a JSON document."""

from __future__ import annotations

from typing import Any, List, Mapping

from .exceptions import JsonPathError


def _keys(path: str) -> List[str]:
    keys = path.split(".")
    while keys and not keys[-1]:
        keys.pop()
    return keys


def _child(current: Mapping[str, Any], key: str, path: str) -> Any:
    try:
        return current[key]
    except KeyError:
        raise JsonPathError(f'failed to fetch element "{key}"', {"path": path}) from None


def _unsupported(key: str, path: str, value: Any) -> JsonPathError:
    return JsonPathError(
        f"can't parse element for {key} on path {path} because the type "
        f"{type(value).__name__} is not supported",
        {"path": path, "key": key},
    )


def resolve_object(document: Mapping[str, Any], path: str) -> Mapping[str, Any]:
    """Return the object found at ``path``; the empty path returns ``document``."""
    if not path:
        return document

    keys = _keys(path)
    current = document
    for index, key in enumerate(keys):
        child = _child(current, key, path)
        if isinstance(child, list):
            if index == len(keys) - 1:
                raise JsonPathError(
                    f'last element "{key}" is an array and not an object', {"path": path}
                )
            raise JsonPathError(
                f'array element for "{key}" cannot be parsed at {path}', {"path": path}
            )
        if not isinstance(child, Mapping):
            raise _unsupported(key, path, child)
        current = child
    return current


def resolve_array(document: Mapping[str, Any], path: str) -> List[Any]:
    """Return the array found at ``path``.

    Only the last key may lead to an array; the document root never is one.
    """
    if not path:
        raise JsonPathError("root of a JSON object can never be an array", {"path": path})

    keys = _keys(path)
    current = document
    for index, key in enumerate(keys):
        child = _child(current, key, path)
        if isinstance(child, list):
            if index != len(keys) - 1:
                raise JsonPathError(
                    f'array element for "{key}" is not the last element on the path {path}',
                    {"path": path},
                )
            return child
        if not isinstance(child, Mapping):
            raise _unsupported(key, path, child)
        current = child

    raise JsonPathError(f"path {path} leads to an object, not an array", {"path": path})
