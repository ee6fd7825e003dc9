"""
Ruleflow Path Resolver

Resolves and writes path expressions such as ``data.customer.name`` or
``data.orders[2].total`` against plain JSON values.

Writes are copy-on-write: ``set_path`` and ``remove_path`` return a new root
that shares every untouched branch with the original and never mutate the
caller's objects. Segments named ``__proto__``, ``constructor`` or
``prototype`` fail resolution: reads return MISSING, writes are no-ops.

Key objects:
- MISSING: sentinel for "undefined" (distinct from JSON null / None)
- tokenize_path, get_path, set_path, remove_path
- json_equal: JSON-semantics equality (booleans never equal numbers)
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, List, Optional, Tuple, Union

UNSAFE_KEYS = frozenset({"__proto__", "constructor", "prototype"})

_INDEX_PATTERN = re.compile(r"\[(\d+)\]")

PathToken = Union[str, int]


class _Missing:
    """Singleton standing in for an unresolved value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (_Missing, ())


MISSING = _Missing()


class _Unassignable(Exception):
    """Internal signal: a write cannot be applied, leave the root untouched."""


def is_unsafe_key(segment: Any) -> bool:
    return isinstance(segment, str) and segment in UNSAFE_KEYS


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@lru_cache(maxsize=512)
def tokenize_path(path: str) -> Tuple[PathToken, ...]:
    """
    Split a path into key and index tokens.

    ``a.b[2].c`` -> ("a", "b", 2, "c"). Purely numeric dot segments are
    treated as indices, so ``items.0`` and ``items[0]`` are equivalent.
    """
    normalized = _INDEX_PATTERN.sub(r".\1", path)
    tokens: List[PathToken] = []
    for segment in normalized.split("."):
        if not segment:
            continue
        tokens.append(int(segment) if segment.isdigit() else segment)
    return tuple(tokens)


def _safe_tokens(path: str) -> Optional[Tuple[PathToken, ...]]:
    tokens = tokenize_path(path)
    if any(is_unsafe_key(token) for token in tokens):
        return None
    return tokens


def get_path(root: Any, path: str) -> Any:
    """Read the value at ``path``; returns MISSING when it does not resolve."""
    if not path:
        return root
    tokens = _safe_tokens(path)
    if tokens is None:
        return MISSING

    current = root
    for token in tokens:
        if current is MISSING or current is None:
            return MISSING
        if isinstance(token, int):
            if not isinstance(current, list) or token >= len(current):
                return MISSING
            current = current[token]
        else:
            if not isinstance(current, dict):
                return MISSING
            current = current.get(token, MISSING)
    return current


def has_path(root: Any, path: str) -> bool:
    return get_path(root, path) is not MISSING


def _assign(current: Any, tokens: Tuple[PathToken, ...], index: int, value: Any) -> Any:
    token = tokens[index]
    is_last = index == len(tokens) - 1

    if isinstance(token, int):
        if not isinstance(current, list):
            raise _Unassignable()
        updated: Any = list(current)
        while len(updated) <= token:
            updated.append(None)
        existing = current[token] if token < len(current) else MISSING
    else:
        if not isinstance(current, dict):
            raise _Unassignable()
        updated = dict(current)
        existing = current.get(token, MISSING)

    if is_last:
        updated[token] = value
        return updated

    # Create missing intermediate containers based on the next token
    if existing is MISSING or existing is None:
        existing = [] if isinstance(tokens[index + 1], int) else {}
    updated[token] = _assign(existing, tokens, index + 1, value)
    return updated


def set_path(root: Any, path: str, value: Any) -> Any:
    """Return a new root with ``value`` written at ``path``."""
    tokens = _safe_tokens(path) if path else None
    if not tokens:
        return root
    try:
        return _assign(root, tokens, 0, value)
    except _Unassignable:
        return root


def _delete(current: Any, tokens: Tuple[PathToken, ...], index: int) -> Any:
    token = tokens[index]
    is_last = index == len(tokens) - 1

    if isinstance(token, int):
        if not isinstance(current, list) or token >= len(current):
            raise _Unassignable()
        updated: Any = list(current)
    else:
        if not isinstance(current, dict) or token not in current:
            raise _Unassignable()
        updated = dict(current)

    if is_last:
        del updated[token]
    else:
        updated[token] = _delete(current[token], tokens, index + 1)
    return updated


def remove_path(root: Any, path: str) -> Any:
    """Return a new root without the value at ``path`` (array items are spliced out)."""
    tokens = _safe_tokens(path) if path else None
    if not tokens:
        return root
    try:
        return _delete(root, tokens, 0)
    except _Unassignable:
        return root


def json_equal(left: Any, right: Any) -> bool:
    """Structural equality over JSON values."""
    if left is MISSING or right is MISSING:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if is_number(left) and is_number(right):
        return left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(json_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(json_equal(left[key], right[key]) for key in left)
    if type(left) is not type(right):
        return False
    return left == right


def strip_missing(value: Any) -> Any:
    """Drop MISSING entries from a nested structure (JSON has no 'undefined')."""
    if isinstance(value, dict):
        return {k: strip_missing(v) for k, v in value.items() if v is not MISSING}
    if isinstance(value, list):
        return [None if item is MISSING else strip_missing(item) for item in value]
    return value
