"""
Helpers for schema-free documents.

Documents are plain JSON trees (dicts of str -> null/bool/number/str/list/dict).
Properties are addressed by dotted paths (``address.city``).
"""

from __future__ import annotations

import copy
import re
from typing import Any

MISSING: Any = object()

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def split_path(path: str) -> list[str]:
    parts = path.split(".")
    if not path or any(not p for p in parts):
        raise ValueError(f"Invalid document path: '{path}'")
    return parts


def get_value(document: dict, path: str, default: Any = None) -> Any:
    node: Any = document
    for part in split_path(path):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def has_path(document: dict, path: str) -> bool:
    return get_value(document, path, MISSING) is not MISSING


def set_value(document: dict, path: str, value: Any) -> None:
    parts = split_path(path)
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def remove_path(document: dict, path: str) -> bool:
    parts = split_path(path)
    node: Any = document
    for part in parts[:-1]:
        if not isinstance(node, dict) or part not in node:
            return False
        node = node[part]
    if isinstance(node, dict) and parts[-1] in node:
        del node[parts[-1]]
        return True
    return False


def clone(document: dict) -> dict:
    return copy.deepcopy(document)


def merge(current: dict, patch: dict) -> dict:
    """Right-biased merge: keys in ``patch`` replace the current values."""
    result = clone(current)
    for key, value in patch.items():
        result[key] = copy.deepcopy(value)
    return result


def without(document: dict, *keys: str) -> dict:
    return {k: v for k, v in document.items() if k not in keys}


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.strip().lower()).strip("-")


def is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))
