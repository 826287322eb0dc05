"""
Wildcard access-control patterns.

Role level (Rbac):  ``subject.resource.action.object``
    A three-segment ``resource.action.object`` form is accepted and gets a
    wildcard subject.
User level (Ubac):  ``resource.action.object``
    The subject is implicitly the user the pattern is attached to.

Every segment is a literal or ``*``. Equality is structural after
normalisation (trimmed, lower-cased), so ``*`` only equals ``*``. That is
what decides whether an allow set and a deny set conflict. Whether a
pattern *grants* a concrete access is a separate question answered by
``matches``, where ``*`` covers any literal.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar, Iterable, Sequence, TypeVar, Union

from identity_core.core.exceptions import MalformedPatternError

WILDCARD = "*"

_LITERAL_RE = re.compile(r"^[a-z0-9_\-@:$]+$")

CRUD_ACTIONS = ("create", "read", "update", "delete")

RESERVED_RESOURCES = (
    "memberships",
    "users",
    "user-types",
    "roles",
    "applications",
    "providers",
    "tokens",
    "active-tokens",
    "revoked-tokens",
    "events",
    "webhooks",
    "mailhooks",
)


def _normalize_segment(pattern: str, segment: str) -> str:
    segment = segment.strip().lower()
    if not segment:
        raise MalformedPatternError(pattern, "empty segment")
    if segment != WILDCARD and not _LITERAL_RE.match(segment):
        raise MalformedPatternError(pattern, f"invalid segment '{segment}'")
    return segment


def _segment_matches(granted: str, requested: str) -> bool:
    return granted == WILDCARD or granted == requested


P = TypeVar("P", bound="_Pattern")


@dataclass(frozen=True)
class _Pattern:
    segments: tuple[str, ...]

    SEGMENT_NAMES: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def parse(cls: type[P], text: str) -> P:
        if not isinstance(text, str) or not text.strip():
            raise MalformedPatternError(str(text), "pattern is empty")
        parts = text.strip().split(".")
        parts = cls._expand(text, parts)
        if len(parts) != len(cls.SEGMENT_NAMES):
            raise MalformedPatternError(
                text, f"expected {'.'.join(cls.SEGMENT_NAMES)}"
            )
        return cls(tuple(_normalize_segment(text, p) for p in parts))

    @classmethod
    def _expand(cls, text: str, parts: list[str]) -> list[str]:
        return parts

    def __str__(self) -> str:
        return ".".join(self.segments)

    def __getattr__(self, name: str) -> str:
        names = type(self).SEGMENT_NAMES
        if name in names:
            return self.segments[names.index(name)]
        raise AttributeError(name)

    def matches(self, requested: "_Pattern") -> bool:
        """True if this pattern grants ``requested`` (wildcards cover literals)."""
        if type(requested) is not type(self):
            return False
        return all(_segment_matches(g, r) for g, r in zip(self.segments, requested.segments))


class Rbac(_Pattern):
    SEGMENT_NAMES = ("subject", "resource", "action", "object")

    @classmethod
    def _expand(cls, text: str, parts: list[str]) -> list[str]:
        if len(parts) == 3:
            return [WILDCARD, *parts]
        return parts


class Ubac(_Pattern):
    SEGMENT_NAMES = ("resource", "action", "object")


Pattern = Union[Rbac, Ubac]


def parse_all(pattern_cls: type[P], texts: Iterable[str]) -> list[P]:
    return [pattern_cls.parse(t) for t in texts]


def find_conflicts(allow: Sequence[P], deny: Sequence[P]) -> list[P]:
    """Patterns present in both sets, in ``allow`` order, without duplicates."""
    conflicts: list[P] = []
    for permitted in allow:
        for forbidden in deny:
            if permitted == forbidden and permitted not in conflicts:
                conflicts.append(permitted)
    return conflicts


def is_permitted(allow: Iterable[P], deny: Iterable[P], requested: P) -> bool:
    """A request is permitted if some allow pattern covers it and no deny pattern does."""
    if any(f.matches(requested) for f in deny):
        return False
    return any(p.matches(requested) for p in allow)


def admin_permissions() -> list[str]:
    return [f"*.{resource}.*.*" for resource in RESERVED_RESOURCES]


SERVER_PERMISSIONS = ("*.users.reset-password.*", "*.users.set-password.*")
