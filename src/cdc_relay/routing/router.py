"""
Regex-keyed lookup table with memoized literal resolution.

Rules are tested in insertion order and the first full match wins. There is
no precedence by specificity: overlapping patterns resolve to whichever was
registered first, and ambiguity is never reported.
"""

from __future__ import annotations

import re
import threading
from collections import OrderedDict
from typing import Generic, Optional, TypeVar

V = TypeVar("V")

_MISSING = object()


class _Rule(Generic[V]):
    __slots__ = ("pattern", "compiled", "value")

    def __init__(self, pattern: str, value: V):
        self.pattern = pattern
        self.compiled = re.compile(pattern)
        self.value = value


class PatternRouter(Generic[V]):
    """Resolve literal keys (e.g. ``db.table``) against regex rules.

    Two structures back the router: an ordered list of compiled rules and a
    size-capped LRU cache from literal to the pattern text that matched it.
    The cache is only a shortcut; a miss always falls back to evaluating the
    rules again.

    A literal equal to a registered pattern's own text is accepted as a
    direct hit when no regex matched it, so the same router serves both
    exact and pattern config keys.

    Example:
        routes = PatternRouter[str]()
        routes.put(r"db\\.order.*", "orders-topic")
        routes.get("db.orders")  # "orders-topic"
    """

    def __init__(self, cache_size: int = 4096):
        if cache_size <= 0:
            raise ValueError("cache_size must be > 0")
        self._rules: dict[str, _Rule[V]] = {}
        self._cache: OrderedDict[str, str] = OrderedDict()
        self._cache_size = cache_size
        self._lock = threading.Lock()
        self.regex_evaluations = 0  # observable in tests

    # --------------------------- mutation

    def put(self, pattern: str, value: V) -> None:
        """Register a rule; an existing rule with the same text keeps its slot."""
        with self._lock:
            rule = self._rules.get(pattern)
            if rule is not None:
                rule.value = value
                return
            self._rules[pattern] = _Rule(pattern, value)

    def remove(self, pattern: str) -> Optional[V]:
        """Delete a rule and purge every cached literal that resolved to it."""
        with self._lock:
            rule = self._rules.pop(pattern, None)
            if rule is None:
                return None
            stale = [lit for lit, pat in self._cache.items() if pat == pattern]
            for lit in stale:
                del self._cache[lit]
            return rule.value

    def clear(self) -> None:
        with self._lock:
            self._rules.clear()
            self._cache.clear()

    # --------------------------- lookup

    def resolve(self, literal: str) -> Optional[str]:
        """Return the pattern text ``literal`` resolves to, or None."""
        with self._lock:
            pattern = self._cache.get(literal)
            if pattern is not None:
                self._cache.move_to_end(literal)
                return pattern

            for rule in self._rules.values():
                self.regex_evaluations += 1
                if rule.compiled.fullmatch(literal):
                    self._remember(literal, rule.pattern)
                    return rule.pattern

            if literal in self._rules:
                return literal
            return None

    def get(self, literal: str, default: Optional[V] = None) -> Optional[V]:
        value = self._lookup(literal)
        return default if value is _MISSING else value

    def contains(self, literal: str) -> bool:
        return self._lookup(literal) is not _MISSING

    def _lookup(self, literal: str):
        pattern = self.resolve(literal)
        if pattern is None:
            return _MISSING
        with self._lock:
            rule = self._rules.get(pattern)
        return _MISSING if rule is None else rule.value

    def _remember(self, literal: str, pattern: str) -> None:
        self._cache[literal] = pattern
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    # --------------------------- views

    def patterns(self) -> list[str]:
        """Pattern texts in insertion (evaluation) order."""
        return list(self._rules)

    def values(self) -> list[V]:
        return [r.value for r in self._rules.values()]

    @property
    def cached_literals(self) -> int:
        return len(self._cache)

    def __contains__(self, literal: object) -> bool:
        return isinstance(literal, str) and self.contains(literal)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"PatternRouter(rules={self.patterns()!r}, cached={len(self._cache)})"
